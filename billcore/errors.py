"""Billing error taxonomy and HTTP error handlers.

Every billing failure is a ``BillingError`` carrying an ``ErrorKind``, so
callers can branch on ``exc.kind`` instead of catching individual classes.
Over HTTP each error becomes a consistent envelope:
    {
        "code": "invalid_state",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import enum
import logging

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    invalid_amount = "invalid_amount"
    invalid_input = "invalid_input"
    invalid_state = "invalid_state"
    not_found = "not_found"
    conflict = "conflict"
    contended = "contended"
    sequence_exhausted = "sequence_exhausted"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.contended


class BillingError(Exception):
    kind: ErrorKind = ErrorKind.invalid_input

    def __init__(self, message: str, details: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class InvalidAmount(BillingError):
    kind = ErrorKind.invalid_amount


class InvalidInput(BillingError):
    kind = ErrorKind.invalid_input


class InvalidState(BillingError):
    kind = ErrorKind.invalid_state


class NotFound(BillingError):
    kind = ErrorKind.not_found


class ConflictError(BillingError):
    kind = ErrorKind.conflict


class Contended(BillingError):
    kind = ErrorKind.contended


class SequenceExhausted(BillingError):
    kind = ErrorKind.sequence_exhausted


_STATUS_BY_KIND = {
    ErrorKind.invalid_amount: 422,
    ErrorKind.invalid_input: 422,
    ErrorKind.invalid_state: 409,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.contended: 503,
    ErrorKind.sequence_exhausted: 503,
}


def status_for(kind: ErrorKind) -> int:
    return _STATUS_BY_KIND[kind]


def _get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(BillingError)  # type: ignore[attr-defined]
    async def billing_error_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        status_code = status_for(exc.kind)
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "Billing error on %s %s: %s (%s)",
            request.method,
            request.url.path,
            exc.message,
            exc.kind.value,
            extra={"request_id": request_id},
        )
        headers = {"Retry-After": "1"} if exc.kind.retryable else None
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(
                exc.kind.value,
                exc.message,
                jsonable_encoder(exc.details),
                request_id,
            ),
            headers=headers,
        )

    @app.exception_handler(HTTPException)  # type: ignore[attr-defined]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[attr-defined]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                jsonable_encoder(exc.errors()),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[attr-defined]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )
