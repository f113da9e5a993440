import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)


def _request_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs its outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed",
                extra={
                    "request_id": request_id,
                    "path": _request_path(request),
                    "method": request.method,
                    "duration_ms": round((time.monotonic() - start) * 1000.0, 2),
                },
            )
            raise
        logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "path": _request_path(request),
                "method": request.method,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - start) * 1000.0, 2),
            },
        )
        response.headers["x-request-id"] = request_id
        return response
