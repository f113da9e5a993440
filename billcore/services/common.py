"""Shared service utilities: UUID coercion, lookups, lock handling."""
from __future__ import annotations

import functools
import logging
import time
import uuid
from typing import Any, TypeVar

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from billcore.config import settings
from billcore.errors import BillingError, Contended, InvalidInput, NotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")

# lock_not_available, serialization_failure, deadlock_detected
CONTENTION_SQLSTATES = frozenset({"55P03", "40001", "40P01"})


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise InvalidInput(f"Invalid identifier: {value!r}") from exc


def require_uuid(value: Any) -> uuid.UUID:
    result = coerce_uuid(value)
    if result is None:
        raise InvalidInput("Identifier is required")
    return result


def get_or_raise(
    db: Session,
    model: type[T],
    item_id: Any,
    label: str,
    *,
    for_update: bool = False,
) -> T:
    """Load ``model`` by primary key or raise ``NotFound``.

    With ``for_update`` the row is locked and re-read even when the
    session already holds it.
    """
    pk = require_uuid(item_id)
    if not for_update:
        item = db.get(model, pk)
    else:
        stmt = (
            select(model)
            .where(model.id == pk)  # type: ignore[attr-defined]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        item = db.scalars(stmt).first()
    if item is None:
        raise NotFound(f"{label} not found", {"id": str(pk)})
    return item


def set_lock_timeout(db: Session) -> None:
    """Bound lock waits for the current transaction (PostgreSQL only)."""
    if db.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = int(settings.lock_timeout_ms)
    if timeout_ms > 0:
        db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def is_contention_error(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


def _find_session(args: tuple, kwargs: dict) -> Session | None:
    if isinstance(kwargs.get("db"), Session):
        return kwargs["db"]
    for arg in args:
        if isinstance(arg, Session):
            return arg
    return None


def retry_on_contention(
    exhausted: type[BillingError] = Contended, attempts: int | None = None
):
    """Run a unit of work, retrying it when the store reports contention.

    The wrapped function must own its transaction: on any error the session
    is rolled back, and contention errors (lock or serialization failures
    from the store, or ``Contended`` raised by the function itself) re-run the
    whole function after an exponential backoff. When attempts run out
    ``exhausted`` is raised.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            db = _find_session(args, kwargs)
            max_attempts = max(1, attempts or settings.contention_max_attempts)
            last_error: Exception | None = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except DBAPIError as exc:
                    if db is not None:
                        db.rollback()
                    if not is_contention_error(exc):
                        raise
                    last_error = exc
                except Contended as exc:
                    # raised by optimistic checks that saw a concurrent write
                    if db is not None:
                        db.rollback()
                    last_error = exc
                except Exception:
                    if db is not None:
                        db.rollback()
                    raise
                logger.warning(
                    "Contention in %s (attempt %d/%d)",
                    func.__qualname__,
                    attempt,
                    max_attempts,
                    extra={"attempt": attempt},
                )
                if attempt < max_attempts:
                    time.sleep(settings.contention_backoff_seconds * (2 ** (attempt - 1)))
            raise exhausted(
                f"{func.__qualname__} gave up after {max_attempts} attempts",
                {"attempts": max_attempts},
            ) from last_error

        return wrapper

    return decorator


def validate_enum(value: str, enum_cls: type[T], label: str) -> T:
    try:
        return enum_cls(value)  # type: ignore[call-arg]
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)  # type: ignore[attr-defined]
        raise InvalidInput(f"Invalid {label}. Allowed: {allowed}") from exc


def apply_ordering(
    query: Any,
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Any:
    """Apply ordering to a query with validation."""
    if order_by not in allowed_columns:
        raise InvalidInput(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Any, limit: int, offset: int) -> Any:
    return query.limit(limit).offset(offset)
