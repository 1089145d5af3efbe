"""Domain error taxonomy and the central storage-error mapper.

Every component raises one of the :class:`ArdineError` subclasses below.
Raw database exceptions never cross the service boundary: storage
calls are wrapped in :func:`error_mapping`, which converts integrity
violations into their domain kind and collapses anything else into a
detail-free :class:`InternalError`.

SQLSTATE mapping (PostgreSQL, with SQLite message equivalents)::

    23505  unique_violation       -> ConflictError
    23503  foreign_key_violation  -> DependencyViolationError
    23502  not_null_violation     -> ValidationError
    23514  check_violation        -> ValidationError
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


class ArdineError(Exception):
    """Base class for all domain errors surfaced to the transport layer."""

    code: str = "INTERNAL_SERVER_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class UnauthorizedError(ArdineError):
    code = "UNAUTHORIZED"
    http_status = 401


class ForbiddenError(ArdineError):
    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(ArdineError):
    """Entity missing, or outside the caller's team (deliberately the same)."""

    code = "NOT_FOUND"
    http_status = 404


class ValidationError(ArdineError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, *, field: str | None = None, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.field = field


class ConflictError(ArdineError):
    code = "CONFLICT"
    http_status = 409


class DependencyViolationError(ArdineError):
    code = "DEPENDENCY_VIOLATION"
    http_status = 409


class InternalError(ArdineError):
    code = "INTERNAL_SERVER_ERROR"
    http_status = 500


# ---------------------------------------------------------------------------
# Storage error mapping
# ---------------------------------------------------------------------------

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"
CHECK_VIOLATION = "23514"

# SQLite reports constraint failures only through the message text.
_SQLITE_MESSAGES: tuple[tuple[str, str], ...] = (
    ("UNIQUE constraint failed", UNIQUE_VIOLATION),
    ("FOREIGN KEY constraint failed", FOREIGN_KEY_VIOLATION),
    ("NOT NULL constraint failed", NOT_NULL_VIOLATION),
    ("CHECK constraint failed", CHECK_VIOLATION),
)


def sqlstate_of(exc: SQLAlchemyError) -> str | None:
    """Return the SQLSTATE code carried by a wrapped DBAPI error, if any.

    asyncpg errors expose ``pgcode``/``sqlstate`` on the adapted DBAPI
    exception.  For SQLite the code is inferred from the message.
    """
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    for attr in ("pgcode", "sqlstate"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    message = str(orig)
    for needle, state in _SQLITE_MESSAGES:
        if needle in message:
            return state
    return None


def constraint_detail(exc: SQLAlchemyError) -> str | None:
    """Best-effort extraction of the violated constraint for error detail."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    cause = getattr(orig, "__cause__", None)
    for source in (orig, cause):
        for attr in ("detail", "constraint_name"):
            value = getattr(source, attr, None)
            if value:
                return str(value)
    return None


def map_database_error(exc: SQLAlchemyError) -> ArdineError:
    """Translate a storage exception into its domain error kind.

    Unmapped errors are logged with their traceback and returned as an
    :class:`InternalError` whose message carries no storage detail.
    """
    state = sqlstate_of(exc) if isinstance(exc, IntegrityError) else None
    detail = constraint_detail(exc)

    if state == UNIQUE_VIOLATION:
        return ConflictError("A record with this value already exists", detail=detail)
    if state == FOREIGN_KEY_VIOLATION:
        return DependencyViolationError("Cannot perform operation due to dependent records", detail=detail)
    if state == NOT_NULL_VIOLATION:
        return ValidationError("Required field is missing", detail=detail)
    if state == CHECK_VIOLATION:
        return ValidationError("Value does not meet constraint requirements", detail=detail)

    logger.error("Unhandled database error: %s", type(exc).__name__, exc_info=exc)
    return InternalError("An internal error occurred")


@asynccontextmanager
async def error_mapping() -> AsyncIterator[None]:
    """Map storage exceptions raised inside the block to domain errors.

    Domain errors raised inside the block propagate untouched.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        raise map_database_error(exc) from exc
