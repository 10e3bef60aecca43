import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from src.core.config import settings
from src.core.exceptions import AppException, ConcurrencyConflictError
from src.shared.schemas import ErrorResponse, ErrorDetail

logger = logging.getLogger(__name__)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application exceptions."""
    field = exc.details.get("field")
    errors = [ErrorDetail(field=field, message=exc.message)]

    response = ErrorResponse(
        message=exc.message,
        errors=errors,
        details=exc.details or None,
        retryable=exc.retryable,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(mode="json"),
    )


def _format_validation_errors(errors: list[dict]) -> list[ErrorDetail]:
    details: list[ErrorDetail] = []
    for error in errors:
        loc = error.get("loc", ())
        # Drop top-level "body" for cleaner field paths
        if loc and loc[0] == "body":
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) if loc else None
        details.append(ErrorDetail(field=field, message=error.get("msg", "Invalid value")))
    return details


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI validation errors."""
    response = ErrorResponse(
        message="Validation error",
        errors=_format_validation_errors(exc.errors()),
    )
    return JSONResponse(
        status_code=422,
        content=response.model_dump(mode="json"),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle generic HTTP exceptions."""
    errors = [ErrorDetail(field=None, message=str(exc.detail) if exc.detail else "HTTP error")]
    response = ErrorResponse(
        message=str(exc.detail) if exc.detail else "HTTP error",
        errors=errors,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(mode="json"),
    )


async def stale_data_exception_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    """Optimistic version check failed at flush time: report as a retryable conflict."""
    logger.warning("Concurrent update rejected on %s: %s", request.url.path, exc)
    return await app_exception_handler(request, ConcurrencyConflictError("Tuition"))


def _friendly_db_error(exc: Exception) -> tuple[str, str | None, int]:
    """
    Convert common DB constraint errors to a stable, user-facing message.

    Full DB error details are only exposed when debug is enabled.
    """
    raw = str(getattr(exc, "orig", exc))
    lower = raw.lower()

    if "does not exist" in lower and "column" in lower:
        # Typical after deploying code without running Alembic migrations.
        return (
            "Database schema is out of date. Run the latest migrations and try again.",
            None,
            500,
        )

    if "unique" in lower or "duplicate key" in lower:
        return ("Conflicting record already exists, refresh and try again.", None, 409)

    if settings.debug:
        return (raw, None, 500)

    return ("Database error", None, 500)


# Deadlock detected, serialization failure
RETRYABLE_SQLSTATES = {"40P01", "40001"}


def _sqlstate(exc: Exception) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


async def sqlalchemy_db_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if _sqlstate(exc) in RETRYABLE_SQLSTATES:
        logger.warning("Transaction aborted by the database on %s: %s", request.url.path, exc)
        return await app_exception_handler(request, ConcurrencyConflictError("Transaction"))

    message, field, status_code = _friendly_db_error(exc)
    logger.error("Database error on %s: %s", request.url.path, exc)
    response = ErrorResponse(
        message=message,
        errors=[ErrorDetail(field=field, message=message)],
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))
