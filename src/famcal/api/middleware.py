"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``ValueError`` / request validation errors → 400 Bad Request
- ``CallerRequiredError`` → 401, ``CalendarAuthError`` → 401 (reconnect)
- ``HouseholdAccessError`` → 403 Forbidden
- ``RecordNotFoundError`` → 404 Not Found
- ``CalendarSyncError`` → 502 Bad Gateway
- ``CalendarTransientError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from famcal.api.deps import CallerRequiredError
from famcal.api.models import ErrorDetail, ErrorResponse
from famcal.calendar.errors import (
    CalendarAuthError,
    CalendarSyncError,
    CalendarTransientError,
    HouseholdAccessError,
    RecordNotFoundError,
    describe_sync_error,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Request validation error on %s: %s", request.url.path, exc.errors())
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()
    ]
    return _error(400, "VALIDATION_ERROR", "Invalid request", {"errors": errors})


async def _handle_caller_required(request: Request, exc: CallerRequiredError) -> JSONResponse:
    return _error(401, "MEMBER_REQUIRED", str(exc))


async def _handle_auth_error(request: Request, exc: CalendarAuthError) -> JSONResponse:
    """Return 401 so clients prompt the member to reconnect their calendar."""
    logger.info("Calendar reconnect required: %s", exc)
    return _error(401, "RECONNECT_REQUIRED", describe_sync_error(exc))


async def _handle_access_error(request: Request, exc: HouseholdAccessError) -> JSONResponse:
    logger.info("Household access denied: %s", exc)
    return _error(403, "FORBIDDEN", str(exc))


async def _handle_not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    logger.info("Record not found: %s", exc)
    return _error(404, "NOT_FOUND", str(exc), {"kind": exc.kind, "id": exc.record_id})


async def _handle_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    """Return 502 when the calendar provider rejects a request."""
    logger.warning("Calendar provider error: %s", exc)
    return _error(502, "PROVIDER_ERROR", describe_sync_error(exc))


async def _handle_transient_error(request: Request, exc: CalendarTransientError) -> JSONResponse:
    """Return 503 when the calendar provider is unavailable or rate limiting."""
    logger.warning("Calendar provider unavailable: %s", exc)
    return _error(503, "PROVIDER_UNAVAILABLE", describe_sync_error(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are resolved by exception MRO, so the most specific class wins
    (``CalendarTransientError`` over ``CalendarSyncError``).
    """
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(CallerRequiredError, _handle_caller_required)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarAuthError, _handle_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(HouseholdAccessError, _handle_access_error)  # type: ignore[arg-type]
    app.add_exception_handler(RecordNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarTransientError, _handle_transient_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
