"""Global exception handlers for the FastAPI application.

Every error leaves as ``{"error", "detail", "request_id"}`` JSON.  Stack
traces are logged server-side and never sent to the client.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.errors import MigratorError, UpstreamError, format_error_response

logger = logging.getLogger(__name__)


def _get_request_id(request: Request) -> str:
    """Request ID set by :class:`RequestIDMiddleware`, or a fresh UUID-4."""
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_response(status_code: int, error: str, detail: object, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=format_error_response(error=error, detail=detail, request_id=request_id),
    )


# ------------------------------------------------------------------
# Individual exception handlers
# ------------------------------------------------------------------

async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for any unhandled exception — returns 500."""
    request_id = _get_request_id(request)
    logger.error(
        "Unhandled exception on %s %s [request_id=%s]",
        request.method,
        request.url.path,
        request_id,
        exc_info=exc,
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal Server Error",
        "Internal server error",
        request_id,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Starlette/FastAPI ``HTTPException`` — preserves the status code."""
    request_id = _get_request_id(request)
    logger.warning(
        "HTTP %s on %s %s [request_id=%s]: %s",
        exc.status_code,
        request.method,
        request.url.path,
        request_id,
        exc.detail,
    )
    detail = str(exc.detail) if exc.detail else None
    return _error_response(exc.status_code, detail or "Error", detail, request_id)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request-validation errors — 422 with pydantic's error list."""
    request_id = _get_request_id(request)
    errors = exc.errors()
    logger.warning(
        "Validation error on %s %s [request_id=%s]: %s",
        request.method,
        request.url.path,
        request_id,
        errors,
    )
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation failed",
        errors,
        request_id,
    )


async def migrator_error_handler(request: Request, exc: MigratorError) -> JSONResponse:
    """Domain :class:`MigratorError` subclasses — each carries its own status."""
    request_id = _get_request_id(request)
    if isinstance(exc, UpstreamError):
        logger.error(
            "Upstream %s failed (status %d) on %s [request_id=%s]",
            exc.action,
            exc.upstream_status,
            request.url.path,
            request_id,
        )
    elif exc.status_code >= 500:
        logger.error("%s on %s [request_id=%s]", exc, request.url.path, request_id)
    return _error_response(exc.status_code, str(exc), str(exc), request_id)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """``ValueError`` from below the service layer — 404 if it says so, else 400."""
    request_id = _get_request_id(request)
    detail = str(exc)
    if "not found" in detail.lower():
        return _error_response(404, "Not Found", detail, request_id)
    return _error_response(400, "Bad Request", detail, request_id)


# ------------------------------------------------------------------
# Registration helper
# ------------------------------------------------------------------

def setup_exception_handlers(app: FastAPI) -> None:
    """Register all global exception handlers on *app*."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(MigratorError, migrator_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, value_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]
