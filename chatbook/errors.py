"""Structured service errors and their HTTP rendering.

Core services raise a :class:`ServiceError` subclass carrying a ``kind``
that callers can branch on. The handlers registered here turn those into
``{"detail": ..., "kind": ...}`` JSON responses and make sure anything
unexpected is logged in full but reported generically.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors raised by the core services."""

    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ServiceError):
    """Malformed or missing input. Nothing was changed."""

    kind = "validation"
    status_code = status.HTTP_400_BAD_REQUEST


class Forbidden(ServiceError):
    """The caller is not allowed to act on the target record."""

    kind = "authorization"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ServiceError):
    """A claim, message or user identity did not resolve."""

    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(ServiceError):
    """The request contradicts current state; re-fetch before retrying."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a service error as a structured JSON response."""
    logger.info(
        "Request rejected",
        extra={"kind": exc.kind, "detail": exc.message, "path": request.url.path},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected error with traceback and hide its details."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "kind": "internal"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the service error handlers to an application."""
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
