"""
Global error handling middleware.

WHAT: Translate exceptions to HTTP responses
WHY: Every failure kind maps to one fixed status; internals never leak outside DEBUG
HOW: FastAPI exception handlers rendering {success: false, message, error: {code, details}}
"""

import traceback
from datetime import datetime

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.config import settings
from ..realtime.protocol import serialize_data
from ..utils.exceptions import (
    AlreadyResolvedException,
    AuthenticationException,
    BusinessException,
    EditWindowExpiredException,
    ForbiddenException,
    InvalidContentException,
    InvalidParticipantException,
    NotAuthorException,
    NotFoundException,
    NotParticipantException,
    ProposalExpiredException,
    RateLimitedException,
    WrongTypeException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


def status_for(exc: BusinessException) -> int:
    """Map a business exception to its HTTP status."""
    if isinstance(exc, AuthenticationException):
        return status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, (NotParticipantException, NotAuthorException, ForbiddenException)):
        return status.HTTP_403_FORBIDDEN
    elif isinstance(exc, NotFoundException):
        return status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InvalidParticipantException, InvalidContentException,
                          WrongTypeException, EditWindowExpiredException)):
        return status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, ProposalExpiredException):
        return status.HTTP_410_GONE
    elif isinstance(exc, AlreadyResolvedException):
        return status.HTTP_409_CONFLICT
    elif isinstance(exc, RateLimitedException):
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_400_BAD_REQUEST


def error_body(message: str, code: str, details=None) -> dict:
    return {
        "success": False,
        "message": message,
        "error": {"code": code, "details": serialize_data(details)},
        "timestamp": datetime.utcnow().isoformat(),
    }


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle BusinessException and subclasses.

    WHAT: Domain failure raised by a store, the engine or a dependency
    WHY: Client needs the error code and a readable message
    HOW: Status from status_for(); Retry-After on rate limiting
    """
    status_code = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")

    headers = None
    if isinstance(exc, RateLimitedException):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.message, exc.code, exc.details),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    field_errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Datos de entrada inválidos", "VALIDATION_ERROR", {"field_errors": field_errors}),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Keep framework errors (404 route, 405 method) in the same envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Handle anything else.

    WHAT: Unexpected failure
    WHY: Never leak internals outside DEBUG
    HOW: Log with traceback, return generic 500 (traceback in body only in DEBUG)
    """
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)

    details = None
    if settings.DEBUG:
        details = {
            "exception": exc.__class__.__name__,
            "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
        }
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Error interno del servidor", "INTERNAL_ERROR", details),
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered")
