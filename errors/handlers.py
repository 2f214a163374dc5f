"""
FastAPI exception handlers for the operational HTTP surface.

Session-layer exceptions become the structured JSON error body; retryable
ones carry a Retry-After header. Anything else is logged with its stack
trace and answered with a generic 500 that exposes no internal details.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors.codes import ErrorCode
from errors.exceptions import AppException

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying a retryable error
RETRY_AFTER_SECONDS = 1


class ErrorResponse(BaseModel):
    """Body of every error response."""
    error_code: str
    message: str
    retryable: bool = False
    details: Optional[dict[str, Any]] = None
    request_id: str


def get_request_id(request: Request) -> str:
    """The id set by RequestIDMiddleware, or a fresh one outside it."""
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def handle_app_exception(request: Request, exc: AppException) -> JSONResponse:
    request_id = get_request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed with %s",
        exc.error_code.value,
        extra={"extra_data": {
            "error_message": exc.message,
            "status_code": exc.status_code,
            "details": exc.details,
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }}
    )

    body = ErrorResponse(
        error_code=exc.error_code.value,
        message=exc.message,
        retryable=exc.retryable,
        details=exc.details,
        request_id=request_id,
    )
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    request_id = get_request_id(request)
    logger.error(
        "Unexpected error: %s",
        type(exc).__name__,
        extra={"extra_data": {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }},
        exc_info=exc,
    )

    body = ErrorResponse(
        error_code=ErrorCode.INTERNAL_ERROR.value,
        message="An unexpected error occurred. Please try again later.",
        request_id=request_id,
    )
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


def register_exception_handlers(app) -> None:
    """Install the handlers on a FastAPI application."""
    app.add_exception_handler(AppException, handle_app_exception)
    app.add_exception_handler(Exception, handle_unexpected_exception)
