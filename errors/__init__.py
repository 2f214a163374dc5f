"""
Error handling module for the session coordination service.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException and the typed session-layer exceptions
- Error response models and FastAPI exception handlers
"""

from errors.codes import ErrorCode
from errors.exceptions import (
    AppException,
    CapacityExceeded,
    LockTimeout,
    SessionAbsent,
    StorageError,
)
from errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "CapacityExceeded",
    "LockTimeout",
    "SessionAbsent",
    "StorageError",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
