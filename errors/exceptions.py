"""
Exception classes for the session coordination service.

This module provides the AppException base class, the typed session-layer
errors (StorageError, LockTimeout, CapacityExceeded, SessionAbsent), and
convenience factory functions for the remaining error codes.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code the route layer should return
    - details: Optional additional context (e.g., the offending key)
    - retryable: Whether the caller may retry the same request

    Example:
        raise AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Invalid user id",
            details={"field": "user_id", "reason": "Contains ':'"}
        )
    """

    retryable: bool = False

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, retryable and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class StorageError(AppException):
    """
    The storage backend was unreachable, timed out, or rejected a command.

    Raised by the storage adapters after their own bounded retry has been
    used up. The session layer propagates it without retrying further.
    """

    def __init__(
        self,
        message: str = "Session store unavailable",
        key: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        self.key = key
        self.operation = operation
        details = {}
        if key is not None:
            details["key"] = key
        if operation is not None:
            details["operation"] = operation
        super().__init__(
            error_code=ErrorCode.SESSION_STORE_UNAVAILABLE,
            message=message,
            details=details or None,
        )


class LockTimeout(AppException):
    """
    A session lock could not be acquired within the retry budget.

    The condition is transient: another request holds the lease and the
    caller may retry once it is released or expires.
    """

    retryable = True

    def __init__(self, resource_key: str, attempts: int, waited_seconds: float):
        self.resource_key = resource_key
        self.attempts = attempts
        self.waited_seconds = waited_seconds
        super().__init__(
            error_code=ErrorCode.SESSION_BUSY,
            message="Session is busy with another operation, please retry",
            details={
                "key": resource_key,
                "attempts": attempts,
                "waited_seconds": round(waited_seconds, 3),
            },
        )


class CapacityExceeded(AppException):
    """The user already holds the maximum number of concurrent sessions."""

    def __init__(self, user_id: str, limit: int, current: int):
        self.user_id = user_id
        self.limit = limit
        self.current = current
        super().__init__(
            error_code=ErrorCode.CAPACITY_EXCEEDED,
            message=f"User {user_id} has reached maximum concurrent sessions limit",
            details={"user_id": user_id, "limit": limit, "current": current},
        )


class SessionAbsent(AppException):
    """No live session exists for the key, either never created or expired."""

    def __init__(self, user_id: str, thread_id: str):
        self.user_id = user_id
        self.thread_id = thread_id
        super().__init__(
            error_code=ErrorCode.SESSION_NOT_FOUND,
            message=f"No active session for user {user_id} in thread {thread_id}",
            details={"user_id": user_id, "thread_id": thread_id},
        )


# Convenience factory functions for the remaining error types

def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a validation error exception."""
    return AppException(
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details
    )
