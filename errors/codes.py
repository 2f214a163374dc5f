"""
Error code catalog for the session coordination service.

This module defines all error codes raised by the session layer, covering
validation errors, session lifecycle conditions, storage failures, and
internal errors. Each code carries a default HTTP status that the route
layer may use when translating errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.

    - Validation errors (4xx): Caller supplied bad identifiers or values
    - Session conditions (4xx): Absent, busy, or over-capacity sessions
    - Storage errors (5xx): Backend failures
    - Internal errors (5xx): Server-side issues
    """

    # Validation errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Request payload validation failed (HTTP 400)"""

    # Session conditions (4xx)
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    """Session was never created or has expired (HTTP 404)"""

    SESSION_BUSY = "SESSION_BUSY"
    """Session lock could not be acquired in time; retryable (HTTP 409)"""

    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    """User reached the concurrent session cap (HTTP 429)"""

    # Storage errors (5xx)
    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Redis unreachable or timed out (HTTP 503)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_BUSY: 409,
    ErrorCode.CAPACITY_EXCEEDED: 429,
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
