"""
Resilience patterns for the session coordination service.

Provides bounded retry with exponential backoff for storage calls and the
backoff calculation used by lock acquisition.
"""

from resilience.retry import (
    RetryConfig,
    RetryExhaustedException,
    calculate_delay,
    retry_async,
)

__all__ = [
    "RetryConfig",
    "RetryExhaustedException",
    "calculate_delay",
    "retry_async",
]
