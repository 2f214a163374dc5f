"""
Retry logic with exponential backoff.

This module implements the bounded retry used by the Redis storage adapter
for transient connection failures, and the backoff calculation shared with
the lock manager's acquisition loop.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts, including the first call.
        initial_delay: Delay before the first retry in seconds.
        exponential_base: Base for exponential backoff calculation.
        max_delay: Maximum delay between retries in seconds, or None.
        retryable_exceptions: Exception types that trigger a retry. Any
            other exception propagates immediately.
    """
    max_attempts: int = 3
    initial_delay: float = 0.1
    exponential_base: float = 2.0
    max_delay: Optional[float] = None
    retryable_exceptions: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (ConnectionError, TimeoutError)
    )


class RetryExhaustedException(Exception):
    """
    Raised when all retry attempts have been used up.

    Wraps the last exception so callers can translate it into their own
    error type without losing the cause.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_exception: BaseException,
        operation_name: Optional[str] = None
    ):
        self.attempts = attempts
        self.last_exception = last_exception
        self.operation_name = operation_name
        super().__init__(message)


def calculate_delay(
    attempt: int,
    initial_delay: float,
    exponential_base: float,
    max_delay: Optional[float] = None
) -> float:
    """
    Calculate the delay for a given retry attempt using exponential backoff.

    The delay is ``initial_delay * exponential_base ** attempt``, capped at
    ``max_delay`` when one is given. With initial_delay=0.1 and base 2.0 the
    delays are 0.1s, 0.2s, 0.4s, ...

    Args:
        attempt: The current attempt number (0-indexed)
        initial_delay: The initial delay in seconds
        exponential_base: The base for exponential calculation
        max_delay: Optional maximum delay cap

    Returns:
        The calculated delay in seconds
    """
    delay = initial_delay * (exponential_base ** attempt)

    if max_delay is not None:
        delay = min(delay, max_delay)

    return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
    **kwargs: Any
) -> T:
    """
    Execute an async function with retry logic.

    Example usage:
        value = await retry_async(
            client.get,
            "asset-bot:user:U1:thread:T1:session",
            config=RetryConfig(max_attempts=3),
            operation_name="redis.get",
        )

    Args:
        func: The async function to execute
        *args: Positional arguments to pass to the function
        config: Optional RetryConfig object with retry settings
        operation_name: Optional name for logging purposes
        context: Extra fields attached to every retry log entry
        **kwargs: Keyword arguments to pass to the function

    Returns:
        The result of the function call

    Raises:
        RetryExhaustedException: When all retry attempts are exhausted
    """
    effective_config = config or RetryConfig()
    op_name = operation_name or getattr(func, "__name__", "operation")
    log_context = context or {}

    for attempt in range(effective_config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except effective_config.retryable_exceptions as e:
            if attempt == effective_config.max_attempts - 1:
                logger.error(
                    "Retry exhausted for operation '%s' after %d attempts. "
                    "Last error: %s",
                    op_name,
                    effective_config.max_attempts,
                    str(e),
                    extra={"extra_data": {
                        **log_context,
                        "operation": op_name,
                        "attempts": effective_config.max_attempts,
                        "last_error": str(e),
                        "error_type": type(e).__name__
                    }}
                )
                raise RetryExhaustedException(
                    f"Operation '{op_name}' failed after {effective_config.max_attempts} attempts",
                    attempts=effective_config.max_attempts,
                    last_exception=e,
                    operation_name=op_name
                ) from e

            delay = calculate_delay(
                attempt,
                effective_config.initial_delay,
                effective_config.exponential_base,
                effective_config.max_delay
            )

            logger.warning(
                "Retry attempt %d/%d for operation '%s' failed with %s: %s. "
                "Retrying in %.2f seconds...",
                attempt + 1,
                effective_config.max_attempts,
                op_name,
                type(e).__name__,
                str(e),
                delay,
                extra={"extra_data": {
                    **log_context,
                    "operation": op_name,
                    "attempt": attempt + 1,
                    "max_attempts": effective_config.max_attempts,
                    "delay_seconds": delay,
                    "error_type": type(e).__name__,
                }}
            )

            await asyncio.sleep(delay)

    raise ValueError("RetryConfig.max_attempts must be at least 1")
