"""
Unit tests for the retry logic implementation.

These tests verify the retry behavior with exponential backoff:
- Successful calls return immediately without retry
- Retryable failures are retried up to max_attempts
- Non-retryable failures propagate on the first attempt
- RetryExhaustedException wraps the last error
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from resilience.retry import (
    RetryConfig,
    RetryExhaustedException,
    calculate_delay,
    retry_async,
)


class TestRetryConfig:
    """Tests for RetryConfig defaults and customization."""

    def test_default_config(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.initial_delay == 0.1
        assert config.exponential_base == 2.0
        assert config.max_delay is None
        assert config.retryable_exceptions == (ConnectionError, TimeoutError)

    def test_custom_config(self):
        config = RetryConfig(
            max_attempts=5,
            initial_delay=0.5,
            exponential_base=3.0,
            max_delay=10.0,
            retryable_exceptions=(OSError,)
        )

        assert config.max_attempts == 5
        assert config.max_delay == 10.0
        assert config.retryable_exceptions == (OSError,)


class TestCalculateDelay:
    """Tests for the calculate_delay function."""

    def test_exponential_backoff(self):
        assert calculate_delay(0, 0.1, 2.0) == pytest.approx(0.1)
        assert calculate_delay(1, 0.1, 2.0) == pytest.approx(0.2)
        assert calculate_delay(2, 0.1, 2.0) == pytest.approx(0.4)

    def test_custom_base(self):
        assert calculate_delay(0, 1.0, 1.5) == 1.0
        assert calculate_delay(2, 1.0, 1.5) == pytest.approx(2.25)

    def test_max_delay_cap(self):
        assert calculate_delay(5, 1.0, 2.0) == 32.0
        assert calculate_delay(5, 1.0, 2.0, max_delay=10.0) == 10.0

    def test_max_delay_not_applied_when_below(self):
        assert calculate_delay(1, 1.0, 2.0, max_delay=10.0) == 2.0


class TestRetryAsync:
    """Tests for the retry_async function."""

    @pytest.mark.asyncio
    async def test_successful_call(self):
        func = AsyncMock(return_value="value")

        result = await retry_async(func, "key", config=RetryConfig(initial_delay=0.0))

        assert result == "value"
        func.assert_awaited_once_with("key")

    @pytest.mark.asyncio
    async def test_retry_on_retryable_failure(self):
        func = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await retry_async(func, config=RetryConfig(max_attempts=3))

        assert result == "ok"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [
            pytest.approx(0.1), pytest.approx(0.2)
        ]

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        func = AsyncMock(return_value=True)

        await retry_async(func, "a", 1, config=RetryConfig(), px=100, nx=True)

        func.assert_awaited_once_with("a", 1, px=100, nx=True)

    @pytest.mark.asyncio
    async def test_non_retryable_exception_propagates_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            await retry_async(func, config=RetryConfig(max_attempts=5))

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_raises_retry_exhausted(self):
        error = TimeoutError("slow")
        func = AsyncMock(side_effect=error)

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RetryExhaustedException) as exc_info:
                await retry_async(
                    func,
                    config=RetryConfig(max_attempts=2),
                    operation_name="redis.get",
                )

        assert exc_info.value.attempts == 2
        assert exc_info.value.last_exception is error
        assert exc_info.value.operation_name == "redis.get"
        assert exc_info.value.__cause__ is error
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_max_delay_caps_backoff(self):
        func = AsyncMock(side_effect=ConnectionError("down"))
        config = RetryConfig(max_attempts=4, initial_delay=1.0, max_delay=1.5)

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RetryExhaustedException):
                await retry_async(func, config=config)

        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 1.5, 1.5]


class TestRetryExhaustedException:
    """Tests for RetryExhaustedException."""

    def test_exception_fields(self):
        cause = ConnectionError("refused")
        exc = RetryExhaustedException("failed", attempts=3, last_exception=cause, operation_name="op")

        assert str(exc) == "failed"
        assert exc.attempts == 3
        assert exc.last_exception is cause
        assert exc.operation_name == "op"


class TestRetryLogging:
    """Tests for retry logging."""

    @pytest.mark.asyncio
    async def test_logs_retry_attempts_with_context(self, caplog):
        func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()):
            with caplog.at_level(logging.WARNING, logger="resilience.retry"):
                await retry_async(
                    func,
                    config=RetryConfig(),
                    operation_name="redis.setex",
                    context={"key": "user:U1:thread:T1:session"},
                )

        records = [r for r in caplog.records if "Retry attempt" in r.getMessage()]
        assert len(records) == 1
        assert records[0].extra_data["key"] == "user:U1:thread:T1:session"
        assert records[0].extra_data["operation"] == "redis.setex"

    @pytest.mark.asyncio
    async def test_logs_exhausted_error(self, caplog):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()):
            with caplog.at_level(logging.ERROR, logger="resilience.retry"):
                with pytest.raises(RetryExhaustedException):
                    await retry_async(func, config=RetryConfig(max_attempts=2), operation_name="redis.get")

        assert any("Retry exhausted" in r.getMessage() for r in caplog.records)
