"""
Unit tests for the Redis storage adapter against a mocked redis.asyncio client.

Verifies key prefixing, the commands each operation maps onto, bounded retry
on transient errors and translation of failures into StorageError.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from errors.exceptions import StorageError
from session.redis_storage import COMPARE_AND_DELETE_SCRIPT, RedisStorageAdapter

PREFIX = "asset-bot:"


@pytest.fixture
def adapter(mock_redis):
    return RedisStorageAdapter("redis://localhost:6379/0", key_prefix=PREFIX, client=mock_redis)


class TestCommands:
    """Tests for the command each operation issues."""

    @pytest.mark.asyncio
    async def test_get_applies_prefix(self, adapter, mock_redis):
        mock_redis.get.return_value = '{"x": 1}'

        assert await adapter.get("user:U1:thread:T1:session") == '{"x": 1}'
        mock_redis.get.assert_awaited_once_with("asset-bot:user:U1:thread:T1:session")

    @pytest.mark.asyncio
    async def test_set_uses_setex(self, adapter, mock_redis):
        await adapter.set("user:U1:thread:T1:session", "{}", 7200)

        mock_redis.setex.assert_awaited_once_with("asset-bot:user:U1:thread:T1:session", 7200, "{}")

    @pytest.mark.asyncio
    async def test_set_rejects_non_positive_ttl(self, adapter, mock_redis):
        with pytest.raises(ValueError):
            await adapter.set("k", "v", 0)

        mock_redis.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_if_absent_uses_nx_px(self, adapter, mock_redis):
        mock_redis.set.return_value = None

        acquired = await adapter.set_if_absent("lock:session:U1:T1", "tok", 30000)

        assert acquired is False
        mock_redis.set.assert_awaited_once_with(
            "asset-bot:lock:session:U1:T1", "tok", px=30000, nx=True
        )

    @pytest.mark.asyncio
    async def test_compare_and_delete_runs_script(self, adapter, mock_redis):
        mock_redis.eval.return_value = 1

        assert await adapter.compare_and_delete("lock:session:U1:T1", "tok") is True
        mock_redis.eval.assert_awaited_once_with(
            COMPARE_AND_DELETE_SCRIPT, 1, "asset-bot:lock:session:U1:T1", "tok"
        )

    @pytest.mark.asyncio
    async def test_compare_and_delete_mismatch(self, adapter, mock_redis):
        mock_redis.eval.return_value = 0

        assert await adapter.compare_and_delete("lock", "stale") is False

    @pytest.mark.asyncio
    async def test_set_operations(self, adapter, mock_redis):
        mock_redis.scard.return_value = 3
        mock_redis.smembers.return_value = {"s1", "s2"}

        await adapter.add_to_set("user:U1:sessions", "s1")
        await adapter.remove_from_set("user:U1:sessions", "s0")

        assert await adapter.set_size("user:U1:sessions") == 3
        assert await adapter.set_members("user:U1:sessions") == {"s1", "s2"}
        mock_redis.sadd.assert_awaited_once_with("asset-bot:user:U1:sessions", "s1")
        mock_redis.srem.assert_awaited_once_with("asset-bot:user:U1:sessions", "s0")

    @pytest.mark.asyncio
    async def test_delete_with_set_removal_uses_transaction(self, adapter, mock_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 1])
        pipeline_cm = MagicMock()
        pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_cm.__aexit__ = AsyncMock(return_value=False)
        mock_redis.pipeline = MagicMock(return_value=pipeline_cm)

        await adapter.delete_with_set_removal("user:U1:thread:T1:session", "user:U1:sessions", "s1")

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("asset-bot:user:U1:thread:T1:session")
        pipe.srem.assert_called_once_with("asset-bot:user:U1:sessions", "s1")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_keys_strips_prefix(self, adapter, mock_redis):
        async def scan_iter(match, count):
            assert match == "asset-bot:user:*:thread:*:session"
            for key in ["asset-bot:user:U1:thread:T1:session", "asset-bot:user:U2:thread:T9:session"]:
                yield key

        mock_redis.scan_iter = scan_iter

        keys = await adapter.scan_keys("user:*:thread:*:session")

        assert keys == ["user:U1:thread:T1:session", "user:U2:thread:T9:session"]


class TestFailures:
    """Tests for retry and error translation."""

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, adapter, mock_redis):
        mock_redis.get.side_effect = [RedisConnectionError("reset"), "value"]

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()):
            assert await adapter.get("k") == "value"

        assert mock_redis.get.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_storage_error_with_key(self, adapter, mock_redis):
        mock_redis.setex.side_effect = RedisConnectionError("down")

        with patch("resilience.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(StorageError) as exc_info:
                await adapter.set("user:U1:thread:T1:session", "{}", 60)

        assert exc_info.value.key == "user:U1:thread:T1:session"
        assert exc_info.value.operation == "setex"
        assert mock_redis.setex.await_count == 3

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, adapter, mock_redis):
        mock_redis.get.side_effect = ResponseError("WRONGTYPE")

        with pytest.raises(StorageError) as exc_info:
            await adapter.get("user:U1:sessions")

        assert exc_info.value.key == "user:U1:sessions"
        assert mock_redis.get.await_count == 1

    @pytest.mark.asyncio
    async def test_command_before_connect_is_rejected(self):
        adapter = RedisStorageAdapter("redis://localhost:6379/0")

        with pytest.raises(RuntimeError):
            await adapter.get("k")


class TestLifecycle:
    """Tests for connect/close/health_check."""

    @pytest.mark.asyncio
    async def test_connect_builds_client_from_url(self):
        adapter = RedisStorageAdapter("redis://cache:6379/2", key_prefix=PREFIX)
        client = MagicMock()

        with patch("session.redis_storage.redis.from_url", return_value=client) as from_url:
            await adapter.connect()

        from_url.assert_called_once_with("redis://cache:6379/2", decode_responses=True)
        assert adapter.client is client

    @pytest.mark.asyncio
    async def test_close_releases_client(self, adapter, mock_redis):
        await adapter.close()

        mock_redis.aclose.assert_awaited_once()
        assert adapter.client is None

    @pytest.mark.asyncio
    async def test_health_check_true_on_ping(self, adapter):
        assert adapter.backend_name == "redis"
        assert await adapter.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_false_on_error(self, adapter, mock_redis):
        mock_redis.ping.side_effect = RedisConnectionError("refused")

        assert await adapter.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_false_when_not_connected(self):
        assert await RedisStorageAdapter("redis://localhost").health_check() is False
