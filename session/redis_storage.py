"""
Redis-based storage adapter.

This module provides the durable, networked implementation of the
StorageAdapter interface. Values are stored as strings under a configurable
key prefix for namespace isolation; TTLs are native Redis expiries.

Lock primitives map onto single atomic Redis operations:
- set-if-absent with expiry is ``SET key value NX PX ttl``
- compare-and-delete is a Lua script evaluated server-side

Transient connection and timeout errors are retried a bounded number of
times; anything left over surfaces as ``StorageError`` carrying the key.
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from errors.exceptions import StorageError
from resilience.retry import RetryConfig, RetryExhaustedException, retry_async
from session.storage import StorageAdapter, require_positive_ttl

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Deletes KEYS[1] only while it still holds ARGV[1]
COMPARE_AND_DELETE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

SCAN_BATCH_SIZE = 500


class RedisStorageAdapter(StorageAdapter):
    """
    Redis-backed storage adapter.

    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
        key_prefix: Prefix prepended to every logical key
        retry_config: Bounded retry applied to each command
        client: Redis async client instance (initialized via connect())
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "",
        max_retries: int = 3,
        client: Optional[Any] = None,
    ):
        """
        Initialize the Redis storage adapter.

        Args:
            redis_url: Redis connection URL.
            key_prefix: Namespace prefix applied to every key.
            max_retries: Attempts per command on connection/timeout errors.
            client: Pre-built client, used instead of connecting from the URL.
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.retry_config = RetryConfig(
            max_attempts=max_retries,
            initial_delay=0.1,
            exponential_base=2.0,
            max_delay=1.0,
            retryable_exceptions=(RedisConnectionError, RedisTimeoutError),
        )
        self.client = client

    async def connect(self) -> None:
        """
        Create the async Redis client from the configured URL.

        The client connects lazily on first command; use health_check() to
        verify reachability.
        """
        if self.client is None:
            self.client = redis.from_url(self.redis_url, decode_responses=True)
            logger.info(
                "Redis storage adapter initialized",
                extra={"extra_data": {"key_prefix": self.key_prefix}}
            )

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Redis storage adapter closed")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip_prefix(self, full_key: str) -> str:
        if self.key_prefix and full_key.startswith(self.key_prefix):
            return full_key[len(self.key_prefix):]
        return full_key

    def _require_client(self) -> Any:
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.client

    async def _execute(
        self,
        operation: str,
        key: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run one Redis call with bounded retry, translating failures."""
        try:
            return await retry_async(
                func,
                *args,
                config=self.retry_config,
                operation_name=f"redis.{operation}",
                context={"key": key},
                **kwargs,
            )
        except RetryExhaustedException as e:
            raise StorageError(
                f"Redis {operation} failed after {e.attempts} attempts: {e.last_exception}",
                key=key,
                operation=operation,
            ) from e
        except RedisError as e:
            logger.error(
                "Redis %s failed for key %s: %s",
                operation,
                key,
                e,
                extra={"extra_data": {"key": key, "operation": operation}}
            )
            raise StorageError(
                f"Redis {operation} failed: {e}",
                key=key,
                operation=operation,
            ) from e

    async def get(self, key: str) -> Optional[str]:
        client = self._require_client()
        return await self._execute("get", key, client.get, self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = require_positive_ttl(ttl_seconds)
        client = self._require_client()
        await self._execute("setex", key, client.setex, self._key(key), ttl, value)

    async def delete(self, key: str) -> None:
        client = self._require_client()
        await self._execute("delete", key, client.delete, self._key(key))

    async def add_to_set(self, key: str, member: str) -> None:
        client = self._require_client()
        await self._execute("sadd", key, client.sadd, self._key(key), member)

    async def remove_from_set(self, key: str, member: str) -> None:
        client = self._require_client()
        await self._execute("srem", key, client.srem, self._key(key), member)

    async def set_size(self, key: str) -> int:
        client = self._require_client()
        return int(await self._execute("scard", key, client.scard, self._key(key)))

    async def set_members(self, key: str) -> Set[str]:
        client = self._require_client()
        members = await self._execute("smembers", key, client.smembers, self._key(key))
        return set(members or ())

    async def delete_with_set_removal(self, key: str, set_key: str, member: str) -> None:
        client = self._require_client()

        async def _delete_pipeline() -> None:
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(self._key(key))
                pipe.srem(self._key(set_key), member)
                await pipe.execute()

        await self._execute("pipeline.delete_srem", key, _delete_pipeline)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms!r}")
        client = self._require_client()
        result = await self._execute(
            "set_nx", key, client.set, self._key(key), value, px=int(ttl_ms), nx=True
        )
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        client = self._require_client()
        result = await self._execute(
            "compare_and_delete",
            key,
            client.eval,
            COMPARE_AND_DELETE_SCRIPT,
            1,
            self._key(key),
            expected,
        )
        return int(result or 0) == 1

    async def scan_keys(self, pattern: str) -> list[str]:
        client = self._require_client()

        async def _collect() -> list[str]:
            found = []
            async for full_key in client.scan_iter(match=self._key(pattern), count=SCAN_BATCH_SIZE):
                found.append(self._strip_prefix(full_key))
            return found

        return await self._execute("scan", pattern, _collect)

    async def health_check(self) -> bool:
        """
        Check connectivity with PING.

        Returns:
            True if Redis answered, False otherwise. Never raises.
        """
        if not self.client:
            return False

        try:
            result = await self.client.ping()
            return result is True
        except Exception as e:
            logger.warning(
                "Redis health check failed: %s",
                e,
                extra={"extra_data": {"error": str(e)}}
            )
            return False
