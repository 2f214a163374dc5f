"""
Per-session distributed mutual exclusion.

A lock is a storage key holding a random owner token with a lease expiry.
Acquisition is a single atomic set-if-absent-with-expiry; release is a
compare-and-delete so a holder whose lease already expired can never remove
a lock that another caller has since acquired.

Lease expiry is the only recovery path when a holder dies inside its
critical section: there is no heartbeat or renewal. The lease must therefore
exceed the longest expected critical section by a comfortable margin.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from errors.exceptions import LockTimeout
from resilience.retry import calculate_delay
from session.storage import StorageAdapter
from telemetry.service import get_telemetry_service, start_span

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LockConfig:
    """
    Timing configuration for lock acquisition.

    Attributes:
        lease_ms: Lease granted on acquisition, in milliseconds.
        retry_delay: Delay after the first failed attempt, in seconds.
        max_retry_delay: Upper bound on any single delay, in seconds.
        backoff_base: Growth factor between successive delays.
        max_attempts: Maximum number of acquisition attempts.
        acquire_timeout: Overall deadline for acquisition, in seconds.
    """
    lease_ms: int = 30000
    retry_delay: float = 0.1
    max_retry_delay: float = 1.0
    backoff_base: float = 1.5
    max_attempts: int = 50
    acquire_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "LockConfig":
        return cls(
            lease_ms=settings.lock_lease_ms,
            retry_delay=settings.lock_retry_delay_ms / 1000.0,
            max_retry_delay=settings.lock_max_retry_delay_ms / 1000.0,
            max_attempts=settings.lock_max_retries,
            acquire_timeout=settings.lock_acquire_timeout_seconds,
        )


@dataclass(frozen=True)
class LockLease:
    """A granted lock: which key, which token, and how it was obtained."""
    resource_key: str
    owner_token: str
    operation: str
    lease_ms: int
    attempts: int
    waited_seconds: float


class LockManager:
    """
    Lease-based lock manager on top of a StorageAdapter.

    Attributes:
        storage: Adapter providing set_if_absent and compare_and_delete
        config: Lease and retry timing
    """

    def __init__(
        self,
        storage: StorageAdapter,
        config: Optional[LockConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.config = config or LockConfig()
        self._clock = clock

    @staticmethod
    def new_token(operation: str) -> str:
        """Generate an owner token unique to one acquisition attempt."""
        return f"{operation}-{uuid.uuid4().hex}"

    async def try_acquire(
        self,
        resource_key: str,
        owner_token: str,
        lease_ms: Optional[int] = None,
    ) -> bool:
        """
        Make a single acquisition attempt.

        Returns:
            True if the lock was granted to owner_token, False if held by
            someone else.
        """
        return await self.storage.set_if_absent(
            resource_key, owner_token, lease_ms or self.config.lease_ms
        )

    async def acquire(self, resource_key: str, operation: str = "update") -> LockLease:
        """
        Acquire a lock, retrying with increasing backoff until the deadline.

        Args:
            resource_key: Lock key to acquire.
            operation: Name of the operation, embedded in the owner token and logs.

        Returns:
            The granted LockLease.

        Raises:
            LockTimeout: If attempts or the deadline are exhausted.
            StorageError: If the backend fails.
        """
        attributes = {"lock.key": resource_key, "lock.operation": operation}
        with start_span("session.lock.acquire", attributes) as span:
            lease = await self._acquire(resource_key, operation)
            span.set_attribute("lock.attempts", lease.attempts)
            return lease

    async def _acquire(self, resource_key: str, operation: str) -> LockLease:
        config = self.config
        started = self._clock()
        deadline = started + config.acquire_timeout
        attempts = 0

        for attempt in range(config.max_attempts):
            attempts = attempt + 1
            token = self.new_token(operation)
            if await self.try_acquire(resource_key, token):
                waited = self._clock() - started
                logger.debug(
                    "Lock acquired",
                    extra={"extra_data": {
                        "lock_key": resource_key,
                        "operation": operation,
                        "attempt": attempts,
                    }}
                )
                self._record_wait(operation, waited, acquired=True)
                return LockLease(
                    resource_key=resource_key,
                    owner_token=token,
                    operation=operation,
                    lease_ms=config.lease_ms,
                    attempts=attempts,
                    waited_seconds=waited,
                )

            remaining = deadline - self._clock()
            if attempts >= config.max_attempts or remaining <= 0:
                break

            delay = calculate_delay(
                attempt, config.retry_delay, config.backoff_base, config.max_retry_delay
            )
            await asyncio.sleep(min(delay, remaining))

        waited = self._clock() - started
        logger.warning(
            "Lock acquisition timed out for %s after %d attempts",
            resource_key,
            attempts,
            extra={"extra_data": {
                "lock_key": resource_key,
                "operation": operation,
                "attempts": attempts,
                "waited_seconds": round(waited, 3),
            }}
        )
        self._record_wait(operation, waited, acquired=False)
        raise LockTimeout(resource_key, attempts, waited)

    async def release(self, resource_key: str, owner_token: str) -> bool:
        """
        Release a lock only if owner_token still holds it.

        Returns:
            True if the lock was deleted. False means the lease had already
            expired, possibly followed by another caller acquiring it; that
            newer lock is left untouched.
        """
        released = await self.storage.compare_and_delete(resource_key, owner_token)
        if released:
            logger.debug(
                "Lock released",
                extra={"extra_data": {"lock_key": resource_key}}
            )
        else:
            logger.warning(
                "Lock %s was no longer held by its owner at release",
                resource_key,
                extra={"extra_data": {"lock_key": resource_key, "owner_token": owner_token}}
            )
        return released

    @asynccontextmanager
    async def lock(self, resource_key: str, operation: str = "update") -> AsyncIterator[LockLease]:
        """
        Hold a lock for the duration of an ``async with`` block.

        Usage:
            async with lock_manager.lock("lock:session:U1:T1", "state_update"):
                ...  # read-modify-write
        """
        lease = await self.acquire(resource_key, operation)
        try:
            yield lease
        finally:
            await self._release_logged(lease)

    async def with_lock(
        self,
        resource_key: str,
        operation_name: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run fn while holding the lock for resource_key.

        The lock is always released afterwards. A failed release is logged
        and never replaces fn's own result or exception.
        """
        async with self.lock(resource_key, operation_name):
            return await fn()

    async def _release_logged(self, lease: LockLease) -> None:
        try:
            await self.release(lease.resource_key, lease.owner_token)
        except Exception as e:
            logger.error(
                "Failed to release lock %s: %s",
                lease.resource_key,
                e,
                exc_info=True,
                extra={"extra_data": {
                    "lock_key": lease.resource_key,
                    "operation": lease.operation,
                }}
            )

    @staticmethod
    def _record_wait(operation: str, waited_seconds: float, acquired: bool) -> None:
        telemetry = get_telemetry_service()
        if telemetry is not None:
            telemetry.record_metric(
                "session.lock.wait_ms",
                round(waited_seconds * 1000, 2),
                tags={"operation": operation, "acquired": str(acquired).lower()},
            )
