"""
In-process storage adapter.

Keeps values in a local dict and emulates TTL with deferred timers scheduled
on the running event loop. A value is also treated as gone as soon as its
recorded expiry passes, so a late timer never exposes stale data.

This backend is for development and tests: it shares nothing between
processes, so its locks only exclude coroutines within one worker.
"""

import asyncio
import fnmatch
import logging
from typing import Optional, Set

from session.storage import StorageAdapter, require_positive_ttl

logger = logging.getLogger(__name__)


class InMemoryStorageAdapter(StorageAdapter):
    """
    Dict-backed storage adapter with timer-driven expiry.

    Every operation runs without awaiting between its read and its write,
    which makes set_if_absent and compare_and_delete atomic with respect to
    other coroutines on the same loop.
    """

    backend_name = "memory"

    def __init__(self):
        self._values: dict[str, tuple[str, float]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._sets: dict[str, Set[str]] = {}

    async def connect(self) -> None:
        logger.info("Using in-process session storage")

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._values.clear()
        self._sets.clear()
        logger.info("In-process session storage cleared")

    def _store(self, key: str, value: str, ttl_seconds: float) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer(key)
        expires_at = loop.time() + ttl_seconds
        self._values[key] = (value, expires_at)
        self._timers[key] = loop.call_later(ttl_seconds, self._expire, key, expires_at)

    def _expire(self, key: str, expires_at: float) -> None:
        entry = self._values.get(key)
        # A newer write rescheduled the key; this timer is stale
        if entry is not None and entry[1] == expires_at:
            del self._values[key]
            self._timers.pop(key, None)

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _remove(self, key: str) -> bool:
        self._cancel_timer(key)
        return self._values.pop(key, None) is not None

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if asyncio.get_running_loop().time() >= expires_at:
            self._remove(key)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live_value(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store(key, value, require_positive_ttl(ttl_seconds))

    async def delete(self, key: str) -> None:
        self._remove(key)

    async def add_to_set(self, key: str, member: str) -> None:
        self._sets.setdefault(key, set()).add(member)

    async def remove_from_set(self, key: str, member: str) -> None:
        members = self._sets.get(key)
        if members is None:
            return
        members.discard(member)
        if not members:
            del self._sets[key]

    async def set_size(self, key: str) -> int:
        return len(self._sets.get(key, ()))

    async def set_members(self, key: str) -> Set[str]:
        return set(self._sets.get(key, ()))

    async def delete_with_set_removal(self, key: str, set_key: str, member: str) -> None:
        self._remove(key)
        await self.remove_from_set(set_key, member)

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms!r}")
        if self._live_value(key) is not None:
            return False
        self._store(key, value, ttl_ms / 1000.0)
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        if self._live_value(key) != expected:
            return False
        return self._remove(key)

    async def scan_keys(self, pattern: str) -> list[str]:
        values = [
            key for key in list(self._values)
            if fnmatch.fnmatchcase(key, pattern) and self._live_value(key) is not None
        ]
        return values + [key for key in self._sets if fnmatch.fnmatchcase(key, pattern)]

    async def health_check(self) -> bool:
        return True
