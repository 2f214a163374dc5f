"""
Storage adapter abstraction for session coordination.

This module defines the interface every session storage backend implements:
plain key/value access with a mandatory TTL, set membership for the per-user
session index, and the two atomic primitives the lock manager is built on
(set-if-absent with expiry, and compare-and-delete).

Two implementations exist: a networked Redis backend and an in-process
backend that emulates TTL with deferred timers. One of them is chosen at
construction time and injected into the session layer.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set


class StorageAdapter(ABC):
    """
    Abstract base class for session storage implementations.

    Keys passed to an adapter are logical keys (no backend prefix). All
    methods are async and idempotent: deleting a missing key or removing a
    missing set member is not an error.

    Implementations raise ``errors.StorageError`` for backend failures.
    """

    backend_name: str = "unknown"

    async def connect(self) -> None:
        """Open backend resources. Must be called before any other method."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """
        Retrieve a value by key.

        Returns:
            The stored string, or None if the key does not exist or has expired.
        """

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """
        Store a value with a time-to-live.

        Args:
            key: Logical key.
            value: Serialized value.
            ttl_seconds: Positive lifetime in seconds. There is no way to
                store without a TTL.

        Raises:
            ValueError: If ttl_seconds is not positive.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key. Deleting a missing key is a no-op."""

    @abstractmethod
    async def add_to_set(self, key: str, member: str) -> None:
        """Add a member to the set stored at key."""

    @abstractmethod
    async def remove_from_set(self, key: str, member: str) -> None:
        """Remove a member from the set stored at key."""

    @abstractmethod
    async def set_size(self, key: str) -> int:
        """Return the cardinality of the set stored at key (0 if missing)."""

    @abstractmethod
    async def set_members(self, key: str) -> Set[str]:
        """Return the members of the set stored at key."""

    @abstractmethod
    async def delete_with_set_removal(self, key: str, set_key: str, member: str) -> None:
        """
        Delete a key and remove a member from a set in one cleanup step.

        Used when a session record and its user-index entry go away together.
        """

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """
        Atomically store value only if key does not exist, with expiry.

        Returns:
            True if the value was stored, False if the key already existed.
        """

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """
        Atomically delete key only if its current value equals expected.

        Returns:
            True if the key was deleted, False otherwise.
        """

    @abstractmethod
    async def scan_keys(self, pattern: str) -> list[str]:
        """
        Return logical keys matching a glob pattern.

        Args:
            pattern: Glob pattern over logical keys, e.g. ``user:*:thread:*:session``.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check connectivity of the backend.

        This method must not raise: failures result in False.
        """


def require_positive_ttl(ttl_seconds: int) -> int:
    """Validate a TTL argument shared by every adapter's ``set``."""
    if ttl_seconds is None or int(ttl_seconds) <= 0:
        raise ValueError(f"ttl_seconds must be a positive integer, got {ttl_seconds!r}")
    return int(ttl_seconds)
