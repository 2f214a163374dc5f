"""
Per-user session index and the concurrency governor built on it.

The index is a set of session ids per user. It is written after the session
record on creation and removed alongside it on deletion, without a
transaction spanning both, so it is only eventually consistent with the
stored sessions. A record that expires through its storage TTL leaves its
id behind; the sweeper and the capacity check prune such ids. The governor
reads the index cardinality to enforce a soft cap.
"""

import logging
from typing import Set

from errors.exceptions import CapacityExceeded, StorageError
from session.keys import user_index_key
from session.storage import StorageAdapter

logger = logging.getLogger(__name__)


class UserSessionIndex:
    """Set-per-user of session ids."""

    def __init__(self, storage: StorageAdapter):
        self.storage = storage

    async def add(self, user_id: str, session_id: str) -> None:
        """Record a session id; a failure is logged, not raised."""
        try:
            await self.storage.add_to_set(user_index_key(user_id), session_id)
        except StorageError as e:
            logger.error(
                "Failed to add session %s to index of user %s: %s",
                session_id,
                user_id,
                e,
                extra={"extra_data": {"key": user_index_key(user_id), "session_id": session_id}}
            )

    async def remove(self, user_id: str, session_id: str) -> None:
        """Drop a session id; a failure is logged, not raised."""
        try:
            await self.storage.remove_from_set(user_index_key(user_id), session_id)
        except StorageError as e:
            logger.error(
                "Failed to remove session %s from index of user %s: %s",
                session_id,
                user_id,
                e,
                extra={"extra_data": {"key": user_index_key(user_id), "session_id": session_id}}
            )

    async def count(self, user_id: str) -> int:
        return await self.storage.set_size(user_index_key(user_id))

    async def members(self, user_id: str) -> Set[str]:
        return await self.storage.set_members(user_index_key(user_id))

    async def discard_stale(self, user_id: str, snapshot: Set[str], known_ids: Set[str]) -> int:
        """
        Drop ids from a members snapshot that are not in known_ids.

        The snapshot must be read before known_ids is collected. An id added
        after the snapshot is then never touched, and an id in the snapshot
        had its record written before it was indexed.

        Returns:
            Number of ids removed.
        """
        stale = snapshot - known_ids
        for session_id in stale:
            await self.remove(user_id, session_id)
        if stale:
            logger.info(
                "Pruned %d stale entries from index of user %s",
                len(stale),
                user_id,
                extra={"extra_data": {"key": user_index_key(user_id)}}
            )
        return len(stale)


class ConcurrencyGovernor:
    """
    Enforces a maximum number of concurrent sessions per user.

    The count is read before the new session is persisted and indexed, so
    concurrent creations for one user can each pass the check and overshoot
    the cap by a small margin. This is an accepted soft limit.
    """

    def __init__(self, index: UserSessionIndex, max_concurrent_sessions: int):
        self.index = index
        self.max_concurrent_sessions = max_concurrent_sessions

    async def ensure_capacity(self, user_id: str) -> int:
        """
        Check the user's session count against the cap.

        Returns:
            The current count.

        Raises:
            CapacityExceeded: If the user is at or above the cap.
        """
        current = await self.index.count(user_id)
        if current >= self.max_concurrent_sessions:
            logger.warning(
                "User %s reached the concurrent session limit (%d/%d)",
                user_id,
                current,
                self.max_concurrent_sessions,
                extra={"extra_data": {"key": user_index_key(user_id)}}
            )
            raise CapacityExceeded(user_id, self.max_concurrent_sessions, current)
        return current
