"""
Background expiry sweeper.

Periodically scans every stored session and removes those whose last
activity is older than the idle timeout, together with their user-index
entry. It uses the same expiry predicate as the lazy check on read, so the
two paths never disagree about which sessions are gone. Each sweep also
prunes index entries whose session record no longer exists.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set, Tuple

from pydantic import ValidationError

from errors.exceptions import StorageError
from session.index import UserSessionIndex
from session.keys import (
    SESSION_KEY_PATTERN,
    USER_INDEX_PATTERN,
    user_id_from_index_key,
    user_index_key,
)
from session.models import Session, utcnow
from session.storage import StorageAdapter
from telemetry.service import get_telemetry_service, start_span

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Deletes idle sessions on a fixed interval.

    Attributes:
        storage: Adapter holding the sessions
        timeout: Idle timeout
        interval_seconds: Delay between sweeps
        index: Per-user session index kept in step with the records
    """

    def __init__(
        self,
        storage: StorageAdapter,
        timeout: timedelta,
        interval_seconds: float,
        clock: Callable[[], datetime] = utcnow,
        index: Optional[UserSessionIndex] = None,
    ):
        self.storage = storage
        self.index = index or UserSessionIndex(storage)
        self.timeout = timeout
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="session-expiry-sweeper"
        )
        logger.info(
            "Session cleanup job started",
            extra={"extra_data": {
                "interval_seconds": self.interval_seconds,
                "timeout_seconds": self.timeout.total_seconds(),
            }}
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session cleanup job stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                cleaned = await self.sweep_once()
            except StorageError as e:
                logger.error(
                    "Session cleanup job failed: %s",
                    e,
                    extra={"extra_data": {"key": e.key, "operation": e.operation}}
                )
                continue
            except Exception as e:
                logger.exception(
                    "Unexpected error in session cleanup job: %s",
                    e,
                    extra={"extra_data": {"error_type": type(e).__name__}}
                )
                continue
            if cleaned:
                logger.info("Session cleanup: removed %d expired sessions", cleaned)

    async def sweep_once(self) -> int:
        """
        Run one sweep.

        Expired records are deleted together with their index entry. Index
        entries naming no stored session, such as ids left behind when a
        record's storage TTL ran out, are pruned afterwards.

        Returns:
            Number of sessions removed.

        Raises:
            StorageError: If a key scan itself fails. Failures on
                individual entries are logged and skipped.
        """
        with start_span("session.sweep", {"session.timeout_seconds": self.timeout.total_seconds()}) as span:
            # Index members are read before sessions are scanned
            snapshots = await self._snapshot_index()
            cleaned, stored_ids = await self._remove_expired()
            pruned = 0
            for user_id, snapshot in snapshots.items():
                pruned += await self.index.discard_stale(
                    user_id, snapshot, stored_ids.get(user_id, set())
                )
            span.set_attribute("session.sweep.removed", cleaned)
            span.set_attribute("session.sweep.index_pruned", pruned)

        telemetry = get_telemetry_service()
        if telemetry is not None:
            telemetry.record_metric("session.sweep.removed", cleaned)
            telemetry.record_metric("session.sweep.index_pruned", pruned)
        return cleaned

    async def _snapshot_index(self) -> Dict[str, Set[str]]:
        snapshots = {}
        for key in await self.storage.scan_keys(USER_INDEX_PATTERN):
            user_id = user_id_from_index_key(key)
            try:
                snapshots[user_id] = await self.index.members(user_id)
            except StorageError as e:
                logger.error(
                    "Error reading session index %s: %s",
                    key,
                    e,
                    extra={"extra_data": {"key": key}}
                )
        return snapshots

    async def _remove_expired(self) -> Tuple[int, Dict[str, Set[str]]]:
        now = self._clock()
        cleaned = 0
        stored_ids: Dict[str, Set[str]] = {}

        for key in await self.storage.scan_keys(SESSION_KEY_PATTERN):
            try:
                raw = await self.storage.get(key)
                if raw is None:
                    continue
                session = Session.from_json(raw)
                stored_ids.setdefault(session.user_id, set()).add(session.session_id)
                if not session.is_expired(now, self.timeout):
                    continue

                await self.storage.delete_with_set_removal(
                    key, user_index_key(session.user_id), session.session_id
                )
                cleaned += 1
                logger.debug(
                    "Cleaned up expired session",
                    extra={"extra_data": {
                        "session_id": session.session_id,
                        "user_id": session.user_id,
                        "last_activity": session.last_activity.isoformat(),
                    }}
                )
            except (StorageError, ValidationError) as e:
                logger.error(
                    "Error cleaning up session %s: %s",
                    key,
                    e,
                    extra={"extra_data": {"key": key}}
                )

        return cleaned, stored_ids
