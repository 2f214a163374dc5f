"""
Session store: lifecycle operations over per-(user, thread) sessions.

SessionManager owns the persisted representation of every session. Callers
receive deserialized copies and route every change back through one of the
explicit update operations. Read-modify-write operations run under the
per-session lock; plain reads do not lock even though they write back a
refreshed activity timestamp (a bounded, benign race: only the timestamp
can be lost).

One SessionManager is constructed per process (see session.factory) and
injected wherever it is needed; start() and close() bracket its lifetime.
"""

import asyncio
import copy
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from errors.exceptions import (
    AppException,
    CapacityExceeded,
    SessionAbsent,
    StorageError,
    validation_error,
)
from session.index import ConcurrencyGovernor, UserSessionIndex
from session.keys import lock_key, session_key, user_index_key, validate_identifier
from session.locks import LockManager
from session.models import (
    Session,
    SessionErrorEntry,
    SessionMetadata,
    SessionState,
    default_context,
    utcnow,
)
from session.storage import StorageAdapter
from session.summary import (
    SessionStats,
    SessionSummary,
    build_session_summary,
    collect_session_stats,
)
from session.sweeper import ExpirySweeper
from telemetry.service import get_telemetry_service, start_span

logger = logging.getLogger(__name__)

DEFAULT_APPEND_CONTEXT_KEYS = ("generated_assets", "assets", "generation_history")


def merge_context(
    existing: dict[str, Any],
    patch: dict[str, Any],
    append_keys: Iterable[str] = DEFAULT_APPEND_CONTEXT_KEYS,
) -> dict[str, Any]:
    """
    Merge a partial context update into an existing context.

    For append keys, a list value is concatenated onto the existing list
    (a missing or non-list existing value counts as empty). Every other key,
    and an append key given a non-list value, is overwritten. Values are
    deep-copied so the result shares no mutable state with the inputs.
    """
    append = set(append_keys)
    merged = copy.deepcopy(existing)
    for key, value in patch.items():
        if key in append and isinstance(value, list):
            current = merged.get(key)
            if not isinstance(current, list):
                current = []
            merged[key] = current + copy.deepcopy(value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class SessionManager:
    """
    Create, read, update, end and delete workflow sessions.

    Attributes:
        storage: Storage adapter chosen at construction
        locks: Lock manager guarding read-modify-write paths
        index: Per-user session index
        governor: Soft per-user concurrency cap
        sweeper: Background expiry sweeper
    """

    def __init__(
        self,
        storage: StorageAdapter,
        lock_manager: Optional[LockManager] = None,
        *,
        session_timeout_seconds: int = 7200,
        max_concurrent_sessions: int = 50,
        cleanup_interval_seconds: float = 3600,
        end_grace_seconds: float = 5.0,
        append_context_keys: Iterable[str] = DEFAULT_APPEND_CONTEXT_KEYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.locks = lock_manager or LockManager(storage)
        self.index = UserSessionIndex(storage)
        self.governor = ConcurrencyGovernor(self.index, max_concurrent_sessions)
        self.session_timeout_seconds = int(session_timeout_seconds)
        self.end_grace_seconds = end_grace_seconds
        self.append_context_keys = tuple(append_context_keys)
        self._clock = clock
        self.sweeper = ExpirySweeper(
            storage, self.timeout, cleanup_interval_seconds, clock=clock, index=self.index
        )
        self._pending_deletions: set[asyncio.Task] = set()

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.session_timeout_seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, run_sweeper: bool = True) -> None:
        """Connect storage and start the expiry sweeper."""
        await self.storage.connect()
        if run_sweeper:
            self.sweeper.start()
        logger.info(
            "Session manager started",
            extra={"extra_data": {
                "backend": self.storage.backend_name,
                "timeout_seconds": self.session_timeout_seconds,
                "max_concurrent_sessions": self.governor.max_concurrent_sessions,
            }}
        )

    async def close(self) -> None:
        """Stop the sweeper, drop pending deferred deletions, close storage."""
        await self.sweeper.stop()
        pending = list(self._pending_deletions)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending_deletions.clear()
        await self.storage.close()
        logger.info("Session manager closed")

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _load(self, key: str) -> Optional[Session]:
        raw = await self.storage.get(key)
        if raw is None:
            return None
        try:
            return Session.from_json(raw)
        except ValidationError as e:
            logger.error(
                "Stored session at %s is unreadable: %s",
                key,
                e,
                extra={"extra_data": {"key": key}}
            )
            return None

    async def _save(self, session: Session) -> None:
        key = session_key(session.user_id, session.thread_id)
        try:
            await self.storage.set(key, session.to_json(), self.session_timeout_seconds)
        except StorageError:
            logger.error(
                "Failed to persist session %s",
                session.session_id,
                extra={"extra_data": {"key": key}}
            )
            raise

    async def _remove(self, session: Session) -> None:
        await self.storage.delete_with_set_removal(
            session_key(session.user_id, session.thread_id),
            user_index_key(session.user_id),
            session.session_id,
        )

    async def _load_live(self, user_id: str, thread_id: str) -> Session:
        """Load a session for modification; the caller holds its lock."""
        session = await self._load(session_key(user_id, thread_id))
        if session is None:
            raise SessionAbsent(user_id, thread_id)
        if session.is_expired(self._clock(), self.timeout):
            await self._expire(session)
            raise SessionAbsent(user_id, thread_id)
        return session

    async def _expire(self, session: Session) -> None:
        logger.info(
            "Session expired for user %s in thread %s",
            session.user_id,
            session.thread_id,
            extra={"extra_data": {
                "session_id": session.session_id,
                "last_activity": session.last_activity.isoformat(),
                "timeout_seconds": self.session_timeout_seconds,
            }}
        )
        await self._remove(session)

    @asynccontextmanager
    async def _locked(self, user_id: str, thread_id: str, operation: str) -> AsyncIterator[None]:
        """Trace an operation and hold the session's lock around it."""
        attributes = {"session.user_id": user_id, "session.thread_id": thread_id}
        with start_span(f"session.{operation}", attributes):
            async with self.locks.lock(lock_key(user_id, thread_id), operation):
                yield

    async def _ensure_capacity(self, user_id: str) -> None:
        try:
            await self.governor.ensure_capacity(user_id)
        except CapacityExceeded:
            # Ids of records that expired in storage still count until pruned
            if not await self._prune_index(user_id):
                raise
            await self.governor.ensure_capacity(user_id)

    async def _prune_index(self, user_id: str) -> int:
        snapshot = await self.index.members(user_id)
        live_ids = {session.session_id for session in await self.get_user_sessions(user_id)}
        return await self.index.discard_stale(user_id, snapshot, live_ids)

    @staticmethod
    def _validate_ids(user_id: str, thread_id: str) -> None:
        validate_identifier("user_id", user_id)
        validate_identifier("thread_id", thread_id)

    @staticmethod
    def _coerce_state(new_state: Union[SessionState, str]) -> SessionState:
        try:
            return SessionState(new_state)
        except ValueError:
            raise validation_error(
                f"Unknown session state: {new_state}",
                details={"allowed": [state.value for state in SessionState]},
            ) from None

    def _audit(self, action: str, session: Session, details: Optional[dict] = None) -> None:
        telemetry = get_telemetry_service()
        if telemetry is not None:
            telemetry.log_audit_event(
                event_type="session_lifecycle",
                user_id=session.user_id,
                resource_type="session",
                resource_id=session.session_id,
                action=action,
                details=details,
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        thread_id: str,
        channel_id: Optional[str] = None,
        initial_context: Optional[dict[str, Any]] = None,
    ) -> Session:
        """
        Create the session for (user_id, thread_id), or return the live one.

        The existence check and write run under the per-session lock, so
        concurrent creations for the same thread return the same session.
        The per-user cap is checked before persisting and is a soft limit
        across threads.

        Raises:
            CapacityExceeded: If the user is at or above the session cap.
            LockTimeout: If the session is busy.
            StorageError: On backend failure.
        """
        self._validate_ids(user_id, thread_id)
        key = session_key(user_id, thread_id)

        async with self._locked(user_id, thread_id, "session_create"):
            existing = await self._load(key)
            now = self._clock()
            if existing is not None:
                if not existing.is_expired(now, self.timeout):
                    logger.info(
                        "Session already exists for user %s in thread %s",
                        user_id,
                        thread_id,
                        extra={"extra_data": {"session_id": existing.session_id}}
                    )
                    return existing
                await self._expire(existing)

            await self._ensure_capacity(user_id)

            context = default_context()
            context.update(copy.deepcopy(initial_context or {}))
            session = Session(
                session_id=str(uuid.uuid4()),
                user_id=user_id,
                thread_id=thread_id,
                channel_id=channel_id or thread_id,
                state=SessionState.INITIALIZING,
                created_at=now,
                last_activity=now,
                context=context,
                metadata=SessionMetadata(session_start_time=now),
            )
            await self._save(session)
            await self.index.add(user_id, session.session_id)

        logger.info(
            "Created new session %s for user %s",
            session.session_id,
            user_id,
            extra={"extra_data": {"thread_id": thread_id, "channel_id": session.channel_id}}
        )
        self._audit("create", session)
        return session

    async def get_session(self, user_id: str, thread_id: str) -> Optional[Session]:
        """
        Load a session and refresh its activity.

        A session past its idle timeout is deleted and reported absent. The
        refresh is written back without taking the lock.

        Returns:
            A copy of the session, or None if absent or expired.
        """
        self._validate_ids(user_id, thread_id)
        session = await self._load(session_key(user_id, thread_id))
        if session is None:
            logger.debug("No session found for user %s in thread %s", user_id, thread_id)
            return None

        now = self._clock()
        if session.is_expired(now, self.timeout):
            await self._expire(session)
            return None

        session.touch(now)
        await self._save(session)
        return session

    async def update_session_state(
        self,
        user_id: str,
        thread_id: str,
        new_state: Union[SessionState, str],
    ) -> Session:
        """
        Overwrite the workflow state.

        Transition legality is not checked here; any SessionState is stored.

        Raises:
            SessionAbsent: If no live session exists.
            LockTimeout: If the session is busy.
        """
        self._validate_ids(user_id, thread_id)
        state = self._coerce_state(new_state)

        async with self._locked(user_id, thread_id, "state_update"):
            session = await self._load_live(user_id, thread_id)
            previous = session.state
            session.state = state
            session.touch(self._clock())
            await self._save(session)

        logger.info(
            "Updated session %s state: %s -> %s",
            session.session_id,
            previous.value,
            state.value,
        )
        return session

    async def update_session_context(
        self,
        user_id: str,
        thread_id: str,
        patch: dict[str, Any],
    ) -> Session:
        """
        Merge a partial update into the session context.

        List values for append keys are concatenated; other keys are
        last-write-wins. See merge_context.

        Raises:
            SessionAbsent: If no live session exists.
            LockTimeout: If the session is busy.
        """
        self._validate_ids(user_id, thread_id)
        if not isinstance(patch, dict):
            raise validation_error("Context update must be a mapping")

        async with self._locked(user_id, thread_id, "context_update"):
            session = await self._load_live(user_id, thread_id)
            session.context = merge_context(session.context, patch, self.append_context_keys)
            session.touch(self._clock())
            await self._save(session)

        logger.debug(
            "Updated context for session %s",
            session.session_id,
            extra={"extra_data": {"keys": sorted(patch)}}
        )
        return session

    async def record_session_error(
        self,
        user_id: str,
        thread_id: str,
        error: Union[BaseException, str],
        code: Optional[str] = None,
    ) -> Session:
        """
        Append an error entry to the session and move it to the error state.

        Raises:
            SessionAbsent: If no live session exists.
            LockTimeout: If the session is busy.
        """
        self._validate_ids(user_id, thread_id)
        if code is None:
            code = error.error_code.value if isinstance(error, AppException) else "UNKNOWN_ERROR"

        async with self._locked(user_id, thread_id, "error_record"):
            session = await self._load_live(user_id, thread_id)
            now = self._clock()
            entry = SessionErrorEntry(timestamp=now, message=str(error), code=code)
            session.metadata.errors.append(entry)
            session.state = SessionState.ERROR
            session.touch(now)
            await self._save(session)

        logger.error(
            "Added error to session %s",
            session.session_id,
            extra={"extra_data": {"code": code, "error_message": entry.message}}
        )
        return session

    async def track_user_interaction(
        self,
        user_id: str,
        thread_id: str,
        interaction_type: str,
    ) -> Session:
        """
        Count an intentional user action and refresh activity.

        Unlike get_session's refresh, this increments the interaction
        counter used for analytics.

        Raises:
            SessionAbsent: If no live session exists.
            LockTimeout: If the session is busy.
        """
        self._validate_ids(user_id, thread_id)

        async with self._locked(user_id, thread_id, "interaction"):
            session = await self._load_live(user_id, thread_id)
            session.metadata.total_interactions += 1
            session.metadata.last_interaction_type = interaction_type
            session.touch(self._clock())
            await self._save(session)

        logger.info(
            "User interaction tracked",
            extra={"extra_data": {
                "session_id": session.session_id,
                "user_id": user_id,
                "thread_id": thread_id,
                "interaction_type": interaction_type,
                "total_interactions": session.metadata.total_interactions,
            }}
        )
        return session

    async def end_session(self, user_id: str, thread_id: str) -> Session:
        """
        Mark the session completed and schedule its deletion.

        The completed record stays readable for end_grace_seconds so
        in-flight readers can observe the terminal state.

        Raises:
            SessionAbsent: If no live session exists.
            LockTimeout: If the session is busy.
        """
        self._validate_ids(user_id, thread_id)

        async with self._locked(user_id, thread_id, "session_end"):
            session = await self._load_live(user_id, thread_id)
            now = self._clock()
            metadata = session.metadata
            session.state = SessionState.COMPLETED
            metadata.session_end_time = now
            metadata.session_duration_ms = max(
                int((now - metadata.session_start_time).total_seconds() * 1000), 0
            )
            metadata.completed_at = now
            session.touch(now)
            await self._save(session)
            self._schedule_deletion(user_id, thread_id, session.session_id)

        details = {
            "duration_ms": metadata.session_duration_ms,
            "total_interactions": metadata.total_interactions,
            "generated_assets": len(session.context.get("generated_assets") or []),
            "client_name": session.context.get("client_name"),
        }
        logger.info(
            "Session ended successfully",
            extra={"extra_data": {"session_id": session.session_id, "user_id": user_id, **details}}
        )
        self._audit("end", session, details)
        return session

    def _schedule_deletion(self, user_id: str, thread_id: str, session_id: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._delete_after_grace(user_id, thread_id, session_id)
        )
        self._pending_deletions.add(task)
        task.add_done_callback(self._pending_deletions.discard)

    async def _delete_after_grace(self, user_id: str, thread_id: str, session_id: str) -> None:
        await asyncio.sleep(self.end_grace_seconds)
        key = session_key(user_id, thread_id)
        try:
            session = await self._load(key)
            # A replacement session for the same thread must survive
            if session is not None and session.session_id == session_id:
                await self._remove(session)
                logger.info("Deleted ended session %s", session_id)
        except StorageError as e:
            logger.error(
                "Deferred deletion of session %s failed: %s",
                session_id,
                e,
                extra={"extra_data": {"key": key}}
            )

    async def delete_session(self, user_id: str, thread_id: str) -> bool:
        """
        Remove a session and its index entry immediately.

        Returns:
            True if a stored session was removed, False if there was none.
        """
        self._validate_ids(user_id, thread_id)
        key = session_key(user_id, thread_id)
        session = await self._load(key)
        if session is None:
            # Unreadable leftovers are removed too
            await self.storage.delete(key)
            return False

        await self._remove(session)
        logger.info("Deleted session %s for user %s", session.session_id, user_id)
        self._audit("delete", session)
        return True

    async def get_user_sessions(self, user_id: str) -> list[Session]:
        """Live sessions of one user, oldest first. Does not refresh activity."""
        validate_identifier("user_id", user_id)
        now = self._clock()
        sessions = []
        for key in await self.storage.scan_keys(f"user:{user_id}:thread:*:session"):
            session = await self._load(key)
            if session is not None and not session.is_expired(now, self.timeout):
                sessions.append(session)
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    async def get_user_session_count(self, user_id: str) -> int:
        """Cardinality of the user's session index."""
        validate_identifier("user_id", user_id)
        return await self.index.count(user_id)

    async def get_session_stats(self) -> SessionStats:
        """State histogram and user count over all stored sessions."""
        return await collect_session_stats(self.storage, self.timeout, self._clock())

    async def get_session_summary(self, user_id: str, thread_id: str) -> Optional[SessionSummary]:
        """
        Digest of one session, or None if absent or expired.

        Read-only: activity is not refreshed and nothing is deleted.
        """
        self._validate_ids(user_id, thread_id)
        session = await self._load(session_key(user_id, thread_id))
        now = self._clock()
        if session is None or session.is_expired(now, self.timeout):
            return None
        return build_session_summary(session, now)

    async def check_storage_health(self) -> dict[str, Any]:
        """Report whether the storage backend is reachable."""
        healthy = await self.storage.health_check()
        return {
            "healthy": healthy,
            "backend": self.storage.backend_name,
            "message": "ok" if healthy else "storage backend unreachable",
        }
