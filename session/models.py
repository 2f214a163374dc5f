"""
Session data model.

A Session is the unit of per-(user, thread) workflow state. It is stored as
JSON by the session layer; callers only ever see deserialized copies.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Workflow states a session can be in."""
    INITIALIZING = "initializing"
    WAITING_FOR_INPUT = "waiting_for_input"
    ENHANCING = "enhancing"
    SELECTING_OPERATION = "selecting_operation"
    SELECTING_MODEL = "selecting_model"
    CONFIGURING_PARAMETERS = "configuring_parameters"
    GENERATING_ASSET = "generating_asset"
    UPLOADING_ASSET = "uploading_asset"
    COMPLETED = "completed"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_context() -> dict[str, Any]:
    """Context shape every new session starts from."""
    return {
        "enhanced_prompt": None,
        "selected_operation": None,
        "selected_model": None,
        "model_parameters": {},
        "generation_history": [],
        "current_job": None,
        "generated_assets": [],
        "drive_folder": None,
    }


class SessionErrorEntry(BaseModel):
    """One failure recorded against a session."""
    timestamp: datetime
    message: str
    code: str = "UNKNOWN_ERROR"


class SessionMetadata(BaseModel):
    """Bookkeeping kept alongside the workflow context."""
    total_interactions: int = 0
    last_interaction_type: Optional[str] = None
    errors: list[SessionErrorEntry] = Field(default_factory=list)
    session_start_time: datetime = Field(default_factory=utcnow)
    session_end_time: Optional[datetime] = None
    session_duration_ms: Optional[int] = None
    completed_at: Optional[datetime] = None


class Session(BaseModel):
    """
    Accumulated workflow state for one user in one conversation thread.

    Attributes:
        session_id: Unique, immutable identifier generated at creation
        user_id: Owning user
        thread_id: Conversation thread the session is bound to
        channel_id: Channel the thread lives in
        state: Current workflow state
        created_at: Creation time (UTC)
        last_activity: Last successful read or write (UTC); never decreases
        context: Open mapping of workflow keys to values
        metadata: Interaction counter, error log, start/end timestamps
    """
    session_id: str
    user_id: str
    thread_id: str
    channel_id: str
    state: SessionState = SessionState.INITIALIZING
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=default_context)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        """
        Whether the session is logically absent.

        This predicate is shared by lazy expiry on read and by the sweeper.
        """
        return self.last_activity + timeout < now

    def touch(self, now: datetime) -> None:
        """Refresh last_activity without ever moving it backwards."""
        if now > self.last_activity:
            self.last_activity = now

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Session":
        return cls.model_validate_json(data)
