"""
Read-only aggregation over stored sessions.

Nothing here refreshes activity or writes to storage: stats are computed
from a scan of the stored records, and a summary is derived purely from one
session's stored context and metadata.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from session.keys import SESSION_KEY_PATTERN
from session.models import Session
from session.storage import StorageAdapter

logger = logging.getLogger(__name__)

# Context lists holding generated asset entries
ASSET_CONTEXT_KEYS = ("generated_assets", "assets")


@dataclass
class SessionStats:
    """Aggregate view over every stored session."""
    total_sessions: int = 0
    state_distribution: dict[str, int] = field(default_factory=dict)
    unique_users: int = 0
    expired_sessions: int = 0
    avg_session_age_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionSummary:
    """Human-readable digest of one session's work."""
    session_id: str
    state: str
    client_name: Optional[str]
    campaign_idea: Optional[str]
    selected_operation: Optional[str]
    selected_model: Optional[str]
    operations_used: list[str]
    models_used: list[str]
    operations_text: str
    models_text: str
    generated_assets: int
    drive_assets: int
    total_interactions: int
    session_duration_ms: int
    drive_folder: Any = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _title_words(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.replace("-", " ").split())


def humanize_operation(operation: str) -> str:
    """'text-to-image' -> 'Text To Image'."""
    return _title_words(operation)


def humanize_model(model_id: str) -> str:
    """'fal-ai/flux-pro/v1.1-ultra' -> 'V1.1 Ultra'."""
    return _title_words(model_id.rstrip("/").split("/")[-1])


def asset_entries(context: dict[str, Any]) -> list[dict[str, Any]]:
    """All dict-shaped asset entries across the asset context lists."""
    entries = []
    for key in ASSET_CONTEXT_KEYS:
        value = context.get(key)
        if isinstance(value, list):
            entries.extend(item for item in value if isinstance(item, dict))
    return entries


def _distinct(values: Iterable[Optional[str]]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def build_session_summary(session: Session, now: datetime) -> SessionSummary:
    """
    Derive a summary from a session's stored context and metadata.

    Operations and models are collected from the currently selected values
    and from every asset entry, in first-seen order. An ended session
    reports its recorded duration; a live one reports its age at ``now``.
    """
    context = session.context
    assets = asset_entries(context)

    operations = _distinct(
        [context.get("selected_operation")] + [asset.get("operation") for asset in assets]
    )
    models = _distinct(
        [context.get("selected_model")] + [asset.get("model_id") for asset in assets]
    )

    metadata = session.metadata
    if metadata.session_duration_ms is not None:
        duration_ms = metadata.session_duration_ms
    else:
        duration_ms = int((now - metadata.session_start_time).total_seconds() * 1000)

    return SessionSummary(
        session_id=session.session_id,
        state=session.state.value,
        client_name=context.get("client_name"),
        campaign_idea=context.get("campaign_idea"),
        selected_operation=context.get("selected_operation"),
        selected_model=context.get("selected_model"),
        operations_used=operations,
        models_used=models,
        operations_text=", ".join(humanize_operation(op) for op in operations) or "N/A",
        models_text=", ".join(humanize_model(model) for model in models) or "N/A",
        generated_assets=len(assets),
        drive_assets=sum(1 for asset in assets if asset.get("drive_upload")),
        total_interactions=metadata.total_interactions,
        session_duration_ms=max(duration_ms, 0),
        drive_folder=context.get("drive_folder"),
    )


async def collect_session_stats(
    storage: StorageAdapter,
    timeout: timedelta,
    now: datetime,
) -> SessionStats:
    """
    Scan every stored session and aggregate counts.

    Sessions that are stored but already past the idle timeout are counted
    in ``expired_sessions`` only; they are left for the sweeper. Records
    that fail to parse are logged and skipped.
    """
    stats = SessionStats()
    users: set[str] = set()
    total_age_ms = 0.0

    for key in await storage.scan_keys(SESSION_KEY_PATTERN):
        raw = await storage.get(key)
        if raw is None:
            continue
        try:
            session = Session.from_json(raw)
        except ValidationError as e:
            logger.error(
                "Error parsing session data for %s: %s",
                key,
                e,
                extra={"extra_data": {"key": key}}
            )
            continue

        if session.is_expired(now, timeout):
            stats.expired_sessions += 1
            continue

        stats.total_sessions += 1
        state = session.state.value
        stats.state_distribution[state] = stats.state_distribution.get(state, 0) + 1
        users.add(session.user_id)
        total_age_ms += (now - session.created_at).total_seconds() * 1000

    stats.unique_users = len(users)
    if stats.total_sessions:
        stats.avg_session_age_ms = round(total_age_ms / stats.total_sessions, 2)
    return stats
