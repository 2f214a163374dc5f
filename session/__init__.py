"""
Session coordination for the asset-generation bot.

Per-(user, thread) workflow sessions kept in an external key-value store
(Redis, or an in-process fallback), with per-session locking, a soft
per-user concurrency cap, and idle expiry.
"""

from session.factory import create_session_manager, create_storage_adapter
from session.locks import LockConfig, LockLease, LockManager
from session.manager import SessionManager, merge_context
from session.memory_storage import InMemoryStorageAdapter
from session.models import Session, SessionMetadata, SessionState
from session.redis_storage import RedisStorageAdapter
from session.storage import StorageAdapter
from session.summary import SessionStats, SessionSummary

__all__ = [
    "SessionManager",
    "merge_context",
    "Session",
    "SessionMetadata",
    "SessionState",
    "SessionStats",
    "SessionSummary",
    "StorageAdapter",
    "RedisStorageAdapter",
    "InMemoryStorageAdapter",
    "LockManager",
    "LockConfig",
    "LockLease",
    "create_session_manager",
    "create_storage_adapter",
]
