"""
Construction of the storage adapter and session manager from settings.

The backend is selected once at startup; nothing switches it afterwards.
"""

import logging
from typing import Optional

from config.settings import Settings, get_settings
from session.locks import LockConfig, LockManager
from session.manager import SessionManager
from session.memory_storage import InMemoryStorageAdapter
from session.redis_storage import RedisStorageAdapter
from session.storage import StorageAdapter

logger = logging.getLogger(__name__)


def create_storage_adapter(settings: Settings) -> StorageAdapter:
    """
    Build the storage adapter named by the settings.

    In development, a Redis backend without a URL falls back to the
    in-process adapter with a warning. Settings validation rejects that
    combination everywhere else.
    """
    if settings.session_storage_type == "memory":
        logger.info("Using in-memory session storage")
        return InMemoryStorageAdapter()

    if settings.uses_memory_fallback:
        logger.warning(
            "REDIS_URL is not set; falling back to in-memory session storage. "
            "Sessions will not survive a restart or be shared between processes.",
            extra={"extra_data": {"environment": settings.environment.value}}
        )
        return InMemoryStorageAdapter()

    logger.info(
        "Using Redis session storage",
        extra={"extra_data": {"key_prefix": settings.redis_key_prefix}}
    )
    return RedisStorageAdapter(
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        max_retries=settings.redis_max_retries,
    )


def create_session_manager(
    settings: Optional[Settings] = None,
    storage: Optional[StorageAdapter] = None,
) -> SessionManager:
    """Wire a SessionManager, its lock manager and storage from settings."""
    settings = settings or get_settings()
    storage = storage or create_storage_adapter(settings)
    return SessionManager(
        storage,
        LockManager(storage, LockConfig.from_settings(settings)),
        session_timeout_seconds=settings.session_timeout_seconds,
        max_concurrent_sessions=settings.max_concurrent_sessions,
        cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
        end_grace_seconds=settings.session_end_grace_seconds,
        append_context_keys=settings.session_append_context_keys,
    )
