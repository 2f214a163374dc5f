"""
Configuration management for the session coordination service.

This module provides centralized configuration loading and validation using
Pydantic settings. Values are loaded from environment variables or .env files,
with an optional environment-specific overlay (.env.development, .env.staging,
.env.production).
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the list of .env files to load for the given environment.

    The base .env file is loaded first, then the environment-specific file
    overrides it.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }
    env_specific_file = env_file_map.get(environment, ".env.development")
    return (".env", env_specific_file)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every field has a working default so a development process can start
    against the in-process storage backend without any configuration.
    Production requires the Redis backend and an explicit REDIS_URL.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Storage backend
    session_storage_type: str = Field(
        default="redis",
        description="Session storage backend: 'redis' or 'memory'"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for session storage"
    )
    redis_key_prefix: str = Field(
        default="asset-bot:",
        description="Prefix applied to every Redis key owned by this service"
    )
    redis_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per Redis command on connection/timeout errors"
    )

    # Session lifecycle
    session_timeout_seconds: int = Field(
        default=7200,
        ge=60,
        le=7 * 24 * 3600,
        description="Idle timeout after which a session is considered expired"
    )
    session_cleanup_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Interval between expiry sweeps"
    )
    max_concurrent_sessions: int = Field(
        default=50,
        ge=1,
        le=10000,
        description="Soft cap on concurrent sessions per user"
    )
    session_end_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=300.0,
        description="Delay between ending a session and physically deleting it"
    )
    session_append_context_keys: List[str] = Field(
        default=["generated_assets", "assets", "generation_history"],
        description="Context keys whose list values are appended instead of replaced"
    )

    # Locking
    lock_lease_ms: int = Field(
        default=30000,
        ge=1000,
        description="Lease duration for per-session locks in milliseconds"
    )
    lock_retry_delay_ms: int = Field(
        default=100,
        ge=1,
        description="Initial delay between lock acquisition attempts"
    )
    lock_max_retry_delay_ms: int = Field(
        default=1000,
        ge=1,
        description="Upper bound on the delay between lock acquisition attempts"
    )
    lock_max_retries: int = Field(
        default=50,
        ge=1,
        description="Maximum lock acquisition attempts"
    )
    lock_acquire_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Overall deadline for acquiring a lock"
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="asset-session-coordinator",
        description="Service name for OpenTelemetry traces"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("session_storage_type")
    @classmethod
    def validate_session_storage_type(cls, v: str) -> str:
        """Validate that session_storage_type is either 'redis' or 'memory'."""
        v = v.strip().lower()
        if v not in {"redis", "memory"}:
            raise ValueError("session_storage_type must be 'redis' or 'memory'")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the Redis URL scheme when one is provided."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("session_append_context_keys")
    @classmethod
    def validate_append_keys(cls, v: List[str]) -> List[str]:
        """Strip blanks and reject empty key names."""
        keys = [key.strip() for key in v]
        if any(not key for key in keys):
            raise ValueError("session_append_context_keys cannot contain empty names")
        return keys

    @model_validator(mode="after")
    def validate_storage_config(self) -> "Settings":
        """Production must run on Redis with an explicit URL."""
        if self.environment == Environment.PRODUCTION and self.session_storage_type != "redis":
            raise ValueError(
                "session_storage_type must be 'redis' in the production environment"
            )
        if self.session_storage_type == "redis" and not self.redis_url:
            # Development may fall back to the in-process backend
            if self.environment != Environment.DEVELOPMENT:
                raise ValueError(
                    "redis_url is required when session_storage_type is 'redis' "
                    "in non-development environments"
                )
        return self

    @model_validator(mode="after")
    def validate_lock_timing(self) -> "Settings":
        """The retry delay bounds must be ordered."""
        if self.lock_retry_delay_ms > self.lock_max_retry_delay_ms:
            raise ValueError(
                "lock_retry_delay_ms cannot exceed lock_max_retry_delay_ms"
            )
        return self

    @property
    def uses_memory_fallback(self) -> bool:
        """True when Redis is configured without a URL in development."""
        return self.session_storage_type == "redis" and not self.redis_url


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Factory function to create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    the ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = _get_env_files(environment)
    existing_env_files = [env_file for env_file in env_files if Path(env_file).exists()]
    if not existing_env_files:
        existing_env_files = list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', []))
                error_type = error.get('type', '')
                error_msg = error.get('msg', str(error))

                if error_type == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name or "settings"] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


# Global settings cache
_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Settings are loaded once and cached for subsequent calls.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache so tests can reload with different variables."""
    global _settings_cache
    _settings_cache = None


def validate_startup() -> None:
    """
    Validate settings at application startup before accepting requests.

    Checks cross-field timing constraints that pydantic field validators
    cannot express in isolation.

    Raises:
        ConfigurationError: If any setting combination is unusable.
    """
    settings = get_settings()
    validation_errors = {}

    # A lease shorter than the time a caller may spend waiting lets a waiter
    # outlive the holder's lease on every contended acquisition.
    if settings.lock_lease_ms < settings.lock_acquire_timeout_seconds * 1000:
        validation_errors["lock_lease_ms"] = (
            f"Lock lease ({settings.lock_lease_ms}ms) must be at least the acquire "
            f"timeout ({settings.lock_acquire_timeout_seconds}s)"
        )

    if settings.session_end_grace_seconds >= settings.session_timeout_seconds:
        validation_errors["session_end_grace_seconds"] = (
            "End-of-session grace delay must be shorter than the idle timeout"
        )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )
