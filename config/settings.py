"""
Configuration management for the course copilot conversation core.

This module provides centralized configuration loading and validation using
Pydantic settings. Values are loaded from environment variables or .env
files, with environment-specific overrides selected by ENVIRONMENT.
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

    Files are loaded in order, with later files overriding earlier ones.

    Args:
        environment: The target environment.

    Returns:
        Tuple of .env file paths to load.
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

    Every field has a default so the service starts with an in-memory
    session store in development. Non-development environments must point
    the Redis store at a real server.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Session Store Configuration
    session_store_type: str = Field(
        default="memory",
        description="Session store type: 'memory' or 'redis'"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for session storage"
    )

    # Session Lifecycle Configuration
    default_context_type: str = Field(
        default="course_creation",
        description="Workflow domain assigned to sessions created without one"
    )
    max_active_sessions_per_user: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Active sessions a user may hold before the oldest is abandoned"
    )
    session_cache_ttl_seconds: int = Field(
        default=900,
        ge=1,
        le=86400,
        description="Lifetime of an in-process session cache entry"
    )
    session_idle_timeout_seconds: int = Field(
        default=3600,
        ge=60,
        description="Idle time after which an active session is abandoned by cleanup"
    )
    cleanup_interval_seconds: int = Field(
        default=3600,
        ge=0,
        description="Period of the background cleanup loop; 0 disables it"
    )

    # Flow Engine Configuration
    backtrack_confirmation_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Loss significance above which a backtrack needs confirmation"
    )
    max_recovery_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Recovery attempts before manual intervention is requested"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    service_name: str = Field(
        default="course-copilot",
        description="Service name attached to structured log entries"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("session_store_type")
    @classmethod
    def validate_session_store_type(cls, v: str) -> str:
        """Validate that session_store_type is either 'memory' or 'redis'."""
        v = v.strip().lower()
        if v not in {"memory", "redis"}:
            raise ValueError("session_store_type must be 'memory' or 'redis'")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the Redis URL scheme when one is given."""
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @model_validator(mode="after")
    def validate_session_store_config(self) -> "Settings":
        """Validate that a Redis URL is provided when the Redis store is selected."""
        if self.session_store_type == "redis" and not self.redis_url:
            if self.environment != Environment.DEVELOPMENT:
                raise ValueError(
                    "redis_url is required when session_store_type is 'redis' "
                    "in non-development environments"
                )
        if self.session_store_type == "memory" and self.environment == Environment.PRODUCTION:
            raise ValueError(
                "session_store_type 'memory' is not allowed in production; "
                "configure the redis store"
            )
        return self


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
                    ENVIRONMENT variable.

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

    Returns:
        Settings: The validated application settings.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    Mostly useful for tests that reload settings with different
    environment variables.
    """
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Optional[Settings] = None) -> None:
    """
    Validate settings combinations at application startup.

    Args:
        settings: Settings to check; defaults to the cached application settings.

    Raises:
        ConfigurationError: If any settings combination is unusable.
    """
    settings = settings or get_settings()

    validation_errors = {}

    # An entry that outlives the idle window would keep serving a session
    # that cleanup already abandoned in the store.
    if settings.session_cache_ttl_seconds > settings.session_idle_timeout_seconds:
        validation_errors["session_cache_ttl_seconds"] = (
            "Cache TTL must not exceed session_idle_timeout_seconds"
        )

    if (
        settings.cleanup_interval_seconds
        and settings.cleanup_interval_seconds > settings.session_idle_timeout_seconds * 24
    ):
        validation_errors["cleanup_interval_seconds"] = (
            "Cleanup interval is too long relative to the idle timeout"
        )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )
