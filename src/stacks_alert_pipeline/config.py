"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Stacks alert pipeline, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite via aiosqlite for local runs)",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=100,
        description="Maximum overflow connections",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string used for cross-process rule index invalidation",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        """Check if a Redis connection is configured."""
        return self.url is not None


class RuleIndexSettings(BaseSettings):
    """Rule index cache settings."""

    model_config = SettingsConfigDict(env_prefix="RULE_INDEX_", extra="ignore")

    max_age_seconds: int = Field(
        default=600,
        alias="RULE_INDEX_MAX_AGE_SECONDS",
        ge=1,
        le=86_400,
        description="Rebuild the rule index when it is older than this",
    )
    version_key: str = Field(
        default="stacks-alerts:rule-index:version",
        alias="RULE_INDEX_VERSION_KEY",
        description="Redis key holding the rule catalog version counter",
    )


class DispatchSettings(BaseSettings):
    """Notification dispatch settings."""

    model_config = SettingsConfigDict(env_prefix="DISPATCH_", extra="ignore")

    max_attempts: int = Field(
        default=3,
        alias="DISPATCH_MAX_ATTEMPTS",
        ge=1,
        le=20,
        description="Delivery attempts before a notification is dead-lettered",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        alias="DISPATCH_HTTP_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Timeout for webhook and Slack deliveries",
    )
    webhook_enabled: bool = Field(
        default=True,
        alias="DISPATCH_WEBHOOK_ENABLED",
        description="Register the webhook transport",
    )
    slack_enabled: bool = Field(
        default=True,
        alias="DISPATCH_SLACK_ENABLED",
        description="Register the Slack transport",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from stacks_alert_pipeline.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.dispatch.max_attempts)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rule_index: RuleIndexSettings = Field(
        default_factory=lambda: RuleIndexSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    dispatch: DispatchSettings = Field(
        default_factory=lambda: DispatchSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Persist and match but log notifications instead of delivering them",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "rule_index": {
                "max_age_seconds": str(self.rule_index.max_age_seconds),
                "version_key": self.rule_index.version_key,
            },
            "dispatch": {
                "max_attempts": str(self.dispatch.max_attempts),
                "http_timeout_seconds": str(self.dispatch.http_timeout_seconds),
                "webhook_enabled": str(self.dispatch.webhook_enabled),
                "slack_enabled": str(self.dispatch.slack_enabled),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
