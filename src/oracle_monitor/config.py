"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Oracle Monitor application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings.

    Redis is optional: without it, rate limiting falls back to
    per-process counters.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (shared rate-limit store)",
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


class SyncSettings(BaseSettings):
    """Polling scheduler defaults applied to every sync instance."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    interval_seconds: float = Field(
        default=60.0,
        alias="SYNC_INTERVAL_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="Default poll interval per instance",
    )
    batch_size: int = Field(
        default=100,
        alias="SYNC_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Rows per insert statement when persisting a cycle",
    )
    max_concurrency: int = Field(
        default=3,
        alias="SYNC_MAX_CONCURRENCY",
        ge=1,
        le=64,
        description="Concurrent adapter calls per instance",
    )
    adapter_timeout_seconds: float = Field(
        default=30.0,
        alias="SYNC_ADAPTER_TIMEOUT_SECONDS",
        ge=0.1,
        le=600.0,
        description="Timeout for a single adapter read",
    )
    stall_threshold: int = Field(
        default=5,
        alias="SYNC_STALL_THRESHOLD",
        ge=1,
        le=1000,
        description="Consecutive failures before an instance is marked stalled",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="SYNC_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Base backoff after a failed cycle",
    )
    max_backoff_seconds: float = Field(
        default=60.0,
        alias="SYNC_MAX_BACKOFF_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Upper bound for post-failure backoff",
    )
    price_change_threshold: float = Field(
        default=0.001,
        alias="SYNC_PRICE_CHANGE_THRESHOLD",
        ge=0.0,
        le=1.0,
        description="Relative move that records a price update",
    )
    data_retention_days: int = Field(
        default=90,
        alias="SYNC_DATA_RETENTION_DAYS",
        ge=1,
        le=3650,
        description="Observations older than this are purged",
    )
    retention_interval_seconds: float = Field(
        default=3600.0,
        alias="SYNC_RETENTION_INTERVAL_SECONDS",
        ge=60.0,
        le=86_400.0,
        description="How often the retention job runs",
    )
    reference_max_age_seconds: float = Field(
        default=300.0,
        alias="SYNC_REFERENCE_MAX_AGE_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="Freshness window for cross-protocol reference prices",
    )


class ResilienceSettings(BaseSettings):
    """Circuit breaker, retry and rate limiting settings."""

    model_config = SettingsConfigDict(env_prefix="RESILIENCE_", extra="ignore")

    failure_threshold: int = Field(
        default=5,
        alias="RESILIENCE_FAILURE_THRESHOLD",
        ge=1,
        le=1000,
        description="Failures before a circuit opens",
    )
    success_threshold: int = Field(
        default=3,
        alias="RESILIENCE_SUCCESS_THRESHOLD",
        ge=1,
        le=1000,
        description="Half-open successes needed to close a circuit",
    )
    open_timeout_seconds: float = Field(
        default=60.0,
        alias="RESILIENCE_OPEN_TIMEOUT_SECONDS",
        ge=0.1,
        le=3600.0,
        description="How long a circuit stays open before a trial call",
    )
    soft_decay: bool = Field(
        default=True,
        alias="RESILIENCE_SOFT_DECAY",
        description="Decay closed-circuit failures by one per success instead of resetting",
    )
    max_retries: int = Field(
        default=3,
        alias="RESILIENCE_MAX_RETRIES",
        ge=0,
        le=20,
        description="Retries per network call",
    )
    base_delay_seconds: float = Field(
        default=0.5,
        alias="RESILIENCE_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial retry delay",
    )
    max_delay_seconds: float = Field(
        default=10.0,
        alias="RESILIENCE_MAX_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Retry delay cap",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        alias="RESILIENCE_BACKOFF_MULTIPLIER",
        ge=1.0,
        le=10.0,
        description="Exponential backoff multiplier",
    )
    rate_limit_max_requests: int = Field(
        default=25,
        alias="RESILIENCE_RATE_LIMIT_MAX_REQUESTS",
        ge=1,
        le=100_000,
        description="Requests allowed per caller per window",
    )
    rate_limit_window_seconds: float = Field(
        default=1.0,
        alias="RESILIENCE_RATE_LIMIT_WINDOW_SECONDS",
        ge=0.01,
        le=86_400.0,
        description="Sliding window length",
    )
    rate_limit_max_keys: int = Field(
        default=10_000,
        alias="RESILIENCE_RATE_LIMIT_MAX_KEYS",
        ge=1,
        le=1_000_000,
        description="Capacity of the in-process limiter (LRU eviction)",
    )


class AggregationSettings(BaseSettings):
    """Cross-protocol aggregation and trend analysis settings."""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", extra="ignore")

    min_data_sources: int = Field(
        default=2,
        alias="AGGREGATION_MIN_DATA_SOURCES",
        ge=1,
        le=100,
        description="Protocols required to aggregate a symbol",
    )
    outlier_method: Literal["threshold", "zscore", "iqr"] = Field(
        default="zscore",
        alias="AGGREGATION_OUTLIER_METHOD",
        description="Outlier detection method",
    )
    outlier_threshold: float = Field(
        default=0.02,
        alias="AGGREGATION_OUTLIER_THRESHOLD",
        ge=0.0,
        le=1.0,
        description="Deviation from median flagged by the threshold method",
    )
    analysis_window_hours: int = Field(
        default=24,
        alias="AGGREGATION_ANALYSIS_WINDOW_HOURS",
        ge=1,
        le=720,
        description="Window of history used for trend analysis",
    )
    deviation_threshold: float = Field(
        default=0.01,
        alias="AGGREGATION_DEVIATION_THRESHOLD",
        ge=0.0,
        le=1.0,
        description="Deviation counted as high in trend analysis",
    )
    min_data_points: int = Field(
        default=10,
        alias="AGGREGATION_MIN_DATA_POINTS",
        ge=2,
        le=100_000,
        description="History points required for a trend",
    )


class AlertSettings(BaseSettings):
    """Alert manager settings."""

    model_config = SettingsConfigDict(env_prefix="ALERTS_", extra="ignore")

    evaluation_interval_seconds: float = Field(
        default=30.0,
        alias="ALERTS_EVALUATION_INTERVAL_SECONDS",
        ge=1.0,
        le=3600.0,
        description="How often the alert manager evaluates rules",
    )
    lookback_minutes: int = Field(
        default=60,
        alias="ALERTS_LOOKBACK_MINUTES",
        ge=1,
        le=7 * 24 * 60,
        description="Observations older than this are ignored by the alert manager",
    )
    install_default_rules: bool = Field(
        default=True,
        alias="ALERTS_INSTALL_DEFAULT_RULES",
        description="Seed the built-in rules when no rules file is given",
    )


class HealthSettings(BaseSettings):
    """Health check manager settings."""

    model_config = SettingsConfigDict(env_prefix="HEALTH_", extra="ignore")

    interval_seconds: float = Field(
        default=30.0,
        alias="HEALTH_INTERVAL_SECONDS",
        ge=1.0,
        le=3600.0,
        description="How often health is sampled",
    )
    failure_threshold: int = Field(
        default=3,
        alias="HEALTH_FAILURE_THRESHOLD",
        ge=0,
        le=1000,
        description="Failures above which an errored instance is unhealthy",
    )


class WebhookSettings(BaseSettings):
    """Webhook notification settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    url: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_URL",
        description="Webhook endpoint receiving alert payloads",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="WEBHOOK_TIMEOUT_SECONDS",
        ge=0.1,
        le=120.0,
        description="HTTP timeout for webhook delivery",
    )

    @property
    def enabled(self) -> bool:
        """Check if webhook notifications are enabled."""
        return self.url is not None


class MonitorSettings(BaseSettings):
    """Sync instance and alert rule sources."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")

    instances_file: Path | None = Field(
        default=None,
        alias="MONITOR_INSTANCES_FILE",
        description="JSON file listing sync instances",
    )
    rules_file: Path | None = Field(
        default=None,
        alias="MONITOR_RULES_FILE",
        description="JSON file listing alert rules",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from oracle_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
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
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    resilience: ResilienceSettings = Field(
        default_factory=lambda: ResilienceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    aggregation: AggregationSettings = Field(
        default_factory=lambda: AggregationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    alerts: AlertSettings = Field(
        default_factory=lambda: AlertSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    health: HealthSettings = Field(
        default_factory=lambda: HealthSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    webhook: WebhookSettings = Field(
        default_factory=lambda: WebhookSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
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
        description="Log alerts instead of delivering them",
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
            "sync": {
                "interval_seconds": str(self.sync.interval_seconds),
                "max_concurrency": str(self.sync.max_concurrency),
                "stall_threshold": str(self.sync.stall_threshold),
                "data_retention_days": str(self.sync.data_retention_days),
            },
            "resilience": {
                "failure_threshold": str(self.resilience.failure_threshold),
                "max_retries": str(self.resilience.max_retries),
                "soft_decay": str(self.resilience.soft_decay),
            },
            "aggregation": {
                "min_data_sources": str(self.aggregation.min_data_sources),
                "outlier_method": self.aggregation.outlier_method,
            },
            "monitor": {
                "instances_file": str(self.monitor.instances_file or "(not set)"),
                "rules_file": str(self.monitor.rules_file or "(not set)"),
            },
            "webhook_enabled": str(self.webhook.enabled),
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
