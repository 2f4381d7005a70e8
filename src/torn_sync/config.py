"""
Configuration management for the Torn sync agent.

This module handles environment variables, settings validation, and configuration
management using Pydantic Settings for type safety and validation.
"""

import json
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALERT_COOLDOWNS = {"chain_timeout": 60.0, "price_alert": 0.0, "daily_reminder": 0.0}
# A changed value is always delivered for these classes, so a cooldown never applies
VALUE_CHANGE_ALERT_CLASSES = frozenset({"price_alert", "daily_reminder"})


class RateLimitConfig(BaseModel):
    """Shared Torn API rate limiter settings."""

    capacity: int = Field(default=60, description="Calls admitted per window")
    window_seconds: float = Field(default=60.0, description="Rolling window length")
    min_spacing_seconds: float = Field(
        default=1.0, description="Minimum gap between two calls"
    )
    max_pending: int = Field(default=0, description="Queued callers, 0 for unbounded")


class RetryConfig(BaseModel):
    """Retry executor settings."""

    max_retries: int = Field(default=3, description="Retries on rate-limited calls")
    base_delay_seconds: float = Field(default=1.0, description="First backoff delay")
    call_timeout_seconds: float = Field(default=10.0, description="Per-call timeout")


class CacheConfig(BaseModel):
    """Adaptive cache settings."""

    default_max_age: timedelta = Field(default=timedelta(hours=1))
    field_max_age: dict[str, timedelta] = Field(default_factory=dict)

    def max_age_for(self, field_kind: str) -> timedelta:
        return self.field_max_age.get(field_kind, self.default_max_age)


class NotificationConfig(BaseModel):
    """Notification gate settings."""

    cooldowns: dict[str, timedelta] = Field(default_factory=dict)
    sweep_interval_seconds: float = Field(default=60.0)


class JobConfig(BaseModel):
    """Background job settings."""

    enabled: bool = Field(default=True, description="Run background jobs")
    disabled_jobs: list[str] = Field(default_factory=list)
    chain_watch_interval_seconds: float = 10.0
    market_price_interval_seconds: float = 30.0
    activity_status_interval_seconds: float = 300.0
    casino_ticket_target: int = 75


class DiscordConfig(BaseModel):
    """Discord delivery settings."""

    api_url: str = Field(default="https://discord.com/api/v10")
    bot_token: str = Field(default="")
    webhook_url: str = Field(default="")
    timeout_seconds: float = Field(default=10.0)


class ServerConfig(BaseModel):
    """Health server configuration settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")


def _parse_list(name: str, v: Any) -> list[str]:
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    elif isinstance(v, list):
        return v
    else:
        raise ValueError(f"{name} must be a string or list, got {type(v)}")


def _parse_seconds_map(name: str, v: Any) -> dict[str, float]:
    if isinstance(v, str):
        if not v.strip():
            return {}
        try:
            v = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"{name} must be a JSON object: {e}") from e
    if not isinstance(v, dict):
        raise ValueError(f"{name} must be a mapping, got {type(v)}")
    parsed = {str(key): float(value) for key, value in v.items()}
    for key, value in parsed.items():
        if value < 0:
            raise ValueError(f"{name}[{key}] must not be negative")
    return parsed


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Torn API configuration
    torn_api_url: str = Field(
        default="https://api.torn.com/v2", description="Torn API base URL"
    )
    torn_rate_limit_per_minute: int = Field(
        default=60, description="Torn API calls admitted per window"
    )
    rate_limit_window_seconds: float = Field(
        default=60.0, description="Rate limit rolling window in seconds"
    )
    rate_limit_min_spacing_seconds: float | None = Field(
        default=None,
        description="Minimum seconds between calls (defaults to window / capacity)",
    )
    rate_limit_max_pending: int = Field(
        default=0, description="Maximum queued calls, 0 for unbounded"
    )
    retry_max_retries: int = Field(default=3, description="Retries on rate limiting")
    retry_base_delay_seconds: float = Field(default=1.0, description="Backoff base")
    call_timeout_seconds: float = Field(default=10.0, description="Per-call timeout")

    # Cache configuration
    cache_max_age_seconds: float = Field(
        default=3600.0, description="Default max age of cached fields"
    )
    cache_field_max_age_seconds: str | dict[str, float] = Field(
        default="",
        description='Per-field max age as JSON, e.g. {"faction_oc": 1800}',
    )

    # Notification configuration
    alert_cooldown_seconds: str | dict[str, float] = Field(
        default="",
        description='Per-alert-class cooldown as JSON, e.g. {"chain_timeout": 60}',
    )
    alert_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between notification record sweeps"
    )

    # Credentials
    encryption_secret: str = Field(
        default="", description="Passphrase used to encrypt stored API keys"
    )
    torn_api_key: str = Field(
        default="", description="Fallback Torn API key for watchlist polling"
    )

    # Discord configuration
    discord_api_url: str = Field(default="https://discord.com/api/v10")
    discord_bot_token: str = Field(default="", description="Discord bot token")
    discord_webhook_url: str = Field(
        default="", description="Fallback webhook for alerts without a channel"
    )

    # Jobs
    enable_background_jobs: bool = Field(
        default=True, description="Start background jobs (health server always runs)"
    )
    disabled_jobs: str | list[str] = Field(
        default="", description="Jobs to keep disabled (comma-separated names)"
    )
    chain_watch_interval_seconds: float = Field(default=10.0)
    market_price_interval_seconds: float = Field(default=30.0)
    activity_status_interval_seconds: float = Field(default=300.0)
    casino_ticket_target: int = Field(default=75, description="Daily casino ticket target")

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    @field_validator("disabled_jobs", mode="before")
    @classmethod
    def parse_disabled_jobs(cls, v: Any) -> list[str]:
        """Parse disabled jobs from comma-separated string or list."""
        return _parse_list("disabled_jobs", v)

    @field_validator("cache_field_max_age_seconds", mode="before")
    @classmethod
    def parse_field_max_age(cls, v: Any) -> dict[str, float]:
        """Parse per-field max age from JSON string or mapping."""
        return _parse_seconds_map("cache_field_max_age_seconds", v)

    @field_validator("alert_cooldown_seconds", mode="before")
    @classmethod
    def parse_alert_cooldowns(cls, v: Any) -> dict[str, float]:
        """Parse per-alert-class cooldowns from JSON string or mapping."""
        cooldowns = _parse_seconds_map("alert_cooldown_seconds", v)
        ineffective = sorted(name for name in VALUE_CHANGE_ALERT_CLASSES if cooldowns.get(name))
        if ineffective:
            raise ValueError(
                f"alert_cooldown_seconds cannot be set for {', '.join(ineffective)}: "
                "a changed value is always delivered"
            )
        return cooldowns

    @field_validator("torn_rate_limit_per_minute")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("torn_rate_limit_per_minute must be positive")
        return v

    @field_validator("rate_limit_window_seconds")
    @classmethod
    def validate_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit_window_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}")
        return v.lower()

    @property
    def rate_limit_config(self) -> RateLimitConfig:
        """Get rate limiter configuration."""
        spacing = self.rate_limit_min_spacing_seconds
        if spacing is None:
            spacing = self.rate_limit_window_seconds / self.torn_rate_limit_per_minute
        return RateLimitConfig(
            capacity=self.torn_rate_limit_per_minute,
            window_seconds=self.rate_limit_window_seconds,
            min_spacing_seconds=spacing,
            max_pending=self.rate_limit_max_pending,
        )

    @property
    def retry_config(self) -> RetryConfig:
        """Get retry configuration."""
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay_seconds=self.retry_base_delay_seconds,
            call_timeout_seconds=self.call_timeout_seconds,
        )

    @property
    def cache_config(self) -> CacheConfig:
        """Get cache configuration."""
        field_max_age = self.cache_field_max_age_seconds
        if isinstance(field_max_age, str):
            field_max_age = _parse_seconds_map("cache_field_max_age_seconds", field_max_age)
        return CacheConfig(
            default_max_age=timedelta(seconds=self.cache_max_age_seconds),
            field_max_age={
                name: timedelta(seconds=seconds) for name, seconds in field_max_age.items()
            },
        )

    @property
    def notification_config(self) -> NotificationConfig:
        """Get notification gate configuration."""
        overrides = self.alert_cooldown_seconds
        if isinstance(overrides, str):
            overrides = _parse_seconds_map("alert_cooldown_seconds", overrides)
        cooldowns = {**DEFAULT_ALERT_COOLDOWNS, **overrides}
        return NotificationConfig(
            cooldowns={name: timedelta(seconds=s) for name, s in cooldowns.items()},
            sweep_interval_seconds=self.alert_sweep_interval_seconds,
        )

    @property
    def job_config(self) -> JobConfig:
        """Get background job configuration."""
        disabled = self.disabled_jobs
        if isinstance(disabled, str):
            disabled = _parse_list("disabled_jobs", disabled)
        return JobConfig(
            enabled=self.enable_background_jobs,
            disabled_jobs=disabled,
            chain_watch_interval_seconds=self.chain_watch_interval_seconds,
            market_price_interval_seconds=self.market_price_interval_seconds,
            activity_status_interval_seconds=self.activity_status_interval_seconds,
            casino_ticket_target=self.casino_ticket_target,
        )

    @property
    def discord_config(self) -> DiscordConfig:
        """Get Discord configuration."""
        return DiscordConfig(
            api_url=self.discord_api_url,
            bot_token=self.discord_bot_token,
            webhook_url=self.discord_webhook_url,
            timeout_seconds=self.call_timeout_seconds,
        )

    @property
    def server_config(self) -> ServerConfig:
        """Get server configuration."""
        return ServerConfig(host=self.host, port=self.port)


# Global settings instance - initialized lazily, only used by the entry point
_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
