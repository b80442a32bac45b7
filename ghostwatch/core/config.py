"""
Application configuration using Pydantic Settings.

Centralizes all configuration with environment variable support.
"""

from functools import lru_cache
from typing import Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars
    )

    # Telegram bot
    telegram_bot_token: str = ""
    bot_admin_id: int = 0

    # Userbot (MTProto) credentials
    userbot_api_id: int = 0
    userbot_api_hash: str = ""
    userbot_session: str = "userbot-session"

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/ghostwatch.db"

    # Environment
    environment: str = "production"
    log_level: str = "INFO"

    # Job queue (seconds)
    processing_timeout_seconds: float = 300.0
    queue_poll_interval_seconds: float = 5.0
    job_retention_hours: int = 24
    recovery_interval_seconds: float = 3600.0

    # Interactive lane
    max_task_duration_seconds: float = 420.0
    watchdog_interval_seconds: float = 30.0
    cooldown_seconds: Tuple[int, ...] = (60, 90, 120)
    dev_cooldown_seconds: Tuple[int, ...] = (5, 10, 15)

    # Monitors
    monitor_check_interval_seconds: float = 3600.0
    max_monitors_per_owner: int = 5
    username_refresh_interval_seconds: float = 3600.0

    # Stealth mode windows
    stealth_future_window_seconds: float = 25 * 60
    stealth_past_window_seconds: float = 5 * 60

    # Provider retry
    retry_attempts: int = 5
    retry_base_delay: float = 1.0

    # Limits
    download_concurrency: int = 3

    @field_validator("cooldown_seconds", "dev_cooldown_seconds")
    @classmethod
    def cooldowns_not_empty(cls, v: Tuple[int, ...]) -> Tuple[int, ...]:
        if not v:
            raise ValueError("cooldown set must contain at least one duration")
        if any(d < 0 for d in v):
            raise ValueError("cooldown durations must be >= 0")
        return v

    @field_validator("retry_attempts", "download_concurrency", "max_monitors_per_owner")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def active_cooldowns(self) -> Tuple[int, ...]:
        """Cooldown set for the current profile (shorter in development)."""
        return self.dev_cooldown_seconds if self.is_development else self.cooldown_seconds


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
