"""
Tests for application settings.
"""

import pytest
from pydantic import ValidationError

from ghostwatch.core.config import Settings, get_settings


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


class TestSettings:
    """Tests for Settings defaults and validation."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        settings = make_settings()

        assert settings.processing_timeout_seconds == 300.0
        assert settings.max_monitors_per_owner == 5
        assert settings.retry_attempts == 5
        assert settings.cooldown_seconds == (60, 90, 120)
        assert settings.is_development is False

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MAX_MONITORS_PER_OWNER", "9")
        monkeypatch.setenv("PROCESSING_TIMEOUT_SECONDS", "12.5")

        settings = make_settings()

        assert settings.max_monitors_per_owner == 9
        assert settings.processing_timeout_seconds == 12.5

    def test_development_uses_short_cooldowns(self):
        settings = make_settings(environment="Development")

        assert settings.is_development is True
        assert settings.active_cooldowns == (5, 10, 15)

    def test_production_cooldowns(self):
        assert make_settings(environment="production").active_cooldowns == (60, 90, 120)

    def test_empty_cooldowns_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(cooldown_seconds=())

    def test_negative_cooldown_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(cooldown_seconds=(10, -1))

    def test_zero_retry_attempts_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(retry_attempts=0)


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
