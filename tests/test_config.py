"""
Tests for settings parsing.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import make_settings
from torn_sync.config import DEFAULT_ALERT_COOLDOWNS


class TestSettings:
    """Test settings validation and derived configuration."""

    def test_defaults(self):
        settings = make_settings()

        assert settings.torn_api_url == "https://api.torn.com/v2"
        assert settings.rate_limit_config.capacity == 60
        assert settings.rate_limit_config.min_spacing_seconds == 1.0
        assert settings.retry_config.max_retries == 3
        assert settings.job_config.enabled
        assert settings.server_config.port == 8080

    def test_explicit_spacing(self):
        settings = make_settings(
            torn_rate_limit_per_minute=100, rate_limit_min_spacing_seconds=0.25
        )

        assert settings.rate_limit_config.min_spacing_seconds == 0.25
        assert settings.rate_limit_config.capacity == 100

    def test_derived_spacing(self):
        settings = make_settings(torn_rate_limit_per_minute=120)

        assert settings.rate_limit_config.min_spacing_seconds == 0.5

    def test_disabled_jobs_from_comma_separated_string(self):
        settings = make_settings(disabled_jobs="chain-watch, market-prices,")

        assert settings.job_config.disabled_jobs == ["chain-watch", "market-prices"]

    def test_field_max_age_from_json(self):
        settings = make_settings(cache_field_max_age_seconds='{"faction_oc": 1800}')

        cache_config = settings.cache_config
        assert cache_config.max_age_for("faction_oc") == timedelta(minutes=30)
        assert cache_config.max_age_for("education") == timedelta(hours=1)

    def test_alert_cooldowns_merge_defaults(self):
        settings = make_settings(alert_cooldown_seconds={"chain_timeout": 300})

        cooldowns = settings.notification_config.cooldowns
        assert cooldowns["chain_timeout"] == timedelta(minutes=5)
        assert cooldowns["price_alert"] == timedelta(0)
        assert cooldowns["daily_reminder"] == timedelta(
            seconds=DEFAULT_ALERT_COOLDOWNS["daily_reminder"]
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"torn_rate_limit_per_minute": 0},
            {"rate_limit_window_seconds": 0},
            {"log_level": "LOUD"},
            {"log_format": "xml"},
            {"alert_cooldown_seconds": "not json"},
            {"alert_cooldown_seconds": '{"price_alert": -1}'},
            {"alert_cooldown_seconds": {"price_alert": 300}},
            {"alert_cooldown_seconds": '{"daily_reminder": 60}'},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            make_settings(**overrides)

    def test_log_settings_normalized(self):
        settings = make_settings(log_level="debug", log_format="CONSOLE")

        assert settings.log_level == "DEBUG"
        assert settings.log_format == "console"

    def test_discord_config(self):
        settings = make_settings(discord_bot_token="token", discord_webhook_url="")

        discord = settings.discord_config
        assert discord.bot_token == "token"
        assert discord.webhook_url == ""

    def test_zero_cooldown_accepted_for_value_change_classes(self):
        settings = make_settings(alert_cooldown_seconds={"price_alert": 0, "chain_timeout": 30})

        assert settings.notification_config.cooldowns["price_alert"] == timedelta(0)
