"""
Tests for settings validation.
"""

import pytest
from pydantic import ValidationError

from techanal_engine.config import AppEnvironment, Settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.env == AppEnvironment.DEVELOPMENT
        assert settings.rate_limit_ai_per_minute == 20
        assert settings.rate_limit_global_window_s == 900
        assert settings.cache_ttl_s == 300
        assert settings.live_events_buffer_size == 200
        assert settings.is_development

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TECHANAL_CACHE_MAX_SIZE", "42")
        monkeypatch.setenv("TECHANAL_LOG_LEVEL", "debug")

        settings = Settings(_env_file=None)

        assert settings.cache_max_size == 42
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "field",
        ["rate_limit_global_window_s", "rate_limit_ai_per_minute", "cache_ttl_s", "cache_max_size"],
    )
    def test_non_positive_tunables_rejected(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_unknown_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_health_bands_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, health_memory_warning_mb=800, health_memory_unhealthy_mb=400)

    def test_redacted_config(self) -> None:
        redacted = Settings(_env_file=None).get_redacted_config()

        assert redacted["env"] == "development"
        assert "cache_ttl_s" in redacted
