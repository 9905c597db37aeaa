"""Tests for application settings."""

from pydantic import ValidationError
import pytest

from beatstudio.config import Environment, Settings


class TestSettings:
    """Test settings parsing and environment rules."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)

        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEVELOPMENT
        assert settings.cache_ttl_hours == 24
        assert settings.cache_namespace == "generated-items-v1"
        assert settings.is_development()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings(_env_file=None)

        assert settings.poll_interval_seconds == 2.5
        assert settings.log_level == "DEBUG"

    def test_cors_origins_from_string(self):
        settings = Settings(_env_file=None, cors_origins="https://a.test, https://b.test")

        assert settings.cors_origins == ["https://a.test", "https://b.test"]

    def test_production_rules(self):
        settings = Settings(
            _env_file=None,
            environment="production",
            debug=True,
            reload=True,
            cors_origins=["*", "https://app.test"],
        )

        assert settings.debug is False
        assert settings.reload is False
        assert settings.is_production()
        assert settings.get_cors_config()["allow_origins"] == ["https://app.test"]

    def test_reload_only_in_development(self):
        settings = Settings(_env_file=None, environment="staging", reload=True)

        assert settings.reload is False
        assert settings.get_environment_display() == "Staging"

    def test_callback_url(self):
        settings = Settings(_env_file=None, callback_base_url="https://app.test/")

        assert settings.callback_url() == "https://app.test/api/v1/callbacks/generation"

    @pytest.mark.parametrize(
        "field,value",
        [("port", 0), ("cache_ttl_hours", 0), ("poll_interval_seconds", 0)],
    )
    def test_bounds_validated(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})
