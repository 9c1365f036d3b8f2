"""Tests for configuration management."""

import pytest
from pydantic import ValidationError

from docspine.config import Settings, get_settings


@pytest.fixture
def base_env(monkeypatch):
    """Minimal valid environment."""
    monkeypatch.setenv("GEMINI_API_KEY", "test-api-key")
    monkeypatch.setenv("SUPABASE_URL", "https://test.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "test-key")
    for name in (
        "SUPABASE_SERVICE_ROLE_KEY", "GATEKEEPER_MODEL", "GATEKEEPER_TIMEOUT_SECONDS",
        "BATCH_CONCURRENCY", "SHADOW_ROUTING_ENABLED", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Test Settings validation and defaults."""

    def test_defaults(self, base_env):
        """Test that optional settings take their documented defaults."""
        settings = Settings()

        assert settings.gemini_api_key == "test-api-key"
        assert settings.supabase_service_role_key is None
        assert settings.gatekeeper_model == "gemini-2.0-flash"
        assert settings.gatekeeper_timeout_seconds == 30.0
        assert settings.batch_concurrency == 4
        assert settings.shadow_routing_enabled is False
        assert settings.log_level == "INFO"

    def test_overrides_from_env(self, base_env, monkeypatch):
        monkeypatch.setenv("GATEKEEPER_MODEL", "gemini-2.5-flash")
        monkeypatch.setenv("GATEKEEPER_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("BATCH_CONCURRENCY", "8")
        monkeypatch.setenv("SHADOW_ROUTING_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings()

        assert settings.gatekeeper_model == "gemini-2.5-flash"
        assert settings.gatekeeper_timeout_seconds == 12.5
        assert settings.batch_concurrency == 8
        assert settings.shadow_routing_enabled is True
        assert settings.log_level == "DEBUG"

    def test_missing_gemini_api_key_is_allowed(self, base_env, monkeypatch):
        """Test that runs without the gatekeeper load settings with no GEMINI_API_KEY."""
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        settings = Settings()

        assert settings.gemini_api_key is None

    def test_whitespace_only_gemini_api_key_raises_error(self, base_env, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "   ")

        with pytest.raises(ValidationError) as exc_info:
            Settings()

        assert "GEMINI_API_KEY must be set" in str(exc_info.value)

    def test_invalid_supabase_url_raises_error(self, base_env, monkeypatch):
        """Test that non-HTTPS SUPABASE_URL raises ValidationError."""
        monkeypatch.setenv("SUPABASE_URL", "http://test.supabase.co")

        with pytest.raises(ValidationError) as exc_info:
            Settings()

        assert "must start with https://" in str(exc_info.value)

    def test_missing_supabase_key_raises_error(self, base_env, monkeypatch):
        monkeypatch.delenv("SUPABASE_KEY", raising=False)

        with pytest.raises(ValidationError) as exc_info:
            Settings()

        assert "supabase_key" in str(exc_info.value).lower()

    @pytest.mark.parametrize("value", ["0", "-1", "301"])
    def test_timeout_out_of_range(self, base_env, monkeypatch, value):
        monkeypatch.setenv("GATEKEEPER_TIMEOUT_SECONDS", value)

        with pytest.raises(ValidationError):
            Settings()

    @pytest.mark.parametrize("value", ["0", "51"])
    def test_batch_concurrency_out_of_range(self, base_env, monkeypatch, value):
        monkeypatch.setenv("BATCH_CONCURRENCY", value)

        with pytest.raises(ValidationError):
            Settings()

    def test_unknown_log_level_rejected(self, base_env, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "verbose")

        with pytest.raises(ValidationError):
            Settings()

    def test_settings_strips_whitespace_from_keys(self, base_env, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "  test-api-key  ")
        monkeypatch.setenv("SUPABASE_URL", "  https://test.supabase.co  ")
        monkeypatch.setenv("SUPABASE_KEY", "  test-key  ")

        settings = Settings()

        assert settings.gemini_api_key == "test-api-key"
        assert settings.supabase_url == "https://test.supabase.co"
        assert settings.supabase_key == "test-key"


class TestGetSettings:
    """Test get_settings() caching behavior."""

    def test_get_settings_caches_result(self, base_env):
        """Test that get_settings() returns the same instance each call."""
        assert get_settings() is get_settings()

    def test_get_settings_raises_error_on_invalid_config(self, base_env, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        get_settings.cache_clear()

        with pytest.raises(ValidationError):
            get_settings()
