"""Unit tests for settings loading."""

import pytest
from pydantic import ValidationError

from couchfeed.config import settings as settings_module
from couchfeed.config.settings import (
    CheckpointSettings,
    CouchSettings,
    FollowerSettings,
    LoggingSettings,
    Settings,
    get_settings,
    reload_settings,
)


class TestFollowerSettings:
    """Test FollowerSettings."""

    def test_defaults(self):
        settings = FollowerSettings()
        assert settings.error_tolerance_seconds == 300.0
        assert settings.batch_size == 10_000
        assert settings.longpoll_timeout_ms == 57_000
        assert settings.min_client_timeout_seconds == 60.0

    def test_env_override(self, monkeypatch):
        """Test CHANGES_FOLLOWER_ variables override defaults."""
        monkeypatch.setenv("CHANGES_FOLLOWER_ERROR_TOLERANCE_SECONDS", "12.5")
        monkeypatch.setenv("CHANGES_FOLLOWER_BATCH_SIZE", "500")

        settings = FollowerSettings()

        assert settings.error_tolerance_seconds == 12.5
        assert settings.batch_size == 500

    @pytest.mark.parametrize("field,value", [
        ("error_tolerance_seconds", -1),
        ("backoff_initial_seconds", -0.1),
        ("backoff_max_seconds", 0),
        ("poll_interval_seconds", 0),
        ("batch_size", 0),
        ("buffer_size", -3),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            FollowerSettings(**{field: value})


class TestOtherSettings:
    """Test connection, checkpoint and logging settings."""

    def test_couch_env(self, monkeypatch):
        monkeypatch.setenv("COUCH_URL", "https://acct.cloudant.com")
        monkeypatch.setenv("COUCH_USERNAME", "admin")
        monkeypatch.setenv("COUCH_VERIFY_SSL", "false")

        settings = CouchSettings()

        assert settings.url == "https://acct.cloudant.com"
        assert settings.username == "admin"
        assert settings.verify_ssl is False

    def test_checkpoint_env(self, monkeypatch):
        monkeypatch.setenv("CHECKPOINT_DATABASE_URL", "postgresql://localhost/feeds")
        assert CheckpointSettings().database_url == "postgresql://localhost/feeds"

    def test_log_level_normalised(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert LoggingSettings().level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            LoggingSettings(level="chatty")

    def test_settings_only_groups(self, monkeypatch):
        """Test Settings holds the setting groups and nothing the follower never reads."""
        monkeypatch.setenv("ENVIRONMENT", "qa")
        settings = Settings()

        assert set(Settings.model_fields) == {"follower", "couch", "checkpoint", "logging"}
        assert not hasattr(settings, "environment")


class TestSettingsSingleton:
    """Test get_settings / reload_settings."""

    @pytest.fixture(autouse=True)
    def reset(self, monkeypatch):
        monkeypatch.setattr(settings_module, "_settings", None)

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()

    def test_reload_reads_environment(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("CHANGES_FOLLOWER_BUFFER_SIZE", "7")

        reloaded = reload_settings()

        assert reloaded is not first
        assert reloaded.follower.buffer_size == 7
        assert get_settings() is reloaded
