"""
Cronkeeper: Tests for Configuration Management

Test suite for ``cronkeeper.core.config``. Covers:
- Default configuration values
- Environment variable overrides
- Typed sub-configuration properties
- .env loading behaviour
"""

from __future__ import annotations

from pathlib import Path

import pytest

from cronkeeper.core.config import CronkeeperConfig, get_config, load_config


class TestCronkeeperConfig:
    """Tests for the CronkeeperConfig settings model."""

    def test_default_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults should match the documented coordination constants."""

        for name in ("LOCK_TTL_SECONDS", "ARCHIVE_THRESHOLD_MB", "NOTIFY_ON_SUCCESS"):
            monkeypatch.delenv(name, raising=False)

        config = CronkeeperConfig()

        assert config.historical_db_host == "localhost"
        assert config.runtime_db_port == 5432
        assert config.lock.ttl_seconds == 600
        assert config.heartbeat.stale_threshold_hours == 25.0
        assert config.archival.threshold_mb == 450.0
        assert config.archival.target_days == 125
        assert config.archival.min_remaining_days == 300
        assert config.archival.page_size == 1000
        assert config.notification.notify_on_success is False

    def test_env_var_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables must override default values."""

        monkeypatch.setenv("RUNTIME_DB_HOST", "coord-host")
        monkeypatch.setenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "120")
        monkeypatch.setenv("RETRY_MAX_RETRIES", "2")
        monkeypatch.setenv("NOTIFY_ON_SUCCESS", "true")

        config = CronkeeperConfig()

        assert config.runtime_db.host == "coord-host"
        assert config.rate_limit.requests_per_minute == 120
        assert config.retry.max_retries == 2
        assert config.notification.notify_on_success is True

    def test_retry_defaults_include_transient_status_codes(self) -> None:
        """429 and the 5xx gateway codes are retried by default."""

        config = CronkeeperConfig()

        assert set(config.retry.retry_status_codes) == {429, 500, 502, 503, 504}
        assert config.retry.base_delay_ms == 500
        assert config.retry.max_delay_ms == 32000

    def test_notification_is_configured_requires_host_and_recipient(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Email is only considered configured with both SMTP host and recipient."""

        monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
        monkeypatch.delenv("ALERT_EMAIL_TO", raising=False)
        assert CronkeeperConfig().notification.is_configured is False

        monkeypatch.setenv("ALERT_EMAIL_TO", "ops@example.com")
        assert CronkeeperConfig().notification.is_configured is True


class TestLoadConfig:
    """Tests for the top-level load_config function."""

    def test_load_from_explicit_env_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """An explicit env_file should be loaded when it exists."""

        env_path = tmp_path / ".env.test"
        env_path.write_text("HISTORICAL_DB_HOST=from_env_file\nLOCK_TTL_SECONDS=900\n")
        # Explicit env files override the environment; register both keys
        # so monkeypatch restores them afterwards.
        monkeypatch.setenv("HISTORICAL_DB_HOST", "from_environment")
        monkeypatch.setenv("LOCK_TTL_SECONDS", "60")

        config = load_config(env_file=env_path)

        assert config.historical_db_host == "from_env_file"
        assert config.lock_ttl_seconds == 900

    def test_missing_explicit_env_file_raises(self, tmp_path: Path) -> None:
        """A missing explicit env file should raise FileNotFoundError."""

        with pytest.raises(FileNotFoundError):
            load_config(env_file=tmp_path / "does_not_exist.env")


class TestGetConfigSingleton:
    def test_get_config_returns_singleton(self) -> None:
        """get_config should always return the same instance within a process."""

        assert get_config() is get_config()
