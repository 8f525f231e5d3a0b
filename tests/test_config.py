"""Tests for configuration loading."""

from datetime import timedelta
from pathlib import Path

import pytest

from circulation.config import Config, get_config, reset_config

ENV_VARS = [
    "CIRCULATION_DB_PATH",
    "CIRCULATION_LOAN_PERIOD_DAYS",
    "CIRCULATION_HOLD_WINDOW_HOURS",
    "CIRCULATION_FINE_PER_DAY",
    "CIRCULATION_FINE_CAP",
    "CIRCULATION_REPLACEMENT_COST",
    "CIRCULATION_LOCK_MAX_ATTEMPTS",
    "CIRCULATION_LOCK_BACKOFF",
    "CIRCULATION_LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove circulation settings from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    """Tests for Config."""

    def test_defaults(self, clean_env):
        """Test defaults when nothing is set."""
        config = Config.from_env()

        assert config.db_path == Path.home() / ".circulation" / "circulation.db"
        assert config.loan_period == timedelta(days=14)
        assert config.hold_window == timedelta(days=7)
        assert config.fine_per_day == 1.0
        assert config.fine_cap is None
        assert config.replacement_cost == 25.0
        assert config.lock_max_attempts == 5
        assert config.log_level == "WARNING"

    def test_from_env(self, clean_env, tmp_path):
        """Test every setting is read from the environment."""
        clean_env.setenv("CIRCULATION_DB_PATH", str(tmp_path / "lib.db"))
        clean_env.setenv("CIRCULATION_LOAN_PERIOD_DAYS", "21")
        clean_env.setenv("CIRCULATION_HOLD_WINDOW_HOURS", "48")
        clean_env.setenv("CIRCULATION_FINE_PER_DAY", "0.25")
        clean_env.setenv("CIRCULATION_FINE_CAP", "10")
        clean_env.setenv("CIRCULATION_REPLACEMENT_COST", "40")
        clean_env.setenv("CIRCULATION_LOCK_MAX_ATTEMPTS", "8")
        clean_env.setenv("CIRCULATION_LOCK_BACKOFF", "0.2")
        clean_env.setenv("CIRCULATION_LOG_LEVEL", "debug")

        config = Config.from_env()

        assert config.db_path == tmp_path / "lib.db"
        assert config.loan_period == timedelta(days=21)
        assert config.hold_window == timedelta(hours=48)
        assert config.fine_per_day == 0.25
        assert config.fine_cap == 10.0
        assert config.replacement_cost == 40.0
        assert config.lock_max_attempts == 8
        assert config.lock_initial_backoff == 0.2
        assert config.log_level == "DEBUG"

    def test_validate_ok(self, clean_env, tmp_path):
        """Test a sensible configuration has no errors."""
        clean_env.setenv("CIRCULATION_DB_PATH", str(tmp_path / "lib.db"))
        assert Config.from_env().validate() == []

    def test_validate_errors(self, clean_env, tmp_path):
        """Test invalid settings are reported."""
        clean_env.setenv("CIRCULATION_DB_PATH", str(tmp_path / "lib.db"))
        clean_env.setenv("CIRCULATION_LOAN_PERIOD_DAYS", "0")
        clean_env.setenv("CIRCULATION_FINE_PER_DAY", "-1")
        clean_env.setenv("CIRCULATION_LOG_LEVEL", "chatty")

        errors = Config.from_env().validate()

        assert len(errors) == 3
        assert "Unknown log level: CHATTY" in errors

    def test_global_config_cached(self, clean_env):
        """Test the global config is built once until reset."""
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first
