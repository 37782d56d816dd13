import pytest

import env_validation
from env_validation import (
    AnalyticsConfig,
    EnvironmentError,
    get_env_bool,
    load_analytics_config,
    validate_environment,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "ANALYTICS_CACHE_TTL_SECONDS",
        "ANALYTICS_ROLLING_WINDOW",
        "ANALYTICS_AUTO_SNAPSHOTS",
        "ANALYTICS_SNAPSHOT_INTERVAL_MINUTES",
        "ANALYTICS_MASTERED_THRESHOLD",
        "ANALYTICS_WEAKNESS_THRESHOLD",
        "ANALYTICS_SUCCESS_THRESHOLD",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_engine_defaults():
    config = load_analytics_config()
    assert config == AnalyticsConfig()
    assert config.cache_ttl_seconds == 60.0
    assert config.cache_max_entries == 10_000
    assert config.rolling_window == 20
    assert config.snapshot_interval_seconds == 300.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ANALYTICS_CACHE_TTL_SECONDS", "15")
    monkeypatch.setenv("ANALYTICS_ROLLING_WINDOW", "8")
    monkeypatch.setenv("ANALYTICS_AUTO_SNAPSHOTS", "off")

    config = load_analytics_config()
    assert config.cache_ttl_seconds == 15.0
    assert config.rolling_window == 8
    assert config.auto_snapshots is False


def test_malformed_number_raises(monkeypatch):
    monkeypatch.setenv("ANALYTICS_ROLLING_WINDOW", "twenty")
    with pytest.raises(EnvironmentError):
        load_analytics_config()

    monkeypatch.setenv("ANALYTICS_ROLLING_WINDOW", "20")
    monkeypatch.setenv("ANALYTICS_CACHE_TTL_SECONDS", "inf")
    with pytest.raises(EnvironmentError):
        load_analytics_config()


def test_validate_environment_rejects_inverted_thresholds(monkeypatch):
    monkeypatch.setenv("DB_PATH", "unused.db")
    monkeypatch.setenv("ANALYTICS_MASTERED_THRESHOLD", "0.3")
    monkeypatch.setenv("ANALYTICS_WEAKNESS_THRESHOLD", "0.5")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_validate_environment_applies_db_default(monkeypatch):
    # Set first so the variable is restored afterwards.
    monkeypatch.setenv("DB_PATH", "placeholder.db")
    monkeypatch.delenv("DB_PATH")
    validate_environment()
    assert env_validation.os.environ["DB_PATH"] == "data.db"


def test_get_env_bool(monkeypatch):
    monkeypatch.setenv("FLAG", "Yes")
    assert get_env_bool("FLAG") is True
    monkeypatch.setenv("FLAG", "0")
    assert get_env_bool("FLAG", default=True) is False
    monkeypatch.delenv("FLAG")
    assert get_env_bool("FLAG", default=True) is True
