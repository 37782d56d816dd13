"""Environment variable validation and analytics engine configuration."""

import logging
import math
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class AnalyticsConfig:
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 10_000
    rolling_window: int = 20
    success_threshold: float = 0.6
    mastered_threshold: float = 0.8
    weakness_threshold: float = 0.4
    auto_snapshots: bool = True
    snapshot_interval_minutes: float = 5.0
    persist_timeout_seconds: float = 2.0
    history_retention_days: int = 365
    max_snapshots_per_metric: int = 100

    @property
    def snapshot_interval_seconds(self) -> float:
        return self.snapshot_interval_minutes * 60.0


def validate_environment() -> None:
    """Validate analytics environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    # Parsing raises EnvironmentError on malformed values.
    config = load_analytics_config()

    if not 0.0 <= config.weakness_threshold < config.mastered_threshold <= 1.0:
        raise EnvironmentError(
            "ANALYTICS_WEAKNESS_THRESHOLD must be below ANALYTICS_MASTERED_THRESHOLD within [0, 1]"
        )
    if not 0.0 <= config.success_threshold <= 1.0:
        raise EnvironmentError("ANALYTICS_SUCCESS_THRESHOLD must be within [0, 1]")
    if config.rolling_window <= 0:
        raise EnvironmentError("ANALYTICS_ROLLING_WINDOW must be positive")
    if config.cache_max_entries <= 0:
        raise EnvironmentError("ANALYTICS_CACHE_MAX_ENTRIES must be positive")
    if config.persist_timeout_seconds <= 0:
        raise EnvironmentError("ANALYTICS_PERSIST_TIMEOUT_SECONDS must be positive")

    logger.info(
        "Analytics configuration: cache_ttl=%ss window=%s snapshots=%s every %s min",
        config.cache_ttl_seconds,
        config.rolling_window,
        config.auto_snapshots,
        config.snapshot_interval_minutes,
    )


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise EnvironmentError(f"Invalid number for {name}: {value}") from exc
    if not math.isfinite(parsed):
        raise EnvironmentError(f"Invalid number for {name}: {value}")
    return parsed


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise EnvironmentError(f"Invalid integer for {name}: {value}") from exc


def load_analytics_config(base: Optional[AnalyticsConfig] = None) -> AnalyticsConfig:
    """Build an :class:`AnalyticsConfig` from ``ANALYTICS_*`` variables over ``base``."""
    base = base or AnalyticsConfig()
    return AnalyticsConfig(
        cache_ttl_seconds=get_env_float("ANALYTICS_CACHE_TTL_SECONDS", base.cache_ttl_seconds),
        cache_max_entries=get_env_int("ANALYTICS_CACHE_MAX_ENTRIES", base.cache_max_entries),
        rolling_window=get_env_int("ANALYTICS_ROLLING_WINDOW", base.rolling_window),
        success_threshold=get_env_float("ANALYTICS_SUCCESS_THRESHOLD", base.success_threshold),
        mastered_threshold=get_env_float("ANALYTICS_MASTERED_THRESHOLD", base.mastered_threshold),
        weakness_threshold=get_env_float("ANALYTICS_WEAKNESS_THRESHOLD", base.weakness_threshold),
        auto_snapshots=get_env_bool("ANALYTICS_AUTO_SNAPSHOTS", base.auto_snapshots),
        snapshot_interval_minutes=get_env_float(
            "ANALYTICS_SNAPSHOT_INTERVAL_MINUTES", base.snapshot_interval_minutes
        ),
        persist_timeout_seconds=get_env_float(
            "ANALYTICS_PERSIST_TIMEOUT_SECONDS", base.persist_timeout_seconds
        ),
        history_retention_days=get_env_int(
            "ANALYTICS_HISTORY_RETENTION_DAYS", base.history_retention_days
        ),
        max_snapshots_per_metric=get_env_int(
            "ANALYTICS_MAX_SNAPSHOTS_PER_METRIC", base.max_snapshots_per_metric
        ),
    )
