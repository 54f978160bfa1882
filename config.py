"""
Atmo Sync - Configuration
Central configuration for the OpenAQ synchronization engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


class ConfigError(RuntimeError):
    """Raised when the environment describes settings that cannot be satisfied."""


# ============================================================================
# API ENDPOINTS
# ============================================================================

# OpenAQ v3 REST API
OPENAQ_BASE_URL = "https://api.openaq.org/v3/"

# Station list filter (ISO 3166 alpha-2) and page size
DEFAULT_COUNTRY_ISO = "PL"
DEFAULT_LOCATIONS_LIMIT = 1000

# ============================================================================
# SCHEDULER CONFIGURATION
# ============================================================================

STATIONS_INTERVAL_SECONDS = 24 * 60 * 60
PARAMETERS_INTERVAL_SECONDS = 24 * 60 * 60
MEASUREMENTS_INTERVAL_SECONDS = 60 * 60

# Rate-limit retry budget (per station, per parameter fetch)
MAX_FETCH_ATTEMPTS = 3
BACKOFF_MIN_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 5.0

# Pause between consecutive reading fetches of one station
REQUEST_PAUSE_SECONDS = 1.0

# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DATABASE_PATH = "data/atmo_sync.db"


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        value = float(default)
    else:
        try:
            value = float(raw)
        except ValueError:
            value = float(default)
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SyncSettings:
    """Settings handed to every loop, client and store at construction."""

    api_key: str = ""
    base_url: str = OPENAQ_BASE_URL
    country_iso: str = DEFAULT_COUNTRY_ISO
    locations_limit: int = DEFAULT_LOCATIONS_LIMIT
    request_timeout_seconds: float = 30.0
    database_path: str = DATABASE_PATH

    stations_interval_seconds: float = STATIONS_INTERVAL_SECONDS
    parameters_interval_seconds: float = PARAMETERS_INTERVAL_SECONDS
    measurements_interval_seconds: float = MEASUREMENTS_INTERVAL_SECONDS

    max_fetch_attempts: int = MAX_FETCH_ATTEMPTS
    backoff_min_seconds: float = BACKOFF_MIN_SECONDS
    backoff_max_seconds: float = BACKOFF_MAX_SECONDS
    request_pause_seconds: float = REQUEST_PAUSE_SECONDS

    measurement_concurrency: int = 1
    atomic_replace: bool = True
    shutdown_grace_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.max_fetch_attempts < 1:
            raise ConfigError("max_fetch_attempts must be at least 1")
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ConfigError(
                f"backoff_max_seconds ({self.backoff_max_seconds}) is below "
                f"backoff_min_seconds ({self.backoff_min_seconds})"
            )
        if self.measurement_concurrency < 1:
            raise ConfigError("measurement_concurrency must be at least 1")

    @classmethod
    def from_env(cls) -> "SyncSettings":
        base_url = _env_str("OPENAQ_BASE_URL", OPENAQ_BASE_URL)
        if not base_url.endswith("/"):
            base_url += "/"
        return cls(
            api_key=_env_str("OPENAQ_API_KEY", ""),
            base_url=base_url,
            country_iso=_env_str("OPENAQ_COUNTRY_ISO", DEFAULT_COUNTRY_ISO).upper(),
            locations_limit=_env_int("OPENAQ_LOCATIONS_LIMIT", DEFAULT_LOCATIONS_LIMIT, minimum=1),
            request_timeout_seconds=_env_float("OPENAQ_TIMEOUT_SECONDS", 30.0, minimum=1.0),
            database_path=_env_str("ATMO_DB_PATH", DATABASE_PATH),
            stations_interval_seconds=_env_int("ATMO_STATIONS_INTERVAL_SECONDS", STATIONS_INTERVAL_SECONDS, minimum=1),
            parameters_interval_seconds=_env_int("ATMO_PARAMETERS_INTERVAL_SECONDS", PARAMETERS_INTERVAL_SECONDS, minimum=1),
            measurements_interval_seconds=_env_int("ATMO_MEASUREMENTS_INTERVAL_SECONDS", MEASUREMENTS_INTERVAL_SECONDS, minimum=1),
            max_fetch_attempts=_env_int("ATMO_MAX_FETCH_ATTEMPTS", MAX_FETCH_ATTEMPTS),
            backoff_min_seconds=_env_float("ATMO_BACKOFF_MIN_SECONDS", BACKOFF_MIN_SECONDS, minimum=0.0),
            backoff_max_seconds=_env_float("ATMO_BACKOFF_MAX_SECONDS", BACKOFF_MAX_SECONDS, minimum=0.0),
            request_pause_seconds=_env_float("ATMO_REQUEST_PAUSE_SECONDS", REQUEST_PAUSE_SECONDS, minimum=0.0),
            measurement_concurrency=_env_int("ATMO_MEASUREMENT_CONCURRENCY", 1, minimum=1),
            atomic_replace=_env_bool("ATMO_ATOMIC_REPLACE", True),
            shutdown_grace_seconds=_env_float("ATMO_SHUTDOWN_GRACE_SECONDS", 10.0, minimum=0.0),
        )
