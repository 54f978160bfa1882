from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import ConfigError, SyncSettings

_ENV_VARS = [
    "OPENAQ_API_KEY",
    "OPENAQ_BASE_URL",
    "OPENAQ_COUNTRY_ISO",
    "OPENAQ_LOCATIONS_LIMIT",
    "OPENAQ_TIMEOUT_SECONDS",
    "ATMO_DB_PATH",
    "ATMO_STATIONS_INTERVAL_SECONDS",
    "ATMO_PARAMETERS_INTERVAL_SECONDS",
    "ATMO_MEASUREMENTS_INTERVAL_SECONDS",
    "ATMO_MAX_FETCH_ATTEMPTS",
    "ATMO_BACKOFF_MIN_SECONDS",
    "ATMO_BACKOFF_MAX_SECONDS",
    "ATMO_REQUEST_PAUSE_SECONDS",
    "ATMO_MEASUREMENT_CONCURRENCY",
    "ATMO_ATOMIC_REPLACE",
    "ATMO_SHUTDOWN_GRACE_SECONDS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = SyncSettings.from_env()

    assert settings.api_key == ""
    assert settings.base_url == "https://api.openaq.org/v3/"
    assert settings.country_iso == "PL"
    assert settings.locations_limit == 1000
    assert settings.stations_interval_seconds == 86400
    assert settings.parameters_interval_seconds == 86400
    assert settings.measurements_interval_seconds == 3600
    assert settings.max_fetch_attempts == 3
    assert (settings.backoff_min_seconds, settings.backoff_max_seconds) == (1.0, 5.0)
    assert settings.measurement_concurrency == 1
    assert settings.atomic_replace is True


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("OPENAQ_API_KEY", "secret")
    monkeypatch.setenv("OPENAQ_BASE_URL", "http://localhost:9000/v3")
    monkeypatch.setenv("OPENAQ_COUNTRY_ISO", "de")
    monkeypatch.setenv("ATMO_MEASUREMENTS_INTERVAL_SECONDS", "600")
    monkeypatch.setenv("ATMO_ATOMIC_REPLACE", "false")
    monkeypatch.setenv("ATMO_MEASUREMENT_CONCURRENCY", "4")

    settings = SyncSettings.from_env()

    assert settings.api_key == "secret"
    assert settings.base_url == "http://localhost:9000/v3/"
    assert settings.country_iso == "DE"
    assert settings.measurements_interval_seconds == 600
    assert settings.atomic_replace is False
    assert settings.measurement_concurrency == 4


def test_malformed_numbers_fall_back_and_intervals_clamp(monkeypatch):
    monkeypatch.setenv("ATMO_STATIONS_INTERVAL_SECONDS", "daily")
    monkeypatch.setenv("ATMO_MEASUREMENTS_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("ATMO_REQUEST_PAUSE_SECONDS", "-3")

    settings = SyncSettings.from_env()

    assert settings.stations_interval_seconds == 86400
    assert settings.measurements_interval_seconds == 1
    assert settings.request_pause_seconds == 0.0


def test_inverted_backoff_range_is_rejected(monkeypatch):
    monkeypatch.setenv("ATMO_BACKOFF_MIN_SECONDS", "10")
    monkeypatch.setenv("ATMO_BACKOFF_MAX_SECONDS", "2")

    with pytest.raises(ConfigError):
        SyncSettings.from_env()


def test_zero_attempt_budget_is_rejected(monkeypatch):
    monkeypatch.setenv("ATMO_MAX_FETCH_ATTEMPTS", "0")

    with pytest.raises(ConfigError):
        SyncSettings.from_env()
