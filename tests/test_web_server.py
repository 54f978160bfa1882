from datetime import datetime, timedelta
from pathlib import Path
import sys
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import web_server
from core.models import UTC, Measurement, Parameter, Station
from database import Store


@pytest.fixture
def store(tmp_path):
    store = Store(str(tmp_path / "web.db"))
    store.upsert_stations([
        Station(id=1, name="Krakow - Bujaka", locality="Krakow", parameter_ids=[2, 5, 99]),
        Station(id=2, name="Warszawa", parameter_ids=[]),
    ])
    store.upsert_parameters([
        Parameter(id=2, name="pm25", units="µg/m³", display_name="PM2.5"),
        Parameter(id=5, name="no2", units="ppm"),
    ])
    base = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
    store.insert_measurements([
        Measurement(station_id=1, sensor_id=2, value=float(i), timestamp=base + timedelta(hours=i))
        for i in range(3)
    ])
    return store


def _client(monkeypatch, store, service=None) -> TestClient:
    monkeypatch.setattr(
        web_server,
        "_runtime",
        {"store": None, "service": None, "client": None, "task": None},
    )
    if store is not None:
        web_server.configure(store, service)
    return TestClient(web_server.app)


def test_list_stations(monkeypatch, store):
    resp = _client(monkeypatch, store).get("/api/stations")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [s["id"] for s in data] == [1, 2]
    assert data[0]["parameterIds"] == [2, 5, 99]


def test_get_station_and_unknown_station(monkeypatch, store):
    client = _client(monkeypatch, store)

    assert client.get("/api/stations/1").json()["data"]["locality"] == "Krakow"
    assert client.get("/api/stations/404").status_code == 404


def test_station_parameters_skip_unknown_ids(monkeypatch, store):
    client = _client(monkeypatch, store)

    data = client.get("/api/stations/1/parameters").json()["data"]
    assert [p["id"] for p in data] == [2, 5]
    assert data[0]["displayName"] == "PM2.5"
    assert client.get("/api/stations/2/parameters").json()["data"] == []
    assert client.get("/api/stations/404/parameters").status_code == 404


def test_station_measurements_newest_first_with_limit(monkeypatch, store):
    client = _client(monkeypatch, store)

    data = client.get("/api/stations/1/measurements", params={"limit": 2}).json()["data"]
    assert [m["value"] for m in data] == [2.0, 1.0]
    assert data[0]["stationId"] == 1
    assert data[0]["timestamp"].startswith("2024-05-01T12:00:00")
    assert client.get("/api/stations/404/measurements").status_code == 404
    assert client.get("/api/stations/1/measurements", params={"limit": 0}).status_code == 422


def test_list_parameters(monkeypatch, store):
    data = _client(monkeypatch, store).get("/api/parameters").json()["data"]
    assert [p["name"] for p in data] == ["pm25", "no2"]


def test_health_reports_readiness(monkeypatch, store):
    service = SimpleNamespace(
        stations_ready=SimpleNamespace(fired=True),
        parameters_ready=SimpleNamespace(fired=False),
    )

    body = _client(monkeypatch, store, service).get("/api/health").json()

    assert body["has_data"] is True
    assert body["stations_ready"] is True
    assert body["parameters_ready"] is False


def test_store_not_initialized_returns_503(monkeypatch):
    resp = _client(monkeypatch, None).get("/api/stations")
    assert resp.status_code == 503
