# Load environment variables FIRST (before any other imports)
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

# Silence verbose loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logger = logging.getLogger("web_server")

from collector.openaq_fetcher import OpenAQClient
from config import SyncSettings
from core.sync_service import SyncService
from database import Store

app = FastAPI(title="Atmo Sync", version="1.0.0")

# Runtime objects, populated on startup (or by `configure()` in tests).
_runtime: Dict[str, Any] = {
    "store": None,
    "service": None,
    "client": None,
    "task": None,
}


def configure(store: Store, service: Optional[SyncService] = None) -> None:
    """Attach an existing store (and optionally a service) to the app."""
    _runtime["store"] = store
    _runtime["service"] = service


def _get_store() -> Store:
    store = _runtime.get("store")
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return store


async def _require_station(station_id: int):
    station = await asyncio.to_thread(_get_store().get_station_by_id, station_id)
    if station is None:
        raise HTTPException(status_code=404, detail=f"Station {station_id} not found")
    return station


async def _sync_loop(service: SyncService) -> None:
    """Bootstrap reference data, then run the sync loops until shutdown."""
    try:
        await service.bootstrap()
        await service.run()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("Sync service crashed: %s", exc)


@app.on_event("startup")
async def startup_event():
    """Build the store and start background synchronization."""
    if _runtime["store"] is not None:
        return
    settings = SyncSettings.from_env()
    store = Store(settings.database_path)
    client = OpenAQClient(settings)
    service = SyncService(settings, store, client)
    _runtime.update(store=store, service=service, client=client)
    _runtime["task"] = asyncio.create_task(_sync_loop(service))
    logger.info("Sync service started (db=%s)", settings.database_path)


@app.on_event("shutdown")
async def shutdown_event():
    service = _runtime.get("service")
    task = _runtime.get("task")
    if service is not None:
        service.stop()
    if task is not None:
        await task
    client = _runtime.get("client")
    if client is not None:
        await client.aclose()
    store = _runtime.get("store")
    if store is not None:
        store.close()
    logger.info("Sync service stopped")


@app.get("/api/stations")
async def get_stations():
    """Return every stored station."""
    stations = await asyncio.to_thread(_get_store().get_stations)
    return {"data": [s.to_dict() for s in stations]}


@app.get("/api/stations/{station_id}")
async def get_station(station_id: int):
    station = await _require_station(station_id)
    return {"data": station.to_dict()}


@app.get("/api/stations/{station_id}/parameters")
async def get_station_parameters(station_id: int):
    await _require_station(station_id)
    parameters = await asyncio.to_thread(_get_store().get_parameters_for_station, station_id)
    return {"data": [p.to_dict() for p in parameters]}


@app.get("/api/stations/{station_id}/measurements")
async def get_station_measurements(
    station_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
):
    """Latest stored readings for a station, newest first."""
    await _require_station(station_id)
    measurements = await asyncio.to_thread(
        _get_store().get_measurements_for_station, station_id, limit
    )
    return {"data": [m.to_dict() for m in measurements]}


@app.get("/api/parameters")
async def get_parameters():
    parameters = await asyncio.to_thread(_get_store().get_parameters)
    return {"data": [p.to_dict() for p in parameters]}


class HealthResponse(BaseModel):
    status: str
    has_data: bool
    stations_ready: bool
    parameters_ready: bool


@app.get("/api/health", response_model=HealthResponse)
async def health():
    store = _get_store()
    service: Optional[SyncService] = _runtime.get("service")
    has_data = await asyncio.to_thread(store.has_any_data)
    return HealthResponse(
        status="ok",
        has_data=has_data,
        stations_ready=bool(service and service.stations_ready.fired),
        parameters_ready=bool(service and service.parameters_ready.fired),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
