"""
Continuous synchronization service.

Three independent loops keep the local store in step with OpenAQ:

- stations loader     (every `stations_interval_seconds`)
- parameters loader   (every `parameters_interval_seconds`)
- measurement refresh (every `measurements_interval_seconds`), gated on both
  loaders having succeeded at least once.

The loops share nothing but the store and the readiness signals. Failures
below loop level are logged and absorbed; only the stop signal ends a loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple

from collector.openaq_fetcher import FetchError, LocationRecord, ParameterRecord, ReadingRecord
from collector.retry import RetryPolicy
from config import SyncSettings
from database import Store

from .models import Measurement, Parameter, Station, dedupe_ids
from .readiness import ReadinessOutcome, ReadinessSignal, wait_for_all
from .timestamps import TimestampParseError, parse_timestamp

logger = logging.getLogger("sync_service")


class SyncError(RuntimeError):
    """A refresh cycle (or one station of it) could not complete."""


class SyncCancelled(Exception):
    """The stop signal fired while a cycle was suspended."""


class FetchClient(Protocol):
    async def fetch_locations(self) -> List[LocationRecord]: ...

    async def fetch_parameters(self) -> List[ParameterRecord]: ...

    async def fetch_measurements(
        self, station_id: int, parameter_id: Optional[int] = None
    ) -> List[ReadingRecord]: ...


@dataclass
class RefreshSummary:
    stations_total: int = 0
    stations_updated: int = 0
    stations_empty: int = 0
    stations_failed: int = 0
    measurements_stored: int = 0


# Outcomes of one station refresh
_UPDATED = "updated"
_EMPTY = "empty"
_FAILED = "failed"


def build_stations(records: Sequence[LocationRecord]) -> List[Station]:
    return [
        Station(
            id=rec.id,
            name=rec.name,
            locality=rec.locality,
            timezone=rec.timezone,
            latitude=rec.latitude,
            longitude=rec.longitude,
            parameter_ids=dedupe_ids(rec.parameter_ids),
        )
        for rec in records
    ]


def build_parameters(records: Sequence[ParameterRecord]) -> List[Parameter]:
    return [
        Parameter(
            id=rec.id,
            name=rec.name,
            units=rec.units,
            display_name=rec.display_name,
            description=rec.description,
        )
        for rec in records
    ]


def build_measurements(
    station: Station,
    parameter_id: int,
    readings: Sequence[ReadingRecord],
) -> List[Measurement]:
    """Map readings onto measurements, dropping any with a bad timestamp or value."""
    measurements: List[Measurement] = []
    for reading in readings:
        if reading.value is None or not math.isfinite(reading.value):
            logger.warning(
                "Dropping reading for station %s, parameter %s: non-finite value %r",
                station.id, parameter_id, reading.value,
            )
            continue
        try:
            timestamp = parse_timestamp(reading.datetime_utc)
        except TimestampParseError as exc:
            logger.warning(
                "Dropping reading for station %s, parameter %s: %s",
                station.id, parameter_id, exc,
            )
            continue
        measurements.append(
            Measurement(
                station_id=station.id,
                sensor_id=parameter_id,
                value=reading.value,
                timestamp=timestamp,
                datetime_utc=reading.datetime_utc,
                datetime_local=reading.datetime_local,
                latitude=reading.latitude,
                longitude=reading.longitude,
            )
        )
    return measurements


class SyncService:
    def __init__(
        self,
        settings: SyncSettings,
        store: Store,
        client: FetchClient,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.store = store
        self.client = client
        self.stations_ready = ReadinessSignal("stations")
        self.parameters_ready = ReadinessSignal("parameters")
        self._stop = asyncio.Event()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_fetch_attempts,
            backoff_min=settings.backoff_min_seconds,
            backoff_max=settings.backoff_max_seconds,
            sleep=self._sleep_or_cancel,
        )

    # ------------------------------------------------------------------
    # Stop signal
    # ------------------------------------------------------------------

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested")
        self._stop.set()

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if the stop signal fired first."""
        if self._stop.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False

    async def _sleep_or_cancel(self, seconds: float) -> None:
        if await self._wait_or_stop(seconds):
            raise SyncCancelled()

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def load_stations(self) -> int:
        records = await self.client.fetch_locations()
        stations = build_stations(records)
        count = await asyncio.to_thread(self.store.upsert_stations, stations)
        self.stations_ready.fire()
        logger.info("Stations updated: %d", count)
        return count

    async def load_parameters(self) -> int:
        records = await self.client.fetch_parameters()
        parameters = build_parameters(records)
        count = await asyncio.to_thread(self.store.upsert_parameters, parameters)
        self.parameters_ready.fire()
        logger.info("Parameters updated: %d", count)
        return count

    async def bootstrap(self) -> bool:
        """Load reference data once, up front, when the store is empty. True if it ran."""
        has_data = await asyncio.to_thread(self.store.has_any_data)
        if has_data:
            logger.info("Store already has data, skipping initial load")
            return False
        logger.info("Store is empty, running initial reference-data load")
        for kind, load in (("stations", self.load_stations), ("parameters", self.load_parameters)):
            try:
                await load()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Initial %s load failed: %s", kind, exc)
        return True

    async def _reference_loop(
        self,
        kind: str,
        load: Callable[[], Awaitable[int]],
        signal: ReadinessSignal,
        interval: float,
    ) -> None:
        logger.info("Starting %s loop (every %ss)", kind, interval)
        # A kind already loaded by bootstrap() waits one interval first.
        if signal.fired and await self._wait_or_stop(interval):
            logger.info("%s loop stopped", kind.capitalize())
            return
        while not self._stop.is_set():
            try:
                await load()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Failed to update %s: %s", kind, exc)
            if await self._wait_or_stop(interval):
                break
        logger.info("%s loop stopped", kind.capitalize())

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    async def refresh_station(self, station: Station) -> int:
        """
        Fetch every parameter of one station and replace its stored readings.

        Returns the number of measurements stored (0 when there was nothing
        to store). Raises SyncError when every parameter fetch failed or the
        store rejected the batch.
        """
        batch, failed = await self._collect_measurements(station)
        if station.parameter_ids and failed == len(station.parameter_ids):
            raise SyncError(
                f"all {failed} parameter fetches failed for station {station.id}"
            )
        if not batch:
            logger.info("No measurements found for station %s (%s)", station.id, station.name)
            return 0

        if self.settings.atomic_replace:
            await asyncio.to_thread(self.store.replace_measurements_for_station, station.id, batch)
        else:
            try:
                await asyncio.to_thread(self.store.delete_measurements_for_station, station.id)
            except Exception as exc:
                raise SyncError(
                    f"failed to delete existing measurements for station {station.id}: {exc}"
                ) from exc
            try:
                await asyncio.to_thread(self.store.insert_measurements, batch)
            except Exception as exc:
                raise SyncError(
                    f"failed to store measurements for station {station.id}: {exc}"
                ) from exc

        logger.info(
            "Updated measurements for station %s (%s): %d",
            station.id, station.name, len(batch),
        )
        return len(batch)

    async def _collect_measurements(self, station: Station) -> Tuple[List[Measurement], int]:
        batch: List[Measurement] = []
        failed = 0
        for index, parameter_id in enumerate(station.parameter_ids):
            if index and self.settings.request_pause_seconds > 0:
                await self._sleep_or_cancel(self.settings.request_pause_seconds)
            elif self._stop.is_set():
                raise SyncCancelled()

            fetch = functools.partial(self.client.fetch_measurements, station.id, parameter_id)
            try:
                readings = await self.retry_policy.run(
                    fetch, entity=f"station {station.id} parameter {parameter_id}"
                )
            except FetchError as exc:
                failed += 1
                logger.error(
                    "Failed to fetch measurements for station %s, parameter %s: %s",
                    station.id, parameter_id, exc,
                )
                continue
            batch.extend(build_measurements(station, parameter_id, readings))
        return batch, failed

    async def _refresh_station_isolated(self, station: Station) -> Tuple[str, int]:
        try:
            stored = await self.refresh_station(station)
        except (SyncCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.error("Failed to update measurements for station %s: %s", station.id, exc)
            return _FAILED, 0
        return (_UPDATED if stored else _EMPTY), stored

    async def refresh_measurements(self) -> RefreshSummary:
        """
        One measurement cycle over the stations currently in the store.

        Raises when the station list cannot be read or is empty; per-station
        failures are logged and counted, never raised.
        """
        stations = await asyncio.to_thread(self.store.get_stations)
        if not stations:
            raise SyncError("no stations found in store")

        logger.info("Updating measurements for %d stations", len(stations))
        summary = RefreshSummary(stations_total=len(stations))
        semaphore = asyncio.Semaphore(self.settings.measurement_concurrency)

        async def _guarded(station: Station) -> Tuple[str, int]:
            async with semaphore:
                if self._stop.is_set():
                    raise SyncCancelled()
                return await self._refresh_station_isolated(station)

        if self.settings.measurement_concurrency == 1:
            results = []
            for station in stations:
                results.append(await _guarded(station))
        else:
            tasks = [asyncio.create_task(_guarded(station)) for station in stations]
            try:
                results = await asyncio.gather(*tasks)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        for outcome, stored in results:
            if outcome == _UPDATED:
                summary.stations_updated += 1
                summary.measurements_stored += stored
            elif outcome == _EMPTY:
                summary.stations_empty += 1
            else:
                summary.stations_failed += 1

        logger.info(
            "Measurement cycle done: %d updated, %d empty, %d failed, %d measurements",
            summary.stations_updated, summary.stations_empty,
            summary.stations_failed, summary.measurements_stored,
        )
        return summary

    async def _measurements_loop(self) -> None:
        logger.info("Measurements loop waiting for stations and parameters")
        outcome = await wait_for_all([self.stations_ready, self.parameters_ready], self._stop)
        if outcome is ReadinessOutcome.CANCELLED:
            logger.info("Measurements loop cancelled before reference data was ready")
            return

        interval = self.settings.measurements_interval_seconds
        logger.info("Starting measurements loop (every %ss)", interval)
        while not self._stop.is_set():
            try:
                await self.refresh_measurements()
            except SyncCancelled:
                logger.info("Measurements cycle interrupted by stop signal")
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Failed to update measurements: %s", exc)
            if await self._wait_or_stop(interval):
                break
        logger.info("Measurements loop stopped")

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run all three loops until `stop()` is called or `stop_event` is set.

        Returns once every loop has exited; loops still busy after
        `shutdown_grace_seconds` are cancelled.
        """
        if stop_event is not None:
            if self._stop.is_set():
                stop_event.set()
            self._stop = stop_event
        tasks = [
            asyncio.create_task(
                self._reference_loop(
                    "stations", self.load_stations, self.stations_ready,
                    self.settings.stations_interval_seconds,
                ),
                name="stations_loop",
            ),
            asyncio.create_task(
                self._reference_loop(
                    "parameters", self.load_parameters, self.parameters_ready,
                    self.settings.parameters_interval_seconds,
                ),
                name="parameters_loop",
            ),
            asyncio.create_task(self._measurements_loop(), name="measurements_loop"),
        ]
        try:
            await self._stop.wait()
            logger.info("Service is shutting down...")
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_seconds)
            for task in pending:
                logger.warning("Task %s did not stop in time, cancelling", task.get_name())
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, result in zip(tasks, results):
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Task %s ended with error: %s", task.get_name(), result)
