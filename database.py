"""
Atmo Sync - Database Module
SQLite persistence for stations, parameters and measurements.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
from contextlib import contextmanager

from core.models import UTC, Measurement, Parameter, Station, dedupe_ids
from core.timestamps import parse_timestamp

logger = logging.getLogger("database")


# ============================================================================
# DATABASE SCHEMA
# ============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS stations (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    locality TEXT,
    timezone TEXT,
    latitude REAL,
    longitude REAL,
    parameter_ids_json TEXT NOT NULL DEFAULT '[]',
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS parameters (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    units TEXT,
    display_name TEXT,
    description TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS measurements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    station_id INTEGER NOT NULL,
    sensor_id INTEGER NOT NULL,
    value REAL NOT NULL,
    timestamp TEXT NOT NULL,        -- parsed UTC instant, ISO 8601
    datetime_utc TEXT,              -- provider UTC string
    datetime_local TEXT,            -- provider local string
    latitude REAL,
    longitude REAL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_measurements_station_timestamp
ON measurements(station_id, timestamp);
"""


class StoreError(RuntimeError):
    """Raised when a store operation fails at the SQLite level."""


def _station_from_row(row: sqlite3.Row) -> Station:
    try:
        parameter_ids = [int(pid) for pid in json.loads(row["parameter_ids_json"] or "[]")]
    except (TypeError, ValueError):
        parameter_ids = []
    return Station(
        id=row["id"],
        name=row["name"],
        locality=row["locality"] or "",
        timezone=row["timezone"] or "",
        latitude=row["latitude"],
        longitude=row["longitude"],
        parameter_ids=parameter_ids,
    )


def _parameter_from_row(row: sqlite3.Row) -> Parameter:
    return Parameter(
        id=row["id"],
        name=row["name"],
        units=row["units"] or "",
        display_name=row["display_name"] or "",
        description=row["description"],
    )


def _measurement_from_row(row: sqlite3.Row) -> Measurement:
    return Measurement(
        station_id=row["station_id"],
        sensor_id=row["sensor_id"],
        value=row["value"],
        timestamp=parse_timestamp(row["timestamp"]),
        datetime_utc=row["datetime_utc"] or "",
        datetime_local=row["datetime_local"] or "",
        latitude=row["latitude"],
        longitude=row["longitude"],
    )


def _measurement_params(m: Measurement) -> tuple:
    return (
        m.station_id,
        m.sensor_id,
        m.value,
        m.timestamp.astimezone(UTC).isoformat(timespec="microseconds"),
        m.datetime_utc,
        m.datetime_local,
        m.latitude,
        m.longitude,
    )


_INSERT_MEASUREMENT = """
INSERT INTO measurements
(station_id, sensor_id, value, timestamp, datetime_utc, datetime_local, latitude, longitude)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


class Store:
    """
    Keyed storage for the sync engine.

    All methods are blocking and thread-safe; the async core calls them via
    `asyncio.to_thread`.
    """

    def __init__(self, db_path: str = "data/atmo_sync.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; roll back and raise StoreError on failure."""
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.executescript(SCHEMA)
        logger.info("Database initialized: %s", self.db_path)

    def close(self) -> None:
        # Connections are per-call; nothing is held open between operations.
        logger.debug("Store closed: %s", self.db_path)

    # ------------------------------------------------------------------
    # Stations
    # ------------------------------------------------------------------

    def upsert_stations(self, stations: Iterable[Station]) -> int:
        rows = [
            (
                s.id,
                s.name,
                s.locality,
                s.timezone,
                s.latitude,
                s.longitude,
                json.dumps(dedupe_ids(s.parameter_ids)),
            )
            for s in stations
        ]
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO stations (id, name, locality, timezone, latitude, longitude, parameter_ids_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    locality = excluded.locality,
                    timezone = excluded.timezone,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    parameter_ids_json = excluded.parameter_ids_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                rows,
            )
        return len(rows)

    def get_stations(self) -> List[Station]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM stations ORDER BY id").fetchall()
        return [_station_from_row(r) for r in rows]

    def get_station_by_id(self, station_id: int) -> Optional[Station]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM stations WHERE id = ?", (station_id,)).fetchone()
        return _station_from_row(row) if row else None

    def has_any_data(self) -> bool:
        with self._transaction() as conn:
            row = conn.execute("SELECT 1 FROM stations LIMIT 1").fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def upsert_parameters(self, parameters: Iterable[Parameter]) -> int:
        rows = [(p.id, p.name, p.units, p.display_name, p.description) for p in parameters]
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO parameters (id, name, units, display_name, description)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    units = excluded.units,
                    display_name = excluded.display_name,
                    description = excluded.description,
                    updated_at = CURRENT_TIMESTAMP
                """,
                rows,
            )
        return len(rows)

    def get_parameters(self) -> List[Parameter]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM parameters ORDER BY id").fetchall()
        return [_parameter_from_row(r) for r in rows]

    def get_parameters_for_station(self, station_id: int) -> List[Parameter]:
        """Parameters referenced by a station; ids with no stored parameter are skipped."""
        station = self.get_station_by_id(station_id)
        if station is None or not station.parameter_ids:
            return []
        placeholders = ", ".join("?" for _ in station.parameter_ids)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM parameters WHERE id IN ({placeholders}) ORDER BY id",
                tuple(station.parameter_ids),
            ).fetchall()
        return [_parameter_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    def insert_measurements(self, measurements: Iterable[Measurement]) -> int:
        rows = [_measurement_params(m) for m in measurements]
        with self._transaction() as conn:
            conn.executemany(_INSERT_MEASUREMENT, rows)
        return len(rows)

    def delete_measurements_for_station(self, station_id: int) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM measurements WHERE station_id = ?", (station_id,))
        return cur.rowcount

    def replace_measurements_for_station(self, station_id: int, measurements: Iterable[Measurement]) -> int:
        """Delete the station's readings and insert the new batch in one transaction."""
        rows = [_measurement_params(m) for m in measurements]
        foreign = [r for r in rows if r[0] != station_id]
        if foreign:
            raise ValueError(f"batch for station {station_id} contains readings of other stations")
        with self._transaction() as conn:
            conn.execute("DELETE FROM measurements WHERE station_id = ?", (station_id,))
            conn.executemany(_INSERT_MEASUREMENT, rows)
        return len(rows)

    def get_measurements_for_station(self, station_id: int, limit: Optional[int] = None) -> List[Measurement]:
        query = "SELECT * FROM measurements WHERE station_id = ? ORDER BY timestamp DESC, id DESC"
        params: tuple = (station_id,)
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params = (station_id, int(limit))
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_measurement_from_row(r) for r in rows]

    def count_measurements(self, station_id: Optional[int] = None) -> int:
        with self._transaction() as conn:
            if station_id is None:
                row = conn.execute("SELECT COUNT(*) FROM measurements").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM measurements WHERE station_id = ?", (station_id,)
                ).fetchone()
        return int(row[0])
