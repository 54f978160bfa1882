from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

# Timezones
UTC = ZoneInfo("UTC")


def dedupe_ids(values: Iterable[int]) -> List[int]:
    """Drop repeated ids, keeping first-seen order."""
    seen = set()
    result: List[int] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


@dataclass
class Station:
    """
    Monitoring station (OpenAQ "location").
    Upstream is authoritative; the sync engine upserts but never deletes.
    """
    id: int
    name: str
    locality: str = ""
    timezone: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    parameter_ids: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.parameter_ids = dedupe_ids(self.parameter_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "locality": self.locality,
            "timezone": self.timezone,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "parameterIds": list(self.parameter_ids),
        }


@dataclass
class Parameter:
    """Measurable quantity (pm25, no2, ...)."""
    id: int
    name: str
    units: str = ""
    display_name: str = ""
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "units": self.units,
            "displayName": self.display_name,
            "description": self.description,
        }


@dataclass
class Measurement:
    """
    One reading owned by a station.
    `timestamp` is the parsed UTC instant; `datetime_utc`/`datetime_local`
    keep the provider's own string representations.
    """
    station_id: int
    sensor_id: int
    value: float
    timestamp: datetime
    datetime_utc: str = ""
    datetime_local: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "sensorId": self.sensor_id,
            "value": self.value,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "datetime": {"utc": self.datetime_utc, "local": self.datetime_local},
            "coordinates": {"latitude": self.latitude, "longitude": self.longitude},
        }
