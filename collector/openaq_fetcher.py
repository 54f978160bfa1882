"""
Atmo Sync - OpenAQ Fetcher
Fetches stations, parameters and latest readings from the OpenAQ v3 API.

Responses are decoded into provider-neutral records here; nothing past this
module sees the OpenAQ wire shape. No retries happen at this level.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import SyncSettings

logger = logging.getLogger("openaq_fetcher")

LOCATIONS_ENDPOINT = "locations"
PARAMETERS_ENDPOINT = "parameters"
LATEST_ENDPOINT = "locations/{station_id}/latest"

HTTP_TOO_MANY_REQUESTS = 429


class MissingApiKeyError(ValueError):
    """Raised when the client is built without an API key."""


class FetchError(Exception):
    """Hard fetch failure: transport error, non-429 HTTP error or bad payload."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        entity_id: Optional[Any] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.endpoint = endpoint
        self.entity_id = entity_id
        self.status_code = status_code


class RateLimited(FetchError):
    """Provider answered HTTP 429. Transient; callers may retry."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        entity_id: Optional[Any] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message,
            endpoint=endpoint,
            entity_id=entity_id,
            status_code=HTTP_TOO_MANY_REQUESTS,
        )
        self.retry_after = retry_after


# ============================================================================
# CANONICAL RECORDS
# ============================================================================

@dataclass
class LocationRecord:
    id: int
    name: str
    locality: str = ""
    timezone: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    parameter_ids: List[int] = field(default_factory=list)  # may repeat


@dataclass
class ParameterRecord:
    id: int
    name: str
    units: str = ""
    display_name: str = ""
    description: Optional[str] = None


@dataclass
class ReadingRecord:
    location_id: Optional[int]
    sensor_id: Optional[int]
    value: float
    datetime_utc: str = ""
    datetime_local: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def _safe_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        number = float(value)
    except (TypeError, ValueError):
        return None
    # NaN and infinities cannot be stored; treat them as missing.
    return number if math.isfinite(number) else None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def parse_location(item: Dict[str, Any]) -> Optional[LocationRecord]:
    loc_id = _safe_int(item.get("id"))
    if loc_id is None:
        return None
    coords = _as_dict(item.get("coordinates"))
    parameter_ids: List[int] = []
    for sensor in item.get("sensors") or []:
        param_id = _safe_int(_as_dict(_as_dict(sensor).get("parameter")).get("id"))
        if param_id is not None:
            parameter_ids.append(param_id)
    return LocationRecord(
        id=loc_id,
        name=str(item.get("name") or ""),
        locality=str(item.get("locality") or ""),
        timezone=str(item.get("timezone") or ""),
        latitude=_safe_float(coords.get("latitude")),
        longitude=_safe_float(coords.get("longitude")),
        parameter_ids=parameter_ids,
    )


def parse_parameter(item: Dict[str, Any]) -> Optional[ParameterRecord]:
    param_id = _safe_int(item.get("id"))
    if param_id is None:
        return None
    description = item.get("description")
    return ParameterRecord(
        id=param_id,
        name=str(item.get("name") or ""),
        units=str(item.get("units") or ""),
        display_name=str(item.get("displayName") or ""),
        description=str(description) if description is not None else None,
    )


def parse_reading(item: Dict[str, Any]) -> Optional[ReadingRecord]:
    value = _safe_float(item.get("value"))
    if value is None:
        return None
    date = _as_dict(item.get("datetime"))
    coords = _as_dict(item.get("coordinates"))
    return ReadingRecord(
        location_id=_safe_int(item.get("locationsId")),
        sensor_id=_safe_int(item.get("sensorsId")),
        value=value,
        datetime_utc=str(date.get("utc") or ""),
        datetime_local=str(date.get("local") or ""),
        latitude=_safe_float(coords.get("latitude")),
        longitude=_safe_float(coords.get("longitude")),
    )


class OpenAQClient:
    """Authenticated async client for the three OpenAQ read endpoints."""

    def __init__(
        self,
        settings: SyncSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.api_key:
            raise MissingApiKeyError("OpenAQ API key is required (set OPENAQ_API_KEY)")
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers={
                "Accept": "application/json",
                "X-API-Key": settings.api_key,
            },
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "OpenAQClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_locations(self) -> List[LocationRecord]:
        params = {
            "iso": self.settings.country_iso,
            "limit": str(self.settings.locations_limit),
        }
        results = await self._get_results(LOCATIONS_ENDPOINT, params=params)
        records = [rec for rec in (parse_location(_as_dict(r)) for r in results) if rec]
        logger.debug("Fetched %d locations (%s)", len(records), self.settings.country_iso)
        return records

    async def fetch_parameters(self) -> List[ParameterRecord]:
        results = await self._get_results(PARAMETERS_ENDPOINT)
        records = [rec for rec in (parse_parameter(_as_dict(r)) for r in results) if rec]
        logger.debug("Fetched %d parameters", len(records))
        return records

    async def fetch_measurements(
        self,
        station_id: int,
        parameter_id: Optional[int] = None,
    ) -> List[ReadingRecord]:
        params: Dict[str, str] = {}
        entity = f"station {station_id}"
        if parameter_id is not None:
            params["parameter_id"] = str(parameter_id)
            entity = f"station {station_id}, parameter {parameter_id}"
        results = await self._get_results(
            LATEST_ENDPOINT.format(station_id=station_id),
            params=params,
            entity_id=entity,
        )
        return [rec for rec in (parse_reading(_as_dict(r)) for r in results) if rec]

    async def _get_results(
        self,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        entity_id: Optional[Any] = None,
    ) -> List[Any]:
        label = f"{endpoint} ({entity_id})" if entity_id is not None else endpoint
        try:
            response = await self._client.get(endpoint, params=params)
        except httpx.HTTPError as exc:
            raise FetchError(
                f"request to {label} failed: {exc}",
                endpoint=endpoint,
                entity_id=entity_id,
            ) from exc

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RateLimited(
                f"rate limit exceeded for {label}",
                endpoint=endpoint,
                entity_id=entity_id,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.is_error:
            raise FetchError(
                f"API error for {label}: HTTP {response.status_code}",
                endpoint=endpoint,
                entity_id=entity_id,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchError(
                f"invalid JSON from {label}",
                endpoint=endpoint,
                entity_id=entity_id,
                status_code=response.status_code,
            ) from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise FetchError(
                f"response from {label} has no 'results' array",
                endpoint=endpoint,
                entity_id=entity_id,
                status_code=response.status_code,
            )
        return results
