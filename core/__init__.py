"""
Atmo Sync - Core Module
Domain records and the synchronization engine.
"""

from .models import Measurement, Parameter, Station
from .readiness import ReadinessOutcome, ReadinessSignal, wait_for_all
from .timestamps import TimestampParseError, parse_timestamp

__all__ = [
    "Station", "Parameter", "Measurement",
    "ReadinessSignal", "ReadinessOutcome", "wait_for_all",
    "parse_timestamp", "TimestampParseError",
]
