"""
Reading timestamp parser.

OpenAQ reports readings as RFC 3339 strings, sometimes with sub-second
precision (up to nanoseconds) and sometimes without. Python's datetime only
holds microseconds, so extra fractional digits are truncated.
"""

from __future__ import annotations

import re
from datetime import datetime

from .models import UTC

_RFC3339_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>[Zz]|[+-]\d{2}:?\d{2})$"
)

_SUBSECOND_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
_SECOND_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


class TimestampParseError(ValueError):
    """Raised when a reading timestamp is not a supported RFC 3339 string."""


def parse_timestamp(text: str) -> datetime:
    """
    Parse an RFC 3339 timestamp and return an aware UTC datetime.

    Accepts both the sub-second form (``2024-05-01T10:00:00.123456789Z``)
    and the second form (``2024-05-01T10:00:00+02:00``).
    """
    raw = str(text or "").strip()
    match = _RFC3339_RE.match(raw)
    if not match:
        raise TimestampParseError(f"unsupported timestamp: {text!r}")

    base = match.group("base").replace("t", "T").replace(" ", "T")
    tz = match.group("tz")
    if tz in ("Z", "z"):
        tz = "+00:00"

    frac = match.group("frac")
    try:
        if frac is not None:
            parsed = datetime.strptime(f"{base}.{frac[:6]}{tz}", _SUBSECOND_FORMAT)
        else:
            parsed = datetime.strptime(f"{base}{tz}", _SECOND_FORMAT)
    except ValueError as exc:
        raise TimestampParseError(f"invalid timestamp: {text!r}") from exc
    return parsed.astimezone(UTC)
