"""
Atmo Sync - Collector Module
OpenAQ fetch adapter and rate-limit retry policy.
"""

from .openaq_fetcher import (
    FetchError,
    LocationRecord,
    MissingApiKeyError,
    OpenAQClient,
    ParameterRecord,
    RateLimited,
    ReadingRecord,
)
from .retry import RetryExhausted, RetryPolicy

__all__ = [
    "OpenAQClient",
    "LocationRecord", "ParameterRecord", "ReadingRecord",
    "FetchError", "RateLimited", "RetryExhausted", "MissingApiKeyError",
    "RetryPolicy",
]
