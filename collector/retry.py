"""
Bounded retry for rate-limited fetches.

Only `RateLimited` is retried. Any other failure propagates on the first
attempt. The budget is per call to `run()`, so one entity running out of
attempts never spends another entity's budget.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .openaq_fetcher import FetchError, RateLimited

logger = logging.getLogger("retry")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryExhausted(FetchError):
    """Every attempt in the budget was rate limited."""

    def __init__(self, entity: str, attempts: int, last_error: RateLimited):
        super().__init__(
            f"giving up on {entity} after {attempts} rate-limited attempts",
            endpoint=last_error.endpoint,
            entity_id=last_error.entity_id,
            status_code=last_error.status_code,
        )
        self.entity = entity
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 5.0,
        sleep: Optional[SleepFn] = None,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = max(backoff_min, backoff_max)
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def backoff_seconds(self) -> float:
        return self._rng.uniform(self.backoff_min, self.backoff_max)

    async def run(self, operation: Callable[[], Awaitable[T]], *, entity: str) -> T:
        """Await `operation()` until it succeeds, fails hard, or the budget runs out."""
        attempt = 1
        while True:
            try:
                return await operation()
            except RateLimited as exc:
                if attempt >= self.max_attempts:
                    raise RetryExhausted(entity, self.max_attempts, exc) from exc
                delay = self.backoff_seconds()
                logger.warning(
                    "Rate limited on %s (attempt %d/%d, Retry-After: %s), retrying in %.1fs",
                    entity, attempt, self.max_attempts, exc.retry_after, delay,
                )
            await self._sleep(delay)
            attempt += 1
