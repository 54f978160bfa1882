"""
Readiness barrier for reference data.

Each reference-data kind (stations, parameters) owns a one-shot signal.
The measurement loop waits for all of them once, racing the process-wide
stop event.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Iterable, List

logger = logging.getLogger("readiness")


class ReadinessOutcome(str, Enum):
    READY = "ready"
    CANCELLED = "cancelled"


class ReadinessSignal:
    """Single-fire broadcast event. Only the first `fire()` has any effect."""

    def __init__(self, name: str):
        self.name = name
        self._event = asyncio.Event()

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self) -> bool:
        """Fire the signal. Returns True only for the call that fired it."""
        if self._event.is_set():
            return False
        self._event.set()
        logger.info("Readiness signal '%s' fired", self.name)
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"ReadinessSignal({self.name!r}, fired={self.fired})"


async def wait_for_all(
    signals: Iterable[ReadinessSignal],
    stop_event: asyncio.Event,
) -> ReadinessOutcome:
    """
    Block until every signal has fired, or until `stop_event` is set.

    Signals that already fired count immediately, so arrival order relative
    to `fire()` does not matter. If both conditions hold, readiness wins.
    """
    pending: List[ReadinessSignal] = [s for s in signals if not s.fired]
    if not pending:
        return ReadinessOutcome.READY
    if stop_event.is_set():
        return ReadinessOutcome.CANCELLED

    ready_task = asyncio.ensure_future(asyncio.gather(*(s.wait() for s in pending)))
    stop_task = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({ready_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (ready_task, stop_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(ready_task, stop_task, return_exceptions=True)

    if all(s.fired for s in pending):
        return ReadinessOutcome.READY
    return ReadinessOutcome.CANCELLED
