import asyncio
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.readiness import ReadinessOutcome, ReadinessSignal, wait_for_all


def _fire_in_order(order):
    async def scenario():
        signals = {"stations": ReadinessSignal("stations"), "parameters": ReadinessSignal("parameters")}
        stop = asyncio.Event()
        waiter = asyncio.create_task(wait_for_all(signals.values(), stop))
        await asyncio.sleep(0)

        signals[order[0]].fire()
        await asyncio.sleep(0.01)
        released_early = waiter.done()

        signals[order[1]].fire()
        outcome = await asyncio.wait_for(waiter, timeout=1.0)
        return released_early, outcome

    return asyncio.run(scenario())


def test_barrier_waits_for_both_stations_first():
    released_early, outcome = _fire_in_order(["stations", "parameters"])
    assert released_early is False
    assert outcome is ReadinessOutcome.READY


def test_barrier_waits_for_both_parameters_first():
    released_early, outcome = _fire_in_order(["parameters", "stations"])
    assert released_early is False
    assert outcome is ReadinessOutcome.READY


def test_signals_fired_before_waiting_count():
    async def scenario():
        a, b = ReadinessSignal("stations"), ReadinessSignal("parameters")
        a.fire()
        b.fire()
        return await wait_for_all([a, b], asyncio.Event())

    assert asyncio.run(scenario()) is ReadinessOutcome.READY


def test_fire_is_idempotent():
    async def scenario():
        signal = ReadinessSignal("stations")
        return signal.fire(), signal.fire(), signal.fired

    first, second, fired = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert fired is True


def test_stop_releases_waiter_as_cancelled():
    async def scenario():
        a, b = ReadinessSignal("stations"), ReadinessSignal("parameters")
        stop = asyncio.Event()
        waiter = asyncio.create_task(wait_for_all([a, b], stop))
        a.fire()
        await asyncio.sleep(0.01)
        stop.set()
        return await asyncio.wait_for(waiter, timeout=1.0)

    assert asyncio.run(scenario()) is ReadinessOutcome.CANCELLED


def test_stop_already_set_returns_cancelled():
    async def scenario():
        stop = asyncio.Event()
        stop.set()
        return await wait_for_all([ReadinessSignal("stations")], stop)

    assert asyncio.run(scenario()) is ReadinessOutcome.CANCELLED


def _many_waiters(order, waiters=3):
    async def scenario():
        signals = {"stations": ReadinessSignal("stations"), "parameters": ReadinessSignal("parameters")}
        stop = asyncio.Event()
        tasks = [asyncio.create_task(wait_for_all(signals.values(), stop)) for _ in range(waiters)]
        await asyncio.sleep(0)

        pending_before_last = []
        for name in order[:-1]:
            signals[name].fire()
            await asyncio.sleep(0.01)
            pending_before_last.append(sum(not t.done() for t in tasks))

        signals[order[-1]].fire()
        outcomes = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1.0)
        return pending_before_last, outcomes

    return asyncio.run(scenario())


def test_all_waiters_released_stations_first():
    pending, outcomes = _many_waiters(["stations", "parameters"])
    assert pending == [3]
    assert outcomes == [ReadinessOutcome.READY] * 3


def test_all_waiters_released_parameters_first():
    pending, outcomes = _many_waiters(["parameters", "stations"])
    assert pending == [3]
    assert outcomes == [ReadinessOutcome.READY] * 3


def test_duplicate_fire_keeps_waiters_blocked():
    pending, outcomes = _many_waiters(["stations", "stations", "parameters"])
    assert pending == [3, 3]
    assert outcomes == [ReadinessOutcome.READY] * 3
