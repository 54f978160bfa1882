import asyncio
import logging
from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from collector.openaq_fetcher import FetchError, RateLimited
from collector.retry import RetryExhausted, RetryPolicy


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _scripted(outcomes):
    """Operation that raises or returns the next scripted outcome per call."""
    calls = {"count": 0}

    async def operation():
        outcome = outcomes[calls["count"]]
        calls["count"] += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return operation, calls


def _rate_limited() -> RateLimited:
    return RateLimited("rate limit exceeded", endpoint="locations/1/latest", entity_id="station 1")


def test_retry_converges_after_rate_limits():
    sleeper = _Sleeper()
    policy = RetryPolicy(max_attempts=3, backoff_min=1.0, backoff_max=5.0, sleep=sleeper, rng=random.Random(7))
    operation, calls = _scripted([_rate_limited(), _rate_limited(), ["ok"]])

    result = asyncio.run(policy.run(operation, entity="station 1"))

    assert result == ["ok"]
    assert calls["count"] == 3
    assert len(sleeper.delays) == 2
    assert all(1.0 <= d <= 5.0 for d in sleeper.delays)


def test_retry_gives_up_after_budget_without_extra_call():
    sleeper = _Sleeper()
    policy = RetryPolicy(max_attempts=3, sleep=sleeper)
    operation, calls = _scripted([_rate_limited(), _rate_limited(), _rate_limited(), ["never"]])

    with pytest.raises(RetryExhausted) as excinfo:
        asyncio.run(policy.run(operation, entity="station 1"))

    assert calls["count"] == 3
    assert len(sleeper.delays) == 2
    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code == 429
    assert "station 1" in str(excinfo.value)


def test_hard_failure_is_not_retried():
    sleeper = _Sleeper()
    policy = RetryPolicy(max_attempts=3, sleep=sleeper)
    hard = FetchError("API error", endpoint="parameters", status_code=500)
    operation, calls = _scripted([hard, ["never"]])

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(policy.run(operation, entity="parameters"))

    assert excinfo.value is hard
    assert calls["count"] == 1
    assert sleeper.delays == []


def test_single_attempt_budget_never_sleeps():
    sleeper = _Sleeper()
    policy = RetryPolicy(max_attempts=1, sleep=sleeper)
    operation, calls = _scripted([_rate_limited()])

    with pytest.raises(RetryExhausted):
        asyncio.run(policy.run(operation, entity="station 1"))

    assert calls["count"] == 1
    assert sleeper.delays == []


def test_sleep_exception_aborts_retry():
    class _Stop(Exception):
        pass

    async def stopping_sleep(seconds: float) -> None:
        raise _Stop()

    policy = RetryPolicy(max_attempts=3, sleep=stopping_sleep)
    operation, calls = _scripted([_rate_limited(), ["never"]])

    with pytest.raises(_Stop):
        asyncio.run(policy.run(operation, entity="station 1"))
    assert calls["count"] == 1


def test_invalid_budget_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_retry_warning_names_retry_after(caplog):
    caplog.set_level(logging.WARNING)
    sleeper = _Sleeper()
    policy = RetryPolicy(max_attempts=2, sleep=sleeper)
    limited = RateLimited("rate limit exceeded", endpoint="locations", retry_after=12.0)
    operation, _ = _scripted([limited, ["ok"]])

    assert asyncio.run(policy.run(operation, entity="locations")) == ["ok"]
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("Retry-After: 12.0" in msg and "attempt 1/2" in msg for msg in warnings)


def test_exhausted_error_keeps_last_rate_limit():
    policy = RetryPolicy(max_attempts=2, sleep=_Sleeper())
    first, last = _rate_limited(), _rate_limited()
    operation, _ = _scripted([first, last])

    with pytest.raises(RetryExhausted) as excinfo:
        asyncio.run(policy.run(operation, entity="station 1"))

    assert excinfo.value.last_error is last
    assert excinfo.value.__cause__ is last
