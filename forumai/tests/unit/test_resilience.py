from __future__ import annotations

import pytest

from forumai.core.errors import IntegrationUnavailableError
from forumai.services.resilience import (
    BreakerPhase,
    BreakerSnapshot,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    get_circuit_breaker,
    retry_async,
)


async def _no_sleep(_: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_s=1.0, max_attempts=2, backoff_ms=1),
        sleep=_no_sleep,
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_ms=1), sleep=_no_sleep)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "test.reopen",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()

    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()


@pytest.mark.asyncio
async def test_breakers_are_shared_per_integration() -> None:
    first = await get_circuit_breaker("remote.account")
    second = await get_circuit_breaker("remote.account")
    other = await get_circuit_breaker("remote.index")

    assert first is second
    assert other is not first


def test_retry_delays_double_per_attempt() -> None:
    policy = RetryPolicy(timeout_s=1.0, max_attempts=4, backoff_ms=100)
    assert list(policy.delays(jitter=lambda: 1.0)) == [0.1, 0.2, 0.4]
    assert list(RetryPolicy(timeout_s=1.0, max_attempts=1, backoff_ms=100).delays()) == []


@pytest.mark.asyncio
async def test_open_breaker_snapshot_survives_serialisation() -> None:
    breaker = CircuitBreaker(
        "test.snapshot",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: 3.5,
    )
    await breaker.record_failure()

    snap = await breaker.snapshot()

    assert snap.phase is BreakerPhase.OPEN
    assert BreakerSnapshot.from_mapping(snap.to_mapping()) == snap
