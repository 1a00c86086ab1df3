from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator

from redis.asyncio import Redis

from forumai.core.config import get_settings
from forumai.core.errors import IntegrationUnavailableError
from forumai.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


_coordination_redis: Redis | None = None
_coordination_loop: asyncio.AbstractEventLoop | None = None


def get_coordination_redis() -> Redis | None:
    """Redis shared by queue locks and breaker state, or None when running single-process."""
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _coordination_redis, _coordination_loop
    # redis.asyncio clients are bound to the loop that created them.
    if _coordination_redis is None or _coordination_loop is not loop:
        _coordination_redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _coordination_loop = loop
    return _coordination_redis


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_ms: int

    def delays(self, jitter: Callable[[], float] | None = None) -> Iterator[float]:
        # One delay between each pair of attempts, doubling from backoff_ms.
        jitter = jitter or (lambda: random.uniform(0.5, 1.5))
        for retry in range(max(self.max_attempts, 1) - 1):
            yield (self.backoff_ms / 1000.0) * (2**retry) * jitter()


def default_retry_policy(timeout_s: float | None = None) -> RetryPolicy:
    # Build the retry policy from settings, optionally overriding the timeout.
    settings = get_settings()
    return RetryPolicy(
        timeout_s=timeout_s if timeout_s is not None else settings.remote_timeout_s,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def is_transient(exc: Exception) -> bool:
    # Timeouts, connection failures and 5xx responses are worth retrying.
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    # Run func with a per-attempt timeout, retrying transient failures with backoff.
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient
    delays = policy.delays()
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - non-transient errors are re-raised unchanged
            delay = next(delays, None) if retryable(exc) else None
            if delay is None:
                raise
            increment_counter("external_retries_total")
            logger.info("remote_call_retry delay_s=%.3f error=%s", delay, exc)
            await sleep(delay)


class BreakerPhase(str, Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


_PHASE_GAUGE = {BreakerPhase.CLOSED: 0.0, BreakerPhase.HALF_OPEN: 0.5, BreakerPhase.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        # Read breaker thresholds from settings.
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class BreakerSnapshot:
    phase: BreakerPhase = BreakerPhase.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        # Redis hashes store strings only.
        return {
            "phase": self.phase.value,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> BreakerSnapshot:
        # Parse a stored hash back into a snapshot.
        opened = raw.get("opened_at")
        return cls(
            phase=BreakerPhase(raw.get("phase") or BreakerPhase.CLOSED.value),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened) if opened else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Per-integration breaker for the remote AI service; state lives in Redis when configured."""

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        # Without Redis the breaker state is process-local.
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or time.monotonic
        self._local = BreakerSnapshot()

    @property
    def _key(self) -> str:
        # Namespace breaker keys per integration.
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def snapshot(self) -> BreakerSnapshot:
        # Load the current breaker state.
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._key)
        return BreakerSnapshot.from_mapping(raw) if raw else BreakerSnapshot()

    async def _store(self, snap: BreakerSnapshot) -> None:
        # Persist state with an expiry so abandoned breakers age out.
        if self._redis is None:
            self._local = snap
            return
        await self._redis.hset(self._key, mapping=snap.to_mapping())
        await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))

    def _enter(self, current: BreakerSnapshot, phase: BreakerPhase) -> BreakerSnapshot:
        # Move to a new phase, logging and counting real transitions only.
        if current.phase is not phase:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, current.phase.value, phase.value)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{phase.value}")
            set_gauge(f"circuit_breaker_state.{self.name}", _PHASE_GAUGE[phase])
        return BreakerSnapshot(phase=phase, opened_at=self._time() if phase is BreakerPhase.OPEN else None)

    async def before_call(self) -> None:
        # Reject calls while open; let a bounded number of trials through once cooled.
        snap = await self.snapshot()
        if snap.phase is BreakerPhase.OPEN:
            cooled = snap.opened_at is not None and self._time() - snap.opened_at >= self._config.open_seconds
            if not cooled:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snap = self._enter(snap, BreakerPhase.HALF_OPEN)
        if snap.phase is BreakerPhase.HALF_OPEN:
            # Only a bounded number of trial calls get through while half open.
            if snap.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snap.trials += 1
            await self._store(snap)

    async def record_success(self) -> None:
        # Any success closes the breaker and clears the failure count.
        snap = await self.snapshot()
        await self._store(self._enter(snap, BreakerPhase.CLOSED) if snap.phase is not BreakerPhase.CLOSED else BreakerSnapshot())

    async def record_failure(self) -> None:
        # Open on the threshold, or immediately when a half-open trial fails.
        snap = await self.snapshot()
        failures = snap.failures + 1
        if snap.phase is BreakerPhase.HALF_OPEN or failures >= self._config.failure_threshold:
            await self._store(self._enter(snap, BreakerPhase.OPEN))
            return
        snap.failures = failures
        await self._store(snap)


_breakers: dict[str, CircuitBreaker] = {}


async def get_circuit_breaker(name: str) -> CircuitBreaker:
    # Every client instance for one integration shares the same failure count.
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(name, redis=get_coordination_redis())
    return _breakers[name]


def reset_circuit_breakers() -> None:
    # Drop cached breakers; used by tests.
    _breakers.clear()
