from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Deque


@dataclass(frozen=True)
class RemoteCallSample:
    at: float
    integration: str
    latency_ms: float
    ok: bool


# Bounded so a long-lived worker never grows without limit.
_remote_calls: Deque[RemoteCallSample] = deque(maxlen=2000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Keep a bounded sample of remote call latencies for the telemetry view.
    _remote_calls.append(RemoteCallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    # Bump a process-local counter.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Record the latest value of a gauge.
    _gauges[name] = float(value)


def counters_snapshot() -> dict[str, int]:
    # Copy counters so callers cannot mutate the live registry.
    return dict(_counters)


def remote_call_summary(window_s: int, *, now: float | None = None) -> dict[str, dict[str, float]]:
    """Per-integration call count, failure count and mean latency over the last ``window_s`` seconds."""
    cutoff = (now if now is not None else time.time()) - window_s
    totals: dict[str, list[float]] = {}
    for sample in _remote_calls:
        if sample.at < cutoff:
            continue
        calls, failures, latency = totals.get(sample.integration, [0.0, 0.0, 0.0])
        totals[sample.integration] = [calls + 1, failures + (0 if sample.ok else 1), latency + sample.latency_ms]
    return {
        name: {"calls": calls, "failures": failures, "latency_ms": round(latency / calls, 2)}
        for name, (calls, failures, latency) in totals.items()
    }


def telemetry_snapshot(window_s: int = 3600) -> dict[str, Any]:
    # Bundle counters, gauges and remote call stats for the admin endpoint.
    return {
        "counters": dict(_counters),
        "gauges": dict(_gauges),
        "remote_calls": remote_call_summary(window_s),
    }


def reset_telemetry() -> None:
    # Clear all telemetry; used by tests.
    _remote_calls.clear()
    _counters.clear()
    _gauges.clear()
