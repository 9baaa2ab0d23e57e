from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for queue dashboards and worker health checks.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Keep the latest observed value only; gauges are point-in-time queue depths.
    _gauges[name] = float(value)


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_metrics() -> None:
    _counters.clear()
    _gauges.clear()
