"""
In-process telemetry for the feed pipeline.

Nothing is shipped to an external backend; events go to the log and counters
are kept in memory so tests and the CLI can inspect pipeline behavior.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Iterator
from threading import Lock
from typing import Any

logger = logging.getLogger("autofeed.telemetry")

_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}
_LOCK = Lock()


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and emit a debug log.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    return _COUNTERS.get(name, 0)


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time a code block and record the latency sample under ``<metric_name>_ms``.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        name = metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"
        logger.debug("timing=%s seconds=%.6f", name, elapsed)
        with _LOCK:
            _LATENCIES.setdefault(name, []).append(elapsed)


def get_latency_stats(metric_name: str) -> dict[str, float]:
    """
    Get latency statistics (count, min, max, avg, p95) for a metric.
    """
    name = metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"
    samples = sorted(_LATENCIES.get(name, []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p95": 0.0}

    count = len(samples)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p95": samples[min(int(count * 0.95), count - 1)],
    }


def reset() -> None:
    """Clear counters and latency samples (tests)."""
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
