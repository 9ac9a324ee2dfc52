"""Lightweight optional counters and timings for control-plane hotspots.

Disabled unless ``KILN_INSTRUMENTATION`` is truthy; every call is then a cheap
no-op. ``KILN_INSTRUMENTATION_LOG`` additionally logs each sample as JSON.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

_ENABLED_VALUES = frozenset({"1", "true", "yes", "on"})


def _is_env_enabled(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _ENABLED_VALUES


@dataclass(slots=True)
class _TimingStats:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def to_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "avg_ms": self.total_ms / self.count if self.count else 0.0,
            "max_ms": self.max_ms,
        }


_lock = threading.Lock()
_enabled = _is_env_enabled("KILN_INSTRUMENTATION")
_log_events = _is_env_enabled("KILN_INSTRUMENTATION_LOG")
_counters: dict[str, int] = {}
_timings: dict[str, _TimingStats] = {}


def configure(*, enabled: bool | None = None, log_events: bool | None = None) -> None:
    """Update runtime instrumentation flags."""
    global _enabled, _log_events
    if enabled is not None:
        _enabled = enabled
    if log_events is not None:
        _log_events = log_events


def reset() -> None:
    with _lock:
        _counters.clear()
        _timings.clear()


def snapshot() -> dict[str, Any]:
    """Return a copy of current aggregates."""
    with _lock:
        return {
            "enabled": _enabled,
            "counters": dict(_counters),
            "timings": {name: stats.to_dict() for name, stats in _timings.items()},
        }


def _emit(kind: str, name: str, value: float, fields: dict[str, Any] | None) -> None:
    if not _log_events:
        return
    payload: dict[str, Any] = {"kind": kind, "name": name, "value": value}
    if fields:
        payload["fields"] = fields
    logger.info("instrumentation %s", json.dumps(payload, sort_keys=True, default=str))


def increment_counter(name: str, *, amount: int = 1, fields: dict[str, Any] | None = None) -> None:
    if not _enabled:
        return
    with _lock:
        _counters[name] = _counters.get(name, 0) + amount
    _emit("counter", name, amount, fields)


@contextmanager
def timed_operation(name: str, *, fields: dict[str, Any] | None = None) -> Iterator[None]:
    """Measure a block and record its duration if enabled."""
    if not _enabled:
        yield
        return
    started_at = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        with _lock:
            _timings.setdefault(name, _TimingStats()).add(elapsed_ms)
        _emit("timing", name, elapsed_ms, fields)


__all__ = ["configure", "increment_counter", "reset", "snapshot", "timed_operation"]
