"""In-memory log capture for status output.

Python ``logging`` records are mirrored into a ring buffer that can be
filtered by level and by logger name prefix. ``recent_problems()`` feeds the
``recent_problems`` field of ``kiln status`` and ``Orchestrator.status()``.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any

from kiln.core.limits import MAX_LOG_MESSAGE_LENGTH

MAX_LOG_LINES = 500
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(slots=True)
class LogEntry:
    """A captured log entry."""

    level: str
    levelno: int
    source: str  # logger name, e.g. ``kiln.core.execution.warm_pool``
    message: str
    timestamp: float


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)


class DebugLogHandler(logging.Handler):
    """Logging handler that captures logs to the debug buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if len(msg) > MAX_LOG_MESSAGE_LENGTH:
                msg = msg[:MAX_LOG_MESSAGE_LENGTH] + "... [truncated]"
            log_buffer.append(
                LogEntry(
                    level=record.levelname,
                    levelno=record.levelno,
                    source=record.name,
                    message=msg,
                    timestamp=record.created,
                )
            )
        except Exception:
            self.handleError(record)


_logging_initialized: bool = False


def setup_logging(level: int | str = logging.INFO, *, stream_to_stderr: bool = True) -> None:
    """Attach the ring-buffer handler (and a stderr handler) to the root logger.

    Idempotent: later calls only adjust the level.
    """
    global _logging_initialized

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if _logging_initialized:
        return

    handler = DebugLogHandler()
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root_logger.addHandler(handler)

    if stream_to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console)

    _logging_initialized = True


def get_entries(
    *,
    min_level: int = logging.NOTSET,
    source_prefix: str | None = None,
    limit: int | None = None,
) -> list[LogEntry]:
    """Buffered entries, oldest first, filtered by level and logger prefix."""
    entries = [
        entry
        for entry in log_buffer
        if entry.levelno >= min_level
        and (source_prefix is None or entry.source.startswith(source_prefix))
    ]
    if limit is not None:
        entries = entries[-limit:] if limit > 0 else []
    return entries


def recent_problems(limit: int = 20) -> list[dict[str, Any]]:
    """Latest WARNING-and-above entries from kiln loggers, JSON-ready."""
    return [
        {
            "level": entry.level,
            "source": entry.source,
            "message": entry.message,
            "timestamp": entry.timestamp,
        }
        for entry in get_entries(min_level=logging.WARNING, source_prefix="kiln", limit=limit)
    ]


def clear_log_buffer() -> None:
    """Clear the log buffer."""
    log_buffer.clear()
