"""Byte-capped ring buffer for container output."""

from __future__ import annotations

from collections import deque

from kiln.core import limits


class LogBuffer:
    """Keeps roughly the last ``max_bytes`` of appended text.

    Oldest chunks are dropped first, but the newest chunk is always kept, so
    ``total_bytes <= max_bytes + len(newest chunk)`` holds after every append.
    """

    def __init__(self, max_bytes: int = limits.MAX_JOB_LOG_BYTES) -> None:
        self.max_bytes = max_bytes
        self._chunks: deque[str] = deque()
        self._sizes: deque[int] = deque()
        self._total_bytes = 0

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._chunks)

    def append(self, text: str) -> None:
        size = len(text.encode("utf-8"))
        self._chunks.append(text)
        self._sizes.append(size)
        self._total_bytes += size
        while self._total_bytes > self.max_bytes and len(self._chunks) > 1:
            self._chunks.popleft()
            self._total_bytes -= self._sizes.popleft()

    def tail(self, chars: int) -> str:
        """Last ``chars`` characters of the retained text."""
        if chars <= 0:
            return ""
        return str(self)[-chars:]

    def __str__(self) -> str:
        return "".join(self._chunks)


__all__ = ["LogBuffer"]
