from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from kiln.core.execution.log_buffer import LogBuffer


def test_keeps_everything_under_the_cap() -> None:
    buffer = LogBuffer(max_bytes=100)
    buffer.append("hello ")
    buffer.append("world")

    assert str(buffer) == "hello world"
    assert buffer.total_bytes == 11


def test_drops_oldest_chunks_first() -> None:
    buffer = LogBuffer(max_bytes=10)
    for chunk in ("aaaa", "bbbb", "cccc"):
        buffer.append(chunk)

    assert str(buffer) == "bbbbcccc"


def test_oversized_newest_chunk_is_kept() -> None:
    buffer = LogBuffer(max_bytes=4)
    buffer.append("ab")
    buffer.append("0123456789")

    assert str(buffer) == "0123456789"
    assert len(buffer) == 1


def test_tail_returns_last_characters() -> None:
    buffer = LogBuffer(max_bytes=100)
    buffer.append("fatal: ")
    buffer.append("could not read Username")

    assert buffer.tail(8) == "Username"
    assert buffer.tail(0) == ""


def test_size_is_counted_in_utf8_bytes() -> None:
    buffer = LogBuffer(max_bytes=100)
    buffer.append("é✓")

    assert buffer.total_bytes == 5


@given(
    max_bytes=st.integers(min_value=1, max_value=256),
    chunks=st.lists(st.text(min_size=1, max_size=64), max_size=40),
)
def test_total_bytes_bounded_by_cap_plus_newest_chunk(max_bytes: int, chunks: list[str]) -> None:
    buffer = LogBuffer(max_bytes=max_bytes)
    for chunk in chunks:
        buffer.append(chunk)
        newest = len(chunk.encode("utf-8"))
        assert buffer.total_bytes <= max_bytes + newest
        assert buffer.total_bytes == len(str(buffer).encode("utf-8"))
        assert str(buffer).endswith(chunk)
