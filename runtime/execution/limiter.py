"""Row limiter — bound a lazy result stream to a row cap."""

from __future__ import annotations

from itertools import islice
from typing import Any, Iterable, Sequence, TypeVar

from contracts.execution import RowStream

T = TypeVar("T")

_EXHAUSTED = object()


def bound_rows(rows: Iterable[T], cap: int) -> list[T]:
    """Return the first *cap* rows in stream order, or all of them when cap is 0."""
    if cap < 0:
        raise ValueError(f"row cap must be non-negative, got {cap}")
    if cap == 0:
        return list(rows)
    return list(islice(rows, cap))


def bound_stream(stream: RowStream, cap: int) -> tuple[list[Sequence[Any]], bool]:
    """Consume at most *cap* rows from *stream* and close it.

    Returns ``(rows, truncated)``.  One extra row is peeked to tell whether
    the cap dropped anything; nothing past it is fetched.
    """
    try:
        it = iter(stream)
        rows = bound_rows(it, cap)
        truncated = cap > 0 and next(it, _EXHAUSTED) is not _EXHAUSTED
        return rows, truncated
    finally:
        stream.close()
