"""Helper functions for chunking sequences."""
from collections.abc import Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield successive fixed-size slices to bound DB writes and progress updates."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
