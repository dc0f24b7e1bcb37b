"""Partition work into batch-endpoint sized chunks."""

from typing import Iterator, TypeVar

T = TypeVar("T")


def iter_chunks(items: list[T], size: int) -> Iterator[list[T]]:
    """Yield successive slices of at most ``size`` items, in order."""
    if size < 1:
        raise ValueError(f"Chunk size must be >= 1, got {size}")
    for i in range(0, len(items), size):
        yield items[i : i + size]


def chunk(items: list[T], size: int) -> list[list[T]]:
    """Split ``items`` into batches of at most ``size``.

    Empty input yields no batches.

    >>> chunk([1, 2, 3, 4, 5], 2)
    [[1, 2], [3, 4], [5]]
    """
    return list(iter_chunks(items, size))
