"""Stable partitioning of identifier sets into chunks and batches."""

from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


def partition(items: Sequence[T], size: int | None) -> list[tuple[T, ...]]:
    """Split items into consecutive partitions of at most ``size`` elements.

    Partitions are disjoint, keep the input order, and their concatenation
    is the input. Relational chunks and external batches both use this, each
    with its own size.

    Args:
        items: Items to partition
        size: Maximum partition size; None means a single partition

    Returns:
        List of partitions (empty if there are no items)

    Raises:
        ValueError: If size is not a positive integer
    """
    if size is not None and size < 1:
        raise ValueError(f"Partition size must be a positive integer, got {size}")

    if not items:
        return []

    if size is None or size >= len(items):
        return [tuple(items)]

    return [tuple(items[start : start + size]) for start in range(0, len(items), size)]
