"""Batching, grouping and chunking of payment ids.

All helpers are pure and order-preserving, so a replayed run derives exactly
the same batches and chunks as the first attempt.
"""

from collections.abc import Iterable, Sequence
from typing import TypeVar

from statuscheck.services.orchestrator.domain import Chunk


T = TypeVar("T")


def dedupe_preserving_order(payment_ids: Iterable[str]) -> list[str]:
    """Drop repeated ids, keeping the first occurrence."""

    return list(dict.fromkeys(payment_ids))


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split `items` into consecutive slices of at most `size`."""

    if size < 1:
        raise ValueError(f"partition size must be >= 1, got {size}")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def batch_count(total: int, size: int) -> int:
    return -(-total // size) if total else 0


def group_by_gateway(resolved: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    """Group `(payment_id, gateway)` pairs, keeping first-seen gateway order."""

    groups: dict[str, list[str]] = {}
    for payment_id, gateway in resolved:
        groups.setdefault(gateway, []).append(payment_id)
    return groups


def build_chunks(payment_ids: Sequence[str], chunk_size: int) -> list[Chunk]:
    """Fixed-size chunks with contiguous indices from 0; the last may be shorter."""

    return [
        Chunk(chunk_index=index, payment_ids=ids)
        for index, ids in enumerate(partition(payment_ids, chunk_size))
    ]


def chunk_plan(groups: dict[str, list[str]], chunk_size: int) -> dict[str, list[Chunk]]:
    return {gateway: build_chunks(ids, chunk_size) for gateway, ids in groups.items()}


def count_chunks(groups: dict[str, list[str]], chunk_size: int) -> int:
    return sum(batch_count(len(ids), chunk_size) for ids in groups.values())
