"""Chunk planning: split a flat URL list into fixed-size chunks.

The URL at flat index ``i`` lands in chunk ``i // chunk_size + 1`` at
position ``i % chunk_size``.  Planning is pure and deterministic, so a
replanned list always yields the same placement.
"""

from __future__ import annotations

from dataclasses import dataclass

from extraction_orchestrator.core.exceptions import ValidationError


@dataclass(frozen=True)
class ChunkAssignment:
    """Placement of one URL within the plan."""

    url: str
    chunk_number: int
    position_in_chunk: int


def plan_chunks(urls: list[str], chunk_size: int) -> list[ChunkAssignment]:
    """Assign every URL a 1-based chunk number and a 0-based position.

    Args:
        urls: URLs in submission order.
        chunk_size: Number of URLs per chunk.

    Returns:
        One :class:`ChunkAssignment` per URL, in submission order.

    Raises:
        ValidationError: If ``chunk_size`` is not positive.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be a positive integer", field="chunk_size")
    return [
        ChunkAssignment(
            url=url,
            chunk_number=index // chunk_size + 1,
            position_in_chunk=index % chunk_size,
        )
        for index, url in enumerate(urls)
    ]


def chunk_count(total_urls: int, chunk_size: int) -> int:
    """Number of chunks a list of ``total_urls`` URLs is split into."""
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be a positive integer", field="chunk_size")
    return -(-total_urls // chunk_size)
