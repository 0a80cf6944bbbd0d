"""
Merging of result shards and a summary of the merged dataset.
"""

import logging
from typing import Iterable

from download_counts.shared.constants import STATS_INTERVALS
from download_counts.shared.errors import DuplicateIdentifierError

logger = logging.getLogger(__name__)

STATS_CEILING = 10_000_000


def merge_shards(shards: Iterable[dict[str, int]], strict: bool = False) -> dict[str, int]:
    """
    Union of all shards, in shard order.

    Each name should be counted in exactly one shard. Should one appear in
    several, the later shard wins and the collision is logged; with
    strict=True a DuplicateIdentifierError is raised instead.
    """
    merged: dict[str, int] = {}
    duplicates: list[str] = []

    for index, shard in enumerate(shards):
        for name, count in shard.items():
            if name in merged:
                duplicates.append(name)
            merged[name] = count
        logger.debug(f"Merged shard {index} ({len(shard)} counts)")

    if duplicates:
        if strict:
            raise DuplicateIdentifierError(duplicates)
        logger.warning(
            f"{len(duplicates)} package(s) counted in more than one shard; kept the later count",
            extra={"duplicates": duplicates[:20]},
        )
    return merged


def sort_by_count(counts: dict[str, int]) -> dict[str, int]:
    """Same mapping with keys ordered by count, descending."""
    return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))


def summarize_counts(counts: dict[str, int]) -> list[dict]:
    """Number of packages in each download band."""
    bands = []
    for i, low in enumerate(STATS_INTERVALS):
        high = STATS_CEILING if i == len(STATS_INTERVALS) - 1 else STATS_INTERVALS[i + 1] - 1
        packages = sum(1 for count in counts.values() if low <= count <= high)
        bands.append({"min": low, "max": high, "packages": packages})
    return bands


def format_summary(bands: list[dict]) -> str:
    """Markdown table of summarize_counts() output."""
    lines = ["Downloads | Packages", "--- | ---"]
    lines.extend(f"{band['min']}-{band['max']} | {band['packages']}" for band in bands)
    return "\n".join(lines)
