"""
Work queue for download count queries.

The downloads API only accepts bulk (comma-joined) queries for unscoped
packages, so names are split up front into batches of unscoped names and
a queue of individual names. When a bulk query is rejected for its shape
the batch is halved and both halves go back in the queue; batches that are
already tiny are demoted to single queries instead. Every split strictly
shrinks the batch, so a batch of N names reaches single queries after at
most ceil(log2(N)) rejections.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from download_counts.shared.constants import BULK_QUERY_BATCH_SIZE, DEMOTE_THRESHOLD

logger = logging.getLogger(__name__)

# A batch (list of names) or a single name
WorkItem = Union[list[str], str]

UNADDRESSABLE_SEGMENTS = (".", "..")


def is_addressable(name: str) -> bool:
    """
    Whether the downloads API can be queried for this name at all.

    npm accepts scoped names like @chee/.. but the API takes names as URL
    segments, and a '..' segment is resolved like a file path, so
    /downloads/point/last-month/@chee/.. is the total for ALL packages.
    Single '.' segments have the same problem.
    """
    return not any(segment in UNADDRESSABLE_SEGMENTS for segment in name.split("/"))


def is_bulk_eligible(name: str) -> bool:
    """Only unscoped names may appear in a bulk query."""
    return "/" not in name


def chunk(names: list[str], size: int) -> list[list[str]]:
    """Split names into consecutive chunks of size; the last may be short."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [names[i : i + size] for i in range(0, len(names), size)]


def partition_names(
    names: Iterable[str], batch_size: int = BULK_QUERY_BATCH_SIZE
) -> tuple[list[list[str]], list[str], list[str]]:
    """
    Partition the full name list into work.

    Returns:
        (bulk batches, single names, excluded names)
    """
    unscoped = []
    singles = []
    excluded = []
    for name in names:
        if not is_addressable(name):
            excluded.append(name)
        elif is_bulk_eligible(name):
            unscoped.append(name)
        else:
            singles.append(name)

    if excluded:
        logger.info(
            f"Excluding {len(excluded)} names that cannot be addressed by URL",
            extra={"excluded": excluded[:20]},
        )
    return chunk(unscoped, batch_size), singles, excluded


@dataclass
class SplitResult:
    """Work produced from one rejected batch."""

    batches: list[list[str]] = field(default_factory=list)
    singles: list[str] = field(default_factory=list)


def split_batch(batch: list[str], demote_threshold: int = DEMOTE_THRESHOLD) -> SplitResult:
    """
    Split a rejected batch in half, or demote it to single queries.

    Batches of demote_threshold names or fewer are demoted; anything larger
    is cut at len // 2.
    """
    if len(batch) <= demote_threshold:
        return SplitResult(singles=list(batch))
    split_point = len(batch) // 2
    return SplitResult(batches=[batch[:split_point], batch[split_point:]])


class WorkQueue:
    """
    Queue over the pending lists of a BuildState.

    Mutates the state's lists in place so the checkpoint written at the end
    of the invocation reflects exactly what is still pending. All methods
    are synchronous: under cooperative scheduling an item popped here can
    never be handed to a second worker.
    """

    def __init__(self, state, demote_threshold: int = DEMOTE_THRESHOLD):
        self.state = state
        self.demote_threshold = demote_threshold

    @property
    def batches(self) -> list[list[str]]:
        return self.state.pending_bulk_batches

    @property
    def singles(self) -> list[str]:
        return self.state.pending_singles

    def __len__(self) -> int:
        return len(self.batches) + len(self.singles)

    def is_empty(self) -> bool:
        return not self.batches and not self.singles

    def pop(self) -> Optional[WorkItem]:
        """Take the next unit of work, preferring batches. None when empty."""
        if self.batches:
            return self.batches.pop()
        if self.singles:
            return self.singles.pop()
        return None

    def requeue_batch(self, batch: list[str]) -> None:
        self.batches.append(batch)

    def requeue_single(self, name: str) -> None:
        self.singles.append(name)

    def apply_split(self, batch: list[str]) -> SplitResult:
        """Split or demote a rejected batch and queue the result."""
        result = split_batch(batch, self.demote_threshold)
        self.batches.extend(result.batches)
        self.singles.extend(result.singles)
        return result

    def block(self, name: str) -> None:
        """Permanently exclude a name the API will never answer for."""
        self.state.blocked_identifiers.append(name)
