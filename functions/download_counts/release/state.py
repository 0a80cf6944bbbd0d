"""
Build state for one release cycle.

A release takes many invocations to build. The state below is the
checkpoint that carries progress from one invocation to the next, and the
phase it records decides what the next invocation does:

    (no checkpoint) INIT -> FETCHING -> MERGING -> PUBLISHING -> DONE

FETCHING repeats until no batches or single names are pending. Every other
phase runs exactly once per cycle.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from download_counts.shared.errors import CheckpointCorruptError


class Phase(Enum):
    INIT = "init"
    FETCHING = "fetching"
    MERGING = "merging"
    PUBLISHING = "publishing"
    DONE = "done"


PERSISTED_PHASES = (Phase.FETCHING, Phase.MERGING, Phase.PUBLISHING, Phase.DONE)


@dataclass
class BuildState:
    """Persisted progress of one release cycle."""

    version: str
    phase: Phase = Phase.FETCHING
    counts_files_so_far: int = 0
    pending_bulk_batches: list[list[str]] = field(default_factory=list)
    pending_singles: list[str] = field(default_factory=list)
    blocked_identifiers: list[str] = field(default_factory=list)
    excluded_identifiers: list[str] = field(default_factory=list)
    published: bool = False

    @classmethod
    def new(
        cls,
        version: str,
        batches: list[list[str]],
        singles: list[str],
        excluded: Optional[list[str]] = None,
    ) -> "BuildState":
        """Seed the state for a new cycle."""
        state = cls(
            version=version,
            pending_bulk_batches=batches,
            pending_singles=singles,
            excluded_identifiers=excluded or [],
        )
        if not state.has_pending_work():
            state.phase = Phase.MERGING
        return state

    def has_pending_work(self) -> bool:
        return bool(self.pending_bulk_batches or self.pending_singles)

    def pending_count(self) -> int:
        """Number of names still waiting to be queried."""
        return sum(len(batch) for batch in self.pending_bulk_batches) + len(self.pending_singles)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "phase": self.phase.value,
            "counts_files_so_far": self.counts_files_so_far,
            "pending_bulk_batches": self.pending_bulk_batches,
            "pending_singles": self.pending_singles,
            "blocked_identifiers": self.blocked_identifiers,
            "excluded_identifiers": self.excluded_identifiers,
            "published": self.published,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BuildState":
        """
        Decode a persisted checkpoint.

        Raises:
            CheckpointCorruptError: Missing fields or an unknown phase
        """
        if not isinstance(data, dict):
            raise CheckpointCorruptError(f"Checkpoint must be an object, got {type(data).__name__}")
        try:
            phase = Phase(data["phase"])
            state = cls(
                version=data["version"],
                phase=phase,
                counts_files_so_far=int(data["counts_files_so_far"]),
                pending_bulk_batches=[list(batch) for batch in data["pending_bulk_batches"]],
                pending_singles=list(data["pending_singles"]),
                blocked_identifiers=list(data.get("blocked_identifiers", [])),
                excluded_identifiers=list(data.get("excluded_identifiers", [])),
                published=bool(data.get("published", False)),
            )
        except KeyError as e:
            raise CheckpointCorruptError(f"Checkpoint is missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise CheckpointCorruptError(f"Checkpoint has an invalid value: {e}") from e

        if phase not in PERSISTED_PHASES:
            raise CheckpointCorruptError(f"Phase {phase.value!r} is never persisted")
        return state


def determine_phase(state: Optional[BuildState]) -> Phase:
    """Which phase the next invocation must run."""
    if state is None:
        return Phase.INIT
    if state.published or state.phase == Phase.DONE:
        return Phase.DONE
    return state.phase


def advance_after_fetch(state: BuildState) -> Phase:
    """Record a written shard and move to MERGING once nothing is pending."""
    state.counts_files_so_far += 1
    if not state.has_pending_work():
        state.phase = Phase.MERGING
    return state.phase


def advance_after_merge(state: BuildState) -> Phase:
    state.phase = Phase.PUBLISHING
    return state.phase


def advance_after_publish(state: BuildState) -> Phase:
    state.published = True
    state.phase = Phase.DONE
    return state.phase
