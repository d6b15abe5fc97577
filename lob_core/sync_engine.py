from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from .errors import BookError, BookNotConsistentError, SeedError
from .local_orderbook import BookSide, BookView, OrderBookState
from .types import Diff, PriceLevel, Snapshot


class BookPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    SEEDED = "seeded"
    CONSISTENT = "consistent"
    GAPPED = "gapped"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class Stale:
    """Diff ends at or before the book's last_update_id; nothing to do."""

    diff: Diff
    last_update_id: int
    action = "stale"


@dataclass(frozen=True)
class Applied:
    diff: Diff
    previous_update_id: int
    last_update_id: int
    action = "applied"

    @property
    def exact(self) -> bool:
        """True when the diff started exactly at previous_update_id + 1."""
        return self.diff.first_update_id == self.previous_update_id + 1


@dataclass(frozen=True)
class GapDetected:
    """Ids [missing_from, missing_to] never arrived. Carries the diff for replay."""

    diff: Diff
    missing_from: int
    missing_to: int
    action = "gap"


SequenceOutcome = Union[Stale, Applied, GapDetected]


def classify(last_update_id: int, diff: Diff) -> SequenceOutcome:
    """Sequence a diff against the book position U without touching any state."""
    last = int(last_update_id)
    first_id, last_id = int(diff.first_update_id), int(diff.last_update_id)
    if last_id <= last:
        return Stale(diff=diff, last_update_id=last)
    if first_id > last + 1:
        return GapDetected(diff=diff, missing_from=last + 1, missing_to=first_id - 1)
    return Applied(diff=diff, previous_update_id=last, last_update_id=last_id)


def _check_levels(levels, label: str) -> None:
    for lvl in levels:
        if not isinstance(lvl, PriceLevel):
            raise ValueError(f"{label} entry is not a PriceLevel: {lvl!r}")


class BookStateMachine:
    """Owns the canonical OrderBookState and its sequencing position.

    Pure and I/O-free. `apply` only mutates when the diff is contiguous and
    every change validated; stale and gapped diffs leave the book untouched.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.state = OrderBookState()
        self.phase = BookPhase.UNINITIALIZED
        self.pending_gap: Optional[GapDetected] = None
        self._clock = clock

    @property
    def consistent(self) -> bool:
        return self.state.consistent

    @property
    def last_update_id(self) -> Optional[int]:
        return self.state.last_update_id

    def seed(self, snapshot: Snapshot) -> None:
        """Replace the book wholesale from a snapshot."""
        if self.phase == BookPhase.TERMINATED:
            raise BookError("book is terminated")
        if snapshot is None:
            raise SeedError("no snapshot")
        if not snapshot.bids and not snapshot.asks:
            raise SeedError(f"snapshot {snapshot.last_update_id} has no levels")
        try:
            last_update_id = int(snapshot.last_update_id)
        except (TypeError, ValueError) as exc:
            raise SeedError(f"snapshot last_update_id not int-like: {snapshot.last_update_id!r}") from exc
        try:
            _check_levels(snapshot.bids, "bid")
            _check_levels(snapshot.asks, "ask")
        except ValueError as exc:
            raise SeedError(str(exc)) from exc
        for side, levels in (("bid", snapshot.bids), ("ask", snapshot.asks)):
            prices = [lvl.price for lvl in levels]
            if len(prices) != len(set(prices)):
                raise SeedError(f"snapshot {last_update_id} repeats a {side} price")

        # A fresh state per seed keeps last_update_id monotonic per instance.
        self.state = OrderBookState(
            bids=BookSide(descending=True, levels=snapshot.bids),
            asks=BookSide(descending=False, levels=snapshot.asks),
            last_update_id=last_update_id,
            consistent=True,
            last_applied_at=self._clock(),
        )
        self.pending_gap = None
        self.phase = BookPhase.SEEDED

    def apply(self, diff: Diff) -> SequenceOutcome:
        if self.phase == BookPhase.TERMINATED:
            raise BookError("book is terminated")
        if not self.state.consistent or self.state.last_update_id is None:
            raise BookNotConsistentError(f"cannot apply diff in phase {self.phase.value}")

        outcome = classify(self.state.last_update_id, diff)
        if isinstance(outcome, Stale):
            return outcome
        if isinstance(outcome, GapDetected):
            self.state.consistent = False
            self.pending_gap = outcome
            self.phase = BookPhase.GAPPED
            return outcome

        _check_levels(diff.bid_changes, "bid")
        _check_levels(diff.ask_changes, "ask")
        for lvl in diff.bid_changes:
            self.state.bids.set(lvl.price, lvl.quantity)
        for lvl in diff.ask_changes:
            self.state.asks.set(lvl.price, lvl.quantity)
        self.state.last_update_id = int(diff.last_update_id)
        self.state.last_applied_at = self._clock()
        self.phase = BookPhase.CONSISTENT
        return outcome

    def snapshot_state(self, max_levels: Optional[int] = None) -> BookView:
        """Point-in-time read for the normalizer. Refuses an inconsistent book."""
        if not self.state.consistent:
            raise BookNotConsistentError(f"cannot read book in phase {self.phase.value}")
        return BookView.of(self.state, max_levels=max_levels)

    def terminate(self) -> None:
        self.phase = BookPhase.TERMINATED
