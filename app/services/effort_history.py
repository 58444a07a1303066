"""Effort history reconciliation for work items.

Derives ``initial_remaining_work``, ``last_remaining_work``,
``done_remaining_work`` and ``closed_date`` from a work item's revision
history plus its live values.

Two notions of "last remaining work" coexist on purpose:

* the scan's running value (``EffortScan.last_remaining_work``) follows the
  raw field, so a revision that sets remaining work to zero resets it to zero;
* the persisted ``WorkItem.last_remaining_work`` is a ratchet and only moves
  on positive values (``apply_effort_history`` / ``apply_live_effort``).

Everything here is free of I/O so full sync, smart sync and the backfill job
share one code path.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

from app.models.work_item import WorkItem
from app.services.azure_devops import AzureRevision, AzureWorkItem

DONE_STATES = frozenset({"done", "closed", "completed"})


def normalize_state(state: Optional[str]) -> str:
    return (state or "").strip().lower()


def is_done_state(state: Optional[str]) -> bool:
    return normalize_state(state) in DONE_STATES


@dataclass(frozen=True)
class RevisionPoint:
    """The fields of one revision that matter for effort tracking.

    ``remaining`` and ``state`` are None when the revision does not carry
    the field.
    """

    rev: int
    remaining: Optional[float] = None
    state: Optional[str] = None
    changed_date: Optional[datetime] = None


def extract_revision_point(revision: AzureRevision) -> RevisionPoint:
    return RevisionPoint(
        rev=revision.rev,
        remaining=revision.remaining_work,
        state=revision.state,
        changed_date=revision.changed_date,
    )


@dataclass
class EffortScan:
    """Running state of a single pass over revisions in ascending ``rev`` order."""

    initial_remaining_work: float = 0.0
    found_initial: bool = False
    last_remaining_work: float = 0.0
    last_seen_remaining: float = 0.0
    last_non_zero_remaining: float = 0.0
    done_remaining_work: float = 0.0  # zero until a done transition assigns it
    closed_date: Optional[datetime] = None
    previous_state: Optional[str] = None

    def observe(self, point: RevisionPoint) -> None:
        remaining = point.remaining
        if remaining is not None:
            self.last_remaining_work = remaining
            self.last_seen_remaining = remaining
            if remaining > 0:
                self.last_non_zero_remaining = remaining
                if not self.found_initial:
                    self.initial_remaining_work = remaining
                    self.found_initial = True

        # A revision without System.State keeps the previous state
        state = point.state if point.state is not None else self.previous_state
        entered_done = is_done_state(state) and not is_done_state(self.previous_state)

        if entered_done:
            if self.closed_date is None and point.changed_date is not None:
                self.closed_date = point.changed_date
            if self.done_remaining_work == 0:
                if remaining is not None and remaining > 0:
                    self.done_remaining_work = remaining
                elif self.last_non_zero_remaining > 0:
                    self.done_remaining_work = self.last_non_zero_remaining
                elif self.last_seen_remaining > 0:
                    self.done_remaining_work = self.last_seen_remaining

        self.previous_state = state


@dataclass(frozen=True)
class LiveEffort:
    """Current values of a work item as fetched from Azure."""

    remaining_work: float = 0.0
    completed_work: float = 0.0
    state: str = ""

    @classmethod
    def from_work_item(cls, item: AzureWorkItem) -> "LiveEffort":
        return cls(
            remaining_work=item.remaining_work or 0.0,
            completed_work=item.completed_work or 0.0,
            state=item.state or "",
        )


@dataclass(frozen=True)
class EffortHistory:
    initial_remaining_work: float
    last_remaining_work: float
    done_remaining_work: Optional[float]
    closed_date: Optional[datetime] = None


RevisionLike = Union[RevisionPoint, AzureRevision]


def _as_points(revisions: Iterable[RevisionLike]) -> List[RevisionPoint]:
    points = [r if isinstance(r, RevisionPoint) else extract_revision_point(r) for r in revisions]
    # The API usually returns ascending revs but nothing guarantees it
    return sorted(points, key=lambda p: p.rev)


def scan_revisions(revisions: Iterable[RevisionLike]) -> EffortScan:
    scan = EffortScan()
    for point in _as_points(revisions):
        scan.observe(point)
    return scan


def reconcile_effort(current: LiveEffort, revisions: Iterable[RevisionLike]) -> EffortHistory:
    """Scan revision history and fill gaps from the live item."""
    scan = scan_revisions(revisions)

    initial = scan.initial_remaining_work
    if not scan.found_initial:
        initial = current.remaining_work + current.completed_work

    last = scan.last_remaining_work
    if not last:
        last = scan.last_non_zero_remaining or current.remaining_work

    done = scan.done_remaining_work
    if not done and is_done_state(current.state):
        if current.remaining_work > 0:
            done = current.remaining_work
        elif scan.last_non_zero_remaining > 0:
            done = scan.last_non_zero_remaining
        else:
            done = current.completed_work

    return EffortHistory(
        initial_remaining_work=initial,
        last_remaining_work=last,
        done_remaining_work=done or None,
        closed_date=scan.closed_date,
    )


def needs_history(item: WorkItem) -> bool:
    """True when any derived effort field is still missing for this item."""
    if not item.initial_remaining_work:
        return True
    if not item.last_remaining_work:
        return True
    return is_done_state(item.state) and not item.done_remaining_work


def apply_effort_history(item: WorkItem, history: EffortHistory) -> bool:
    """Persist reconciled values with ratchet semantics. Returns True if anything changed."""
    changed = False
    for attr in ("initial_remaining_work", "last_remaining_work", "done_remaining_work"):
        value = getattr(history, attr)
        if value is not None and value > 0 and getattr(item, attr) != value:
            setattr(item, attr, value)
            changed = True
    if history.closed_date is not None and item.closed_date is None:
        item.closed_date = history.closed_date
        changed = True
    return changed


def apply_live_effort(
    item: WorkItem,
    remaining: Optional[float],
    completed: Optional[float],
    state: Optional[str],
) -> None:
    """Copy live effort values onto ``item`` during an ordinary sync pass.

    ``remaining`` is None when the payload omitted the field; an omitted or
    zero value never clears a positive ``last_remaining_work`` or
    ``done_remaining_work``.
    """
    item.remaining_work = remaining or 0.0
    item.completed_work = completed or 0.0

    if remaining is not None and remaining > 0:
        item.last_remaining_work = remaining
    elif item.last_remaining_work is None and remaining is not None:
        item.last_remaining_work = remaining

    if is_done_state(state) and not item.done_remaining_work:
        if remaining is not None and remaining > 0:
            seed = remaining
        elif item.last_remaining_work and item.last_remaining_work > 0:
            seed = item.last_remaining_work
        else:
            seed = completed or 0.0
        if seed > 0:
            item.done_remaining_work = seed
