"""Core data types shared by backends, the resolver and the scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

ItemId = Union[int, str]

# Lowest urgency; used when an item carries no priority at all.
DEFAULT_PRIORITY_SCORE = 4


class ItemState(str, Enum):
    """Canonical lifecycle states every backend vocabulary maps onto."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemState.DONE, ItemState.CANCELLED)


class LedgerEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    VERIFICATION_FAILED = "verification-failed"
    REQUEUED = "requeued"


@dataclass(frozen=True)
class BlockerRef:
    """A blocker the backend models natively (e.g. a Linear "blocks" relation)."""

    display_id: str
    state: ItemState


@dataclass
class WorkItem:
    """A unit of tracked work as seen by the scheduler.

    Attributes:
        id: Backend-native identifier (GitHub issue number, Linear UUID)
        display_id: Human-facing identifier ("#42", "ENG-123")
        title: Short summary
        body: Free-form markdown description
        priority_score: 0 is most urgent, DEFAULT_PRIORITY_SCORE when unset
        state: Canonical lifecycle state
        sequence: Backend ordinal used to break priority ties
        structured_blockers: Natively modelled blockers, if the backend has them
        requeued: True when the item carries a blocked/requeue marker
    """

    id: ItemId
    display_id: str
    title: str
    body: str = ""
    priority_score: int = DEFAULT_PRIORITY_SCORE
    state: ItemState = ItemState.QUEUED
    sequence: int = 0
    structured_blockers: List[BlockerRef] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    url: str = ""
    updated_at: Optional[datetime] = None
    requeued: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (self.priority_score, self.sequence, str(self.id))

    def describe(self) -> str:
        return f"{self.display_id} - {self.title}"


@dataclass(frozen=True)
class LedgerEntry:
    timestamp: str
    event: LedgerEvent
    display_id: str
    title: str
    note: str = ""
