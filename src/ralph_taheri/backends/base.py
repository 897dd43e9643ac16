"""Backend contract shared by the GitHub Issues and Linear adapters."""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Pattern

from ..models import ItemState, WorkItem

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^\s*(#{1,6})\s+(.*?)\s*#*\s*$")
_ACCEPTANCE_RE = re.compile(r"^acceptance\s+criteria\b", re.IGNORECASE)

TRANSITION_TARGETS = frozenset(
    {ItemState.IN_PROGRESS, ItemState.DONE, ItemState.BLOCKED, ItemState.QUEUED}
)


class BackendUnavailable(Exception):
    """Transport or auth failure while talking to the tracker.

    The scheduler treats this as "nothing available this cycle" and retries.
    """

    pass


@dataclass(frozen=True)
class TransitionResult:
    target: ItemState
    changed: bool


def extract_acceptance_criteria(body: str) -> str:
    """Return the text under an "Acceptance Criteria" heading.

    The section ends at the next heading of equal or higher level. Blank
    lines are dropped. Returns "" when the heading is absent.

    Example:
        >>> extract_acceptance_criteria("## Acceptance criteria\\n- [ ] a\\n## Next")
        '- [ ] a'
    """
    if not body:
        return ""

    section: List[str] = []
    level: Optional[int] = None
    for line in body.splitlines():
        heading = _HEADING_RE.match(line)
        if level is None:
            if heading and _ACCEPTANCE_RE.match(heading.group(2)):
                level = len(heading.group(1))
            continue
        if heading and len(heading.group(1)) <= level:
            break
        if line.strip():
            section.append(line.rstrip())

    return "\n".join(section)


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 API timestamp ("...Z" included) into an aware datetime."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Backend(ABC):
    """Uniform operations over a work-item store.

    Implementations must keep ``list_open`` and ``count_remaining`` on the
    same filter predicate, and ``transition`` must be a no-op when the item
    is already in the target state.
    """

    kind: str = ""
    name: str = ""

    #: Regex for free-text blocker references; group 1 is the reference.
    reference_pattern: Pattern[str]

    api_log_path: Optional[Path] = None

    @abstractmethod
    def list_open(self, label: str) -> List[WorkItem]:
        """Return queued (non-terminal, unclaimed) items carrying ``label``.

        Raises:
            BackendUnavailable: On transport or auth failure
        """

    @abstractmethod
    def count_remaining(self, label: str) -> int:
        """Count the items ``list_open`` would return, without the page bound.

        Raises:
            BackendUnavailable: On transport or auth failure
        """

    @abstractmethod
    def list_in_progress(self, label: str) -> List[WorkItem]:
        """Return items currently claimed (canonical IN_PROGRESS)."""

    @abstractmethod
    def get_item(self, ref: str) -> Optional[WorkItem]:
        """Point lookup by display reference; None if it does not exist.

        Raises:
            BackendUnavailable: On transport or auth failure
        """

    @abstractmethod
    def transition(self, item: WorkItem, target: ItemState, note: str = "") -> TransitionResult:
        """Move ``item`` to ``target`` (in_progress, done, blocked, queued).

        Raises:
            BackendUnavailable: On transport or auth failure
            ValueError: If ``target`` is not a transition target
        """

    def normalize_reference(self, ref: str) -> str:
        """Canonical form of a free-text reference (used for dedup and lookup)."""
        return ref.strip()

    def extract_acceptance_criteria(self, body: str) -> str:
        return extract_acceptance_criteria(body)

    def _check_target(self, target: ItemState) -> None:
        if target not in TRANSITION_TARGETS:
            raise ValueError(f"Cannot transition to {target.value!r}")

    def _log_api_call(self, level: str, message: str) -> None:
        """Append a JSON line describing a mutating API call."""
        if not self.api_log_path:
            return
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "backend": self.kind,
            "level": level,
            "message": message,
        }
        try:
            self.api_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.api_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.debug("Failed to write API call log: %s", e)
