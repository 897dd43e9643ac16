"""Shared fixtures: an in-memory backend and a scripted execution driver."""

from __future__ import annotations

import copy
import re
from typing import Callable, Dict, List, Optional, Union

import pytest

from ralph_taheri.backends.base import Backend, BackendUnavailable, TransitionResult
from ralph_taheri.ledger import ProgressLedger
from ralph_taheri.models import ItemState, WorkItem
from ralph_taheri.runner import ExecutionRequest, ExecutionResult, Signal

LABEL = "ralph-taheri"


def make_item(
    number: int,
    priority: int = 4,
    body: str = "",
    title: Optional[str] = None,
    state: ItemState = ItemState.QUEUED,
    labels: Optional[List[str]] = None,
) -> WorkItem:
    return WorkItem(
        id=number,
        display_id=f"#{number}",
        title=title or f"Item {number}",
        body=body,
        priority_score=priority,
        state=state,
        sequence=number,
        labels=labels if labels is not None else [LABEL],
    )


class InMemoryBackend(Backend):
    """Backend over a dict of items, with hooks for injecting transport errors."""

    kind = "memory"
    name = "In-memory"
    reference_pattern = re.compile(r"(?<![\w#&])#(\d+)\b")

    def __init__(self, items: Optional[List[WorkItem]] = None, page_size: int = 50):
        self.items: Dict[str, WorkItem] = {}
        for item in items or []:
            self.add(item)
        self.page_size = page_size
        self.mutations: List[tuple] = []
        self.comments: Dict[str, List[str]] = {}
        self.lookups: List[str] = []
        self.fail_reads = 0
        self.fail_transitions: set = set()

    def add(self, item: WorkItem) -> None:
        self.items[str(item.id)] = item

    def state_of(self, number: int) -> ItemState:
        return self.items[str(number)].state

    def _maybe_fail(self) -> None:
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise BackendUnavailable("simulated outage")

    def _queued(self, label: str) -> List[WorkItem]:
        return [
            i
            for i in self.items.values()
            if label in i.labels and not i.is_terminal and i.state is not ItemState.IN_PROGRESS
        ]

    def list_open(self, label: str) -> List[WorkItem]:
        self._maybe_fail()
        queued = sorted(self._queued(label), key=lambda i: i.sequence)
        return [copy.deepcopy(i) for i in queued[: self.page_size]]

    def count_remaining(self, label: str) -> int:
        self._maybe_fail()
        return len(self._queued(label))

    def list_in_progress(self, label: str) -> List[WorkItem]:
        return [
            copy.deepcopy(i)
            for i in self.items.values()
            if label in i.labels and i.state is ItemState.IN_PROGRESS
        ]

    def normalize_reference(self, ref: str) -> str:
        return ref.strip().lstrip("#")

    def get_item(self, ref: str) -> Optional[WorkItem]:
        key = self.normalize_reference(ref)
        self.lookups.append(key)
        item = self.items.get(key)
        return copy.deepcopy(item) if item is not None else None

    def transition(self, item: WorkItem, target: ItemState, note: str = "") -> TransitionResult:
        self._check_target(target)
        if target in self.fail_transitions:
            raise BackendUnavailable(f"simulated failure moving to {target.value}")
        stored = self.items[str(item.id)]

        if target is ItemState.DONE:
            if stored.is_terminal:
                return TransitionResult(target, changed=False)
            stored.state = ItemState.DONE
        elif target is ItemState.IN_PROGRESS:
            if stored.state is ItemState.IN_PROGRESS:
                return TransitionResult(target, changed=False)
            stored.state = ItemState.IN_PROGRESS
            stored.requeued = False
        elif target is ItemState.BLOCKED:
            if stored.state is ItemState.QUEUED and stored.requeued:
                return TransitionResult(target, changed=False)
            stored.state = ItemState.QUEUED
            stored.requeued = True
        else:
            if stored.state is ItemState.QUEUED and not stored.requeued:
                return TransitionResult(target, changed=False)
            stored.state = ItemState.QUEUED
            stored.requeued = False

        self.mutations.append((stored.display_id, target))
        if note:
            self.comments.setdefault(stored.display_id, []).append(note)
        return TransitionResult(target, changed=True)


class ScriptedDriver:
    """Execution driver returning preset signals per display id (default ISSUE_COMPLETE).

    A list of signals is consumed one per run; its last signal then repeats.
    """

    def __init__(
        self,
        signals: Optional[Dict[str, Union[Signal, List[Signal]]]] = None,
        on_execute: Optional[Callable[[ExecutionRequest], None]] = None,
    ):
        self.signals = signals or {}
        self.on_execute = on_execute
        self.requests: List[ExecutionRequest] = []

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if self.on_execute is not None:
            self.on_execute(request)
        signal = self.signals.get(request.item.display_id, Signal.ISSUE_COMPLETE)
        if isinstance(signal, list):
            signal = signal.pop(0) if len(signal) > 1 else signal[0]
        code = 1 if signal is Signal.FAILED else 0
        return ExecutionResult(signal=signal, return_code=code, detail="" if code == 0 else "exit 1")

    @property
    def executed(self) -> List[str]:
        return [r.item.display_id for r in self.requests]


@pytest.fixture
def ledger(tmp_path):
    return ProgressLedger(tmp_path / ".ralph" / "progress.txt")


@pytest.fixture
def quiet_output(monkeypatch):
    """Silence operator output during scheduler tests."""
    monkeypatch.setenv("RALPH_VERBOSITY", "quiet")
