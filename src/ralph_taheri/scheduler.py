"""The selection loop: one work item per cycle, driven to a terminal outcome.

Each cycle:

1. Stop if nothing remains.
2. Pick the most urgent unblocked item; stop if every candidate is blocked.
3. Claim it (in_progress) and record ``started``.
4. Run the execution driver and wait for its signal.
5. Blocked or failed: requeue with the blocked marker and continue.
6. Success: optionally verify. A failed check soft-resets the agent's
   commits and requeues; otherwise the item is closed and published.

Transport failures while reading the pool make a cycle "unavailable"; the
loop sleeps and retries until ``max_iterations`` is spent. Failures while
transitioning are logged and the cycle carries on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Protocol

from .backends.base import Backend, BackendUnavailable
from .dependencies import BlockingResolver, find_blocking_cycles, format_cycle, select_next
from .ledger import ProgressLedger
from .models import ItemState, LedgerEvent, WorkItem
from .output import print_output
from .runner import ExecutionRequest, ExecutionResult, Signal
from .verify import VerificationResult

logger = logging.getLogger(__name__)


class ExecutionDriver(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


class Verifier(Protocol):
    def verify(self, item: WorkItem) -> VerificationResult: ...


class Publisher(Protocol):
    def head(self) -> str: ...

    def last_commit_subject(self) -> str: ...

    def publish(self) -> bool: ...

    def revert(self, head_before: Optional[str]) -> bool: ...


class HaltReason(str, Enum):
    ALL_DONE = "all_done"
    ALL_BLOCKED = "all_blocked"
    COMPLETE_SIGNAL = "complete_signal"
    MAX_ITERATIONS = "max_iterations"


class CycleOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    VERIFICATION_FAILED = "verification_failed"
    UNAVAILABLE = "unavailable"
    NOTHING_REMAINING = "nothing_remaining"
    ALL_BLOCKED = "all_blocked"


@dataclass
class CycleResult:
    iteration: int
    outcome: CycleOutcome
    item: Optional[WorkItem] = None
    signal: Optional[Signal] = None
    note: str = ""


@dataclass
class RunSummary:
    iterations: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    remaining: Optional[int] = None
    halt_reason: HaltReason = HaltReason.MAX_ITERATIONS
    cycles: List[CycleResult] = field(default_factory=list)
    blocking_cycles: List[List[str]] = field(default_factory=list)
    reclaimed: int = 0


def format_commit_message(item: WorkItem) -> str:
    return f"feat: {item.display_id} - {item.title}"


class Scheduler:
    """Drives work items from a backend through the agent, one per cycle."""

    def __init__(
        self,
        backend: Backend,
        ledger: ProgressLedger,
        driver: ExecutionDriver,
        label: str,
        max_iterations: int = 10,
        verifier: Optional[Verifier] = None,
        publisher: Optional[Publisher] = None,
        reclaim_stale_minutes: int = 0,
        retry_delay_seconds: float = 0,
        sleep=time.sleep,
    ):
        self.backend = backend
        self.ledger = ledger
        self.driver = driver
        self.label = label
        self.max_iterations = max_iterations
        self.verifier = verifier
        self.publisher = publisher
        self.reclaim_stale_minutes = reclaim_stale_minutes
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    # -------------------------
    # Helpers
    # -------------------------

    def _transition(self, item: WorkItem, target: ItemState, note: str = "") -> bool:
        """Transition and swallow transport errors; True if the backend call succeeded."""
        try:
            result = self.backend.transition(item, target, note)
        except BackendUnavailable as e:
            logger.warning(
                "Failed to move %s to %s: %s", item.display_id, target.value, e
            )
            print_output(
                f"Warning: could not mark {item.display_id} as {target.value}: {e}",
                level="error",
            )
            return False
        if not result.changed:
            logger.debug("%s already %s", item.display_id, target.value)
        return True

    def _head(self) -> str:
        if self.publisher is None:
            return ""
        return self.publisher.head()

    def reclaim_stale(self) -> int:
        """Requeue in_progress items untouched for longer than the threshold."""
        if self.reclaim_stale_minutes <= 0:
            return 0
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.reclaim_stale_minutes)
        try:
            claimed = self.backend.list_in_progress(self.label)
        except BackendUnavailable as e:
            logger.warning("Could not list in-progress items for reclamation: %s", e)
            return 0

        reclaimed = 0
        for item in claimed:
            if item.updated_at is None or item.updated_at >= cutoff:
                continue
            note = (
                f"Requeued by ralph-taheri: in progress with no update for more than "
                f"{self.reclaim_stale_minutes} minutes."
            )
            if self._transition(item, ItemState.QUEUED, note):
                self.ledger.append(LedgerEvent.REQUEUED, item, "stale claim")
                print_output(f"Requeued stale claim {item.describe()}")
                reclaimed += 1
        return reclaimed

    # -------------------------
    # Loop
    # -------------------------

    def run(self) -> RunSummary:
        summary = RunSummary()
        self.ledger.ensure()
        summary.reclaimed = self.reclaim_stale()

        halted = False
        for iteration in range(1, self.max_iterations + 1):
            summary.iterations = iteration
            print_output(f"=== Iteration {iteration} / {self.max_iterations} ===")
            cycle = self.run_cycle(iteration, summary)
            summary.cycles.append(cycle)

            if cycle.outcome is CycleOutcome.NOTHING_REMAINING:
                summary.halt_reason = HaltReason.ALL_DONE
                halted = True
            elif cycle.outcome is CycleOutcome.ALL_BLOCKED:
                summary.halt_reason = HaltReason.ALL_BLOCKED
                halted = True
            elif cycle.signal is Signal.COMPLETE:
                print_output("Agent signalled that all work is complete.")
                summary.halt_reason = HaltReason.COMPLETE_SIGNAL
                halted = True
            elif cycle.outcome is CycleOutcome.UNAVAILABLE and iteration < self.max_iterations:
                if self.retry_delay_seconds:
                    self._sleep(self.retry_delay_seconds)

            if halted:
                break

        if not halted:
            summary.halt_reason = HaltReason.MAX_ITERATIONS

        try:
            summary.remaining = self.backend.count_remaining(self.label)
        except BackendUnavailable as e:
            logger.warning("Could not count remaining items: %s", e)
            summary.remaining = None

        return summary

    def run_cycle(self, iteration: int, summary: RunSummary) -> CycleResult:
        try:
            remaining = self.backend.count_remaining(self.label)
            print_output(f"Items remaining: {remaining}")
            if remaining == 0:
                print_output("All items completed.")
                return CycleResult(iteration, CycleOutcome.NOTHING_REMAINING)

            items = self.backend.list_open(self.label)
            # One resolver per cycle; lookups are never reused across cycles.
            selection = select_next(items, self.backend, BlockingResolver(self.backend))
        except BackendUnavailable as e:
            logger.warning("Backend unavailable: %s", e)
            print_output(f"Backend unavailable ({e}); retrying next cycle.", level="error")
            return CycleResult(iteration, CycleOutcome.UNAVAILABLE, note=str(e))

        if selection.item is None:
            print_output("No unblocked items found (all remaining work is blocked).")
            for blocked_item, blockers in selection.blocked:
                print_output(f"  {blocked_item.describe()} blocked by {', '.join(blockers)}")
            summary.blocking_cycles = find_blocking_cycles(selection.blocked)
            for cyc in summary.blocking_cycles:
                print_output(f"  Blocking cycle: {format_cycle(cyc)}")
            return CycleResult(iteration, CycleOutcome.ALL_BLOCKED)

        return self._work(iteration, selection.item, remaining == 1, summary)

    def _work(
        self, iteration: int, item: WorkItem, is_last: bool, summary: RunSummary
    ) -> CycleResult:
        print_output(f"Working on: {item.describe()}")
        self._transition(item, ItemState.IN_PROGRESS)
        self.ledger.append(LedgerEvent.STARTED, item)

        head_before = self._head()
        request = ExecutionRequest(
            item=item,
            acceptance_criteria=self.backend.extract_acceptance_criteria(item.body),
            is_last=is_last,
            iteration=iteration,
            backend_kind=self.backend.kind,
        )
        result = self.driver.execute(request)

        if result.signal is Signal.BLOCKED:
            note = f"Blocked: the agent reported it cannot proceed (iteration {iteration})."
            self._transition(item, ItemState.BLOCKED, note)
            self.ledger.append(LedgerEvent.BLOCKED, item, "agent signalled BLOCKED")
            print_output(f"Blocked: {item.describe()}")
            summary.blocked += 1
            return CycleResult(iteration, CycleOutcome.BLOCKED, item, result.signal)

        if not result.signal.is_success:
            detail = result.detail or f"agent exited with code {result.return_code}"
            note = f"ralph-taheri iteration {iteration} failed: {detail}."
            self._transition(item, ItemState.BLOCKED, note)
            self.ledger.append(LedgerEvent.FAILED, item, detail)
            print_output(f"Failed: {item.describe()} ({detail})", level="error")
            summary.failed += 1
            return CycleResult(iteration, CycleOutcome.FAILED, item, result.signal, detail)

        if self.verifier is not None:
            print_output(f"Running verification for {item.display_id}...")
            verification = self.verifier.verify(item)
            if not verification.passed:
                if self.publisher is not None and self.publisher.revert(head_before):
                    print_output("Reverted the agent's commits (soft reset).")
                note = f"Verification failed: {verification.detail}. Requeued for another attempt."
                self._transition(item, ItemState.QUEUED, note)
                self.ledger.append(LedgerEvent.VERIFICATION_FAILED, item, verification.detail)
                print_output(f"Verification FAILED for {item.display_id}", level="error")
                summary.failed += 1
                return CycleResult(
                    iteration,
                    CycleOutcome.VERIFICATION_FAILED,
                    item,
                    result.signal,
                    verification.detail,
                )
            if not verification.skipped:
                print_output(f"Verification passed for {item.display_id}")

        commit = format_commit_message(item)
        if self.publisher is not None and self._head() != head_before:
            commit = self.publisher.last_commit_subject() or commit
        note = f"Completed by ralph-taheri (iteration {iteration}). Commit: {commit}"
        self._transition(item, ItemState.DONE, note)
        self.ledger.append(LedgerEvent.COMPLETED, item, f"Commit: {commit}")
        print_output(f"Closed {item.describe()}")
        summary.completed += 1

        if self.publisher is not None:
            self.publisher.publish()

        return CycleResult(iteration, CycleOutcome.COMPLETED, item, result.signal)
