"""GitHub Issues backend.

Issues carrying the tracking label are the work pool. State lives in
labels and the open/closed flag:

- open, no ``in-progress`` label   -> queued (``blocked`` label = requeued)
- open, ``in-progress`` label      -> in_progress
- closed as not planned            -> cancelled
- closed otherwise                 -> done

Priority comes from ``P0``..``P3`` labels; ties go to the lower issue number.
Free-text blockers are ``#<number>`` references.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..github_auth import GitHubAuth, GitHubAuthError, GitHubNotFoundError
from ..models import DEFAULT_PRIORITY_SCORE, ItemState, WorkItem
from .base import Backend, BackendUnavailable, TransitionResult, parse_timestamp

logger = logging.getLogger(__name__)

_PRIORITY_LABEL_RE = re.compile(r"^p([0-3])$", re.IGNORECASE)


def _label_names(issue: Dict[str, Any]) -> List[str]:
    return [
        label["name"] if isinstance(label, dict) else str(label)
        for label in issue.get("labels", []) or []
    ]


def priority_from_labels(labels: List[str]) -> int:
    """Most urgent P0..P3 label wins; no label means lowest urgency."""
    scores = [
        int(m.group(1)) for m in (_PRIORITY_LABEL_RE.match(name.strip()) for name in labels) if m
    ]
    return min(scores) if scores else DEFAULT_PRIORITY_SCORE


class GitHubIssuesBackend(Backend):
    """Backend over the GitHub REST API (via ``gh`` or a token)."""

    kind = "github"
    name = "GitHub Issues"
    reference_pattern = re.compile(r"(?<![\w#&])#(\d+)\b")

    def __init__(
        self,
        auth: GitHubAuth,
        repo: str = "",
        page_size: int = 50,
        in_progress_label: str = "in-progress",
        todo_label: str = "todo",
        blocked_label: str = "blocked",
        api_log_path: Optional[Path] = None,
    ):
        """Initialize the backend.

        Args:
            auth: Authenticated API access
            repo: "owner/repo"; empty uses gh's "{owner}/{repo}" placeholder
            page_size: Issues fetched per ``list_open`` call (max 100)
            in_progress_label: Label marking a claimed issue
            todo_label: Label marking a queued issue
            blocked_label: Label added when an issue is requeued as blocked
            api_log_path: JSONL file recording mutating API calls

        Raises:
            ValueError: If repo is not in "owner/repo" form
        """
        if repo and "/" not in repo:
            raise ValueError(f"Invalid repo format: {repo}. Expected 'owner/repo' format.")
        self.auth = auth
        self.repo = repo or "{owner}/{repo}"
        self.page_size = max(1, min(page_size, 100))
        self.in_progress_label = in_progress_label
        self.todo_label = todo_label
        self.blocked_label = blocked_label
        self.api_log_path = api_log_path

    # -------------------------
    # Reads
    # -------------------------

    def _call(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        try:
            return self.auth.api_call(method, endpoint, **kwargs)
        except GitHubNotFoundError:
            raise
        except GitHubAuthError as e:
            raise BackendUnavailable(str(e)) from e

    def _fetch_open_page(self, label: str, page: int, per_page: int) -> List[Dict[str, Any]]:
        issues = self._call(
            "GET",
            f"/repos/{self.repo}/issues",
            params={"labels": label, "state": "open", "per_page": per_page, "page": page},
        )
        if not isinstance(issues, list):
            return []
        # Pull requests show up in the issues endpoint.
        return [i for i in issues if isinstance(i, dict) and "pull_request" not in i]

    def _is_queued(self, issue: Dict[str, Any]) -> bool:
        return self.in_progress_label not in _label_names(issue)

    def _to_item(self, issue: Dict[str, Any]) -> WorkItem:
        number = int(issue.get("number", 0))
        labels = _label_names(issue)
        return WorkItem(
            id=number,
            display_id=f"#{number}",
            title=str(issue.get("title") or f"Issue {number}"),
            body=issue.get("body") or "",
            priority_score=priority_from_labels(labels),
            state=self._canonical_state(issue),
            sequence=number,
            labels=labels,
            url=str(issue.get("html_url") or ""),
            updated_at=parse_timestamp(issue.get("updated_at")),
            requeued=self.blocked_label in labels,
        )

    def _canonical_state(self, issue: Dict[str, Any]) -> ItemState:
        if str(issue.get("state", "open")).lower() == "closed":
            if str(issue.get("state_reason") or "").lower() == "not_planned":
                return ItemState.CANCELLED
            return ItemState.DONE
        if self.in_progress_label in _label_names(issue):
            return ItemState.IN_PROGRESS
        return ItemState.QUEUED

    def list_open(self, label: str) -> List[WorkItem]:
        issues = self._fetch_open_page(label, page=1, per_page=self.page_size)
        return [self._to_item(i) for i in issues if self._is_queued(i)]

    def count_remaining(self, label: str) -> int:
        count = 0
        page = 1
        while True:
            issues = self._fetch_open_page(label, page=page, per_page=100)
            count += sum(1 for i in issues if self._is_queued(i))
            if len(issues) < 100:
                return count
            page += 1

    def list_in_progress(self, label: str) -> List[WorkItem]:
        issues = self._call(
            "GET",
            f"/repos/{self.repo}/issues",
            params={
                "labels": f"{label},{self.in_progress_label}",
                "state": "open",
                "per_page": 100,
            },
        )
        if not isinstance(issues, list):
            return []
        return [self._to_item(i) for i in issues if isinstance(i, dict) and "pull_request" not in i]

    def normalize_reference(self, ref: str) -> str:
        return ref.strip().lstrip("#")

    def _fetch_issue(self, number: str) -> Optional[Dict[str, Any]]:
        try:
            issue = self._call("GET", f"/repos/{self.repo}/issues/{number}")
        except GitHubNotFoundError:
            return None
        if isinstance(issue, dict) and issue.get("number") is not None:
            return issue
        return None

    def get_item(self, ref: str) -> Optional[WorkItem]:
        number = self.normalize_reference(ref)
        if not number.isdigit():
            return None
        issue = self._fetch_issue(number)
        return self._to_item(issue) if issue is not None else None

    # -------------------------
    # Writes
    # -------------------------

    def transition(self, item: WorkItem, target: ItemState, note: str = "") -> TransitionResult:
        self._check_target(target)
        number = str(item.id)
        issue = self._fetch_issue(number)
        if issue is None:
            raise BackendUnavailable(f"Issue #{number} disappeared")

        labels = set(_label_names(issue))
        closed = self._canonical_state(issue).is_terminal

        if target is ItemState.DONE:
            if closed:
                return TransitionResult(target, changed=False)
            if note:
                self._add_comment(number, note)
            self._close_issue(number)
            self._remove_labels(number, labels, [self.in_progress_label, self.blocked_label])
            return TransitionResult(target, changed=True)

        if closed:
            logger.warning("Refusing to move closed issue #%s to %s", number, target.value)
            return TransitionResult(target, changed=False)

        if target is ItemState.IN_PROGRESS:
            wanted = [self.in_progress_label]
            unwanted = [self.todo_label, self.blocked_label]
        elif target is ItemState.BLOCKED:
            wanted = [self.blocked_label]
            unwanted = [self.in_progress_label]
        else:
            wanted = [self.todo_label]
            unwanted = [self.in_progress_label]

        missing = [lbl for lbl in wanted if lbl not in labels]
        stale = [lbl for lbl in unwanted if lbl in labels]
        if not missing and not stale:
            return TransitionResult(target, changed=False)

        if missing:
            self._add_labels(number, missing)
        self._remove_labels(number, labels, stale)
        if note and target is not ItemState.IN_PROGRESS:
            self._add_comment(number, note)
        return TransitionResult(target, changed=True)

    def _close_issue(self, number: str) -> None:
        self._log_api_call("INFO", f"Closing issue #{number}")
        self._call(
            "PATCH",
            f"/repos/{self.repo}/issues/{number}",
            data={"state": "closed", "state_reason": "completed"},
        )

    def _add_comment(self, number: str, body: str) -> None:
        self._log_api_call("INFO", f"Adding comment to issue #{number}")
        self._call("POST", f"/repos/{self.repo}/issues/{number}/comments", data={"body": body})

    def _add_labels(self, number: str, labels: List[str]) -> None:
        self._log_api_call("INFO", f"Adding labels {labels} to issue #{number}")
        self._call(
            "POST", f"/repos/{self.repo}/issues/{number}/labels", data={"labels": labels}
        )

    def _remove_labels(self, number: str, present: set, labels: List[str]) -> None:
        for label in labels:
            if label not in present:
                continue
            self._log_api_call("INFO", f"Removing label '{label}' from issue #{number}")
            try:
                path = f"/repos/{self.repo}/issues/{number}/labels/{quote(label, safe='')}"
                self._call("DELETE", path)
            except GitHubNotFoundError:
                # Already gone.
                pass

