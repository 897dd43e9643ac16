"""Linear backend (GraphQL over ``requests``).

Items are the team's issues carrying the tracking label. Workflow state
types map onto the canonical lifecycle; "blocks" relations become
structured blockers. Workflow states and label ids are cached per backend
instance, issue data never is.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from ..config import ConfigurationError
from ..models import DEFAULT_PRIORITY_SCORE, BlockerRef, ItemState, WorkItem
from .base import Backend, BackendUnavailable, TransitionResult, parse_timestamp

logger = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"

QUEUED_STATE_TYPES = ("backlog", "unstarted", "triage")

_STATE_TYPE_MAP = {
    "backlog": ItemState.QUEUED,
    "unstarted": ItemState.QUEUED,
    "triage": ItemState.QUEUED,
    "started": ItemState.IN_PROGRESS,
    "completed": ItemState.DONE,
    "canceled": ItemState.CANCELLED,
    "cancelled": ItemState.CANCELLED,
}

_ISSUE_FIELDS = """
  id
  identifier
  number
  title
  description
  priority
  url
  updatedAt
  state { id name type }
  labels { nodes { id name } }
  inverseRelations {
    nodes {
      type
      issue { identifier state { type } }
    }
  }
"""

_ISSUES_QUERY = (
    """
query($team: String!, $label: String!, $types: [String!], $first: Int!, $after: String) {
  issues(
    filter: {
      team: { key: { eq: $team } }
      labels: { name: { eq: $label } }
      state: { type: { in: $types } }
    }
    first: $first
    after: $after
  ) {
    nodes { %s }
    pageInfo { hasNextPage endCursor }
  }
}
"""
    % _ISSUE_FIELDS
)

_COUNT_QUERY = """
query($team: String!, $label: String!, $types: [String!], $after: String) {
  issues(
    filter: {
      team: { key: { eq: $team } }
      labels: { name: { eq: $label } }
      state: { type: { in: $types } }
    }
    first: 100
    after: $after
  ) {
    nodes { id }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_ISSUE_QUERY = (
    """
query($id: String!) {
  issue(id: $id) { %s }
}
"""
    % _ISSUE_FIELDS
)

_STATES_QUERY = """
query($team: String!) {
  teams(filter: { key: { eq: $team } }) {
    nodes {
      id
      states { nodes { id name type position } }
    }
  }
}
"""

_LABEL_QUERY = """
query($name: String!) {
  issueLabels(filter: { name: { eq: $name } }, first: 50) {
    nodes { id name team { key } }
  }
}
"""

_UPDATE_STATE = """
mutation($id: String!, $stateId: String!) {
  issueUpdate(id: $id, input: { stateId: $stateId }) { success }
}
"""

_COMMENT = """
mutation($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) { success }
}
"""

_ADD_LABEL = """
mutation($id: String!, $labelId: String!) {
  issueAddLabel(id: $id, labelId: $labelId) { success }
}
"""

_REMOVE_LABEL = """
mutation($id: String!, $labelId: String!) {
  issueRemoveLabel(id: $id, labelId: $labelId) { success }
}
"""


def priority_from_linear(priority: Any) -> int:
    """Linear 1 (urgent)..4 (low) -> 0..3; 0 (no priority) -> lowest urgency."""
    try:
        value = int(priority)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY_SCORE
    if 1 <= value <= 4:
        return value - 1
    return DEFAULT_PRIORITY_SCORE


def canonical_state(state_type: Any) -> ItemState:
    return _STATE_TYPE_MAP.get(str(state_type or "").lower(), ItemState.QUEUED)


def _nodes(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, dict) and isinstance(value.get("nodes"), list):
        return [n for n in value["nodes"] if isinstance(n, dict)]
    return []


def _is_not_found(errors: List[Dict[str, Any]]) -> bool:
    for err in errors:
        text = str(err.get("message", "")).lower()
        code = str((err.get("extensions") or {}).get("code", "")).lower()
        if "not found" in text or "entity not found" in text or code == "not_found":
            return True
    return False


class LinearBackend(Backend):
    """Backend over the Linear GraphQL API."""

    kind = "linear"
    name = "Linear"
    reference_pattern = re.compile(r"\b([A-Z][A-Z0-9]*-\d+)\b", re.IGNORECASE)

    def __init__(
        self,
        api_key: str,
        team_key: str,
        api_url: str = LINEAR_API_URL,
        page_size: int = 50,
        blocked_label: str = "blocked",
        api_log_path: Optional[Path] = None,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("Linear API key is required")
        if not team_key:
            raise ValueError("Linear team key is required")
        self.team_key = team_key
        self.api_url = api_url
        self.page_size = max(1, min(page_size, 100))
        self.blocked_label = blocked_label
        self.api_log_path = api_log_path
        self.timeout_seconds = timeout_seconds

        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": api_key, "Content-Type": "application/json"}
        )

        self._states: Optional[List[Dict[str, Any]]] = None
        self._label_ids: Dict[str, Optional[str]] = {}

    def __repr__(self) -> str:
        return f"LinearBackend(team={self.team_key!r})"

    # -------------------------
    # Transport
    # -------------------------

    def _graphql(
        self, query: str, variables: Dict[str, Any], allow_not_found: bool = False
    ) -> Optional[Dict[str, Any]]:
        """POST a GraphQL document and return its ``data``.

        Returns None only when ``allow_not_found`` is set and the API reports
        a missing entity.

        Raises:
            BackendUnavailable: On transport, HTTP or GraphQL errors
        """
        try:
            resp = self._session.post(
                self.api_url,
                json={"query": query, "variables": variables},
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            raise BackendUnavailable(f"Linear API request failed: {e}") from e

        if resp.status_code in (401, 403):
            raise BackendUnavailable("Linear authentication failed. Check LINEAR_API_KEY.")

        try:
            payload = resp.json()
        except ValueError as e:
            raise BackendUnavailable(
                f"Linear API returned non-JSON response (status {resp.status_code})"
            ) from e

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            if allow_not_found and _is_not_found(errors):
                return None
            raise BackendUnavailable(f"Linear API returned errors: {errors}")
        if resp.status_code >= 400:
            raise BackendUnavailable(f"Linear API call failed with status {resp.status_code}")

        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    def _mutate(self, query: str, variables: Dict[str, Any], what: str) -> None:
        self._log_api_call("INFO", what)
        data = self._graphql(query, variables) or {}
        result = next(iter(data.values()), None)
        if isinstance(result, dict) and result.get("success") is False:
            raise BackendUnavailable(f"Linear rejected mutation: {what}")

    # -------------------------
    # Mapping
    # -------------------------

    def _to_item(self, node: Dict[str, Any]) -> WorkItem:
        labels = [str(n.get("name", "")) for n in _nodes(node.get("labels"))]
        blockers: List[BlockerRef] = []
        for rel in _nodes(node.get("inverseRelations")):
            if rel.get("type") != "blocks":
                continue
            blocker = rel.get("issue") or {}
            if not blocker.get("identifier"):
                continue
            blockers.append(
                BlockerRef(
                    display_id=str(blocker["identifier"]),
                    state=canonical_state((blocker.get("state") or {}).get("type")),
                )
            )

        try:
            sequence = int(node.get("number") or 0)
        except (TypeError, ValueError):
            sequence = 0

        return WorkItem(
            id=str(node.get("id", "")),
            display_id=str(node.get("identifier", "")),
            title=str(node.get("title") or ""),
            body=node.get("description") or "",
            priority_score=priority_from_linear(node.get("priority")),
            state=canonical_state((node.get("state") or {}).get("type")),
            sequence=sequence,
            structured_blockers=blockers,
            labels=labels,
            url=str(node.get("url") or ""),
            updated_at=parse_timestamp(node.get("updatedAt")),
            requeued=self.blocked_label in labels,
        )

    # -------------------------
    # Reads
    # -------------------------

    def _issues(self, label: str, types: List[str], first: int) -> List[WorkItem]:
        data = self._graphql(
            _ISSUES_QUERY,
            {"team": self.team_key, "label": label, "types": types, "first": first, "after": None},
        ) or {}
        return [self._to_item(n) for n in _nodes(data.get("issues"))]

    def list_open(self, label: str) -> List[WorkItem]:
        return self._issues(label, list(QUEUED_STATE_TYPES), self.page_size)

    def count_remaining(self, label: str) -> int:
        count = 0
        cursor: Optional[str] = None
        while True:
            data = self._graphql(
                _COUNT_QUERY,
                {
                    "team": self.team_key,
                    "label": label,
                    "types": list(QUEUED_STATE_TYPES),
                    "after": cursor,
                },
            ) or {}
            issues = data.get("issues") or {}
            count += len(_nodes(issues))
            page_info = issues.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return count
            cursor = page_info.get("endCursor")

    def list_in_progress(self, label: str) -> List[WorkItem]:
        return self._issues(label, ["started"], 100)

    def normalize_reference(self, ref: str) -> str:
        return ref.strip().upper()

    def _fetch_issue(self, ref: str) -> Optional[Dict[str, Any]]:
        data = self._graphql(_ISSUE_QUERY, {"id": ref}, allow_not_found=True)
        if not data:
            return None
        node = data.get("issue")
        return node if isinstance(node, dict) else None

    def get_item(self, ref: str) -> Optional[WorkItem]:
        node = self._fetch_issue(self.normalize_reference(ref))
        return self._to_item(node) if node is not None else None

    # -------------------------
    # Workflow states and labels
    # -------------------------

    def workflow_states(self) -> List[Dict[str, Any]]:
        if self._states is None:
            data = self._graphql(_STATES_QUERY, {"team": self.team_key}) or {}
            teams = _nodes(data.get("teams"))
            if not teams:
                raise BackendUnavailable(f"Linear team {self.team_key!r} not found")
            states = _nodes(teams[0].get("states"))
            self._states = sorted(states, key=lambda s: float(s.get("position") or 0))
        return self._states

    def _state_id(self, state_type: str, preferred_name: str = "") -> str:
        states = self.workflow_states()
        if preferred_name:
            for s in states:
                if str(s.get("name", "")).lower() == preferred_name.lower():
                    return str(s["id"])
        for s in states:
            if s.get("type") == state_type:
                return str(s["id"])
        raise BackendUnavailable(
            f"Linear team {self.team_key!r} has no workflow state of type {state_type!r}"
        )

    def _label_id(self, name: str) -> Optional[str]:
        if name not in self._label_ids:
            data = self._graphql(_LABEL_QUERY, {"name": name}) or {}
            nodes = _nodes(data.get("issueLabels"))
            # Team label first, then a workspace label; other teams' labels never apply.
            team_label = next(
                (n for n in nodes if ((n.get("team") or {}).get("key") or "") == self.team_key),
                None,
            )
            workspace_label = next((n for n in nodes if not n.get("team")), None)
            label = team_label or workspace_label
            self._label_ids[name] = str(label["id"]) if label else None
            if label is None:
                logger.debug(
                    "Linear label %r does not exist for team %s; skipping label updates",
                    name,
                    self.team_key,
                )
        return self._label_ids[name]

    # -------------------------
    # Writes
    # -------------------------

    def transition(self, item: WorkItem, target: ItemState, note: str = "") -> TransitionResult:
        self._check_target(target)
        node = self._fetch_issue(str(item.id))
        if node is None:
            raise BackendUnavailable(f"Linear issue {item.display_id} disappeared")

        issue_id = str(node.get("id"))
        display = str(node.get("identifier") or item.display_id)
        current = canonical_state((node.get("state") or {}).get("type"))
        label_ids = {str(n.get("name")): str(n.get("id")) for n in _nodes(node.get("labels"))}
        has_blocked_label = self.blocked_label in label_ids

        if target is ItemState.DONE:
            if current.is_terminal:
                return TransitionResult(target, changed=False)
            self._mutate(
                _UPDATE_STATE,
                {"id": issue_id, "stateId": self._state_id("completed")},
                f"Moving {display} to completed",
            )
            if note:
                self._comment(issue_id, display, note)
            return TransitionResult(target, changed=True)

        if current.is_terminal:
            logger.warning("Refusing to move closed issue %s to %s", display, target.value)
            return TransitionResult(target, changed=False)

        changed = False
        if target is ItemState.IN_PROGRESS:
            if current is not ItemState.IN_PROGRESS:
                self._mutate(
                    _UPDATE_STATE,
                    {"id": issue_id, "stateId": self._state_id("started", "In Progress")},
                    f"Moving {display} to In Progress",
                )
                changed = True
            if has_blocked_label:
                self._mutate(
                    _REMOVE_LABEL,
                    {"id": issue_id, "labelId": label_ids[self.blocked_label]},
                    f"Removing label '{self.blocked_label}' from {display}",
                )
                changed = True
            return TransitionResult(target, changed=changed)

        if current is not ItemState.QUEUED:
            self._mutate(
                _UPDATE_STATE,
                {"id": issue_id, "stateId": self._state_id("unstarted")},
                f"Moving {display} to unstarted",
            )
            changed = True

        if target is ItemState.BLOCKED and not has_blocked_label:
            label_id = self._label_id(self.blocked_label)
            if label_id:
                self._mutate(
                    _ADD_LABEL,
                    {"id": issue_id, "labelId": label_id},
                    f"Adding label '{self.blocked_label}' to {display}",
                )
                changed = True

        if changed and note:
            self._comment(issue_id, display, note)
        return TransitionResult(target, changed=changed)

    def _comment(self, issue_id: str, display: str, body: str) -> None:
        self._mutate(
            _COMMENT, {"issueId": issue_id, "body": body}, f"Adding comment to {display}"
        )


def create_linear_backend(
    api_key_env: str,
    team_key: str,
    api_url: str = LINEAR_API_URL,
    page_size: int = 50,
    blocked_label: str = "blocked",
    api_log_path: Optional[Path] = None,
) -> LinearBackend:
    """Build a LinearBackend from environment credentials.

    Raises:
        ConfigurationError: If the API key or team key is missing
    """
    api_key = os.environ.get(api_key_env, "").strip()
    if not api_key:
        raise ConfigurationError(f"{api_key_env} environment variable is not set")
    if not team_key:
        raise ConfigurationError(
            "Linear team key is not set. Set LINEAR_TEAM_KEY or tracker.linear.team_key."
        )
    return LinearBackend(
        api_key=api_key,
        team_key=team_key,
        api_url=api_url,
        page_size=page_size,
        blocked_label=blocked_label,
        api_log_path=api_log_path,
    )
