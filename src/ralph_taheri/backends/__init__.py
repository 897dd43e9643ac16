"""Work-item backends for ralph-taheri.

- GitHubIssuesBackend: GitHub Issues (``gh`` CLI or token auth)
- LinearBackend: Linear GraphQL API

Both implement the Backend contract in ``base``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..config import Config, ConfigurationError
from ..github_auth import GitHubAuthError, create_auth
from .base import Backend, BackendUnavailable, TransitionResult, extract_acceptance_criteria
from .github import GitHubIssuesBackend
from .linear import LinearBackend, create_linear_backend

logger = logging.getLogger(__name__)

__all__ = [
    "Backend",
    "BackendUnavailable",
    "GitHubIssuesBackend",
    "LinearBackend",
    "TransitionResult",
    "extract_acceptance_criteria",
    "make_backend",
]


def make_backend(cfg: Config, kind: Optional[str] = None, project_root: Optional[Path] = None) -> Backend:
    """Instantiate the configured backend.

    Credentials are checked here so a missing key fails before any cycle.

    Raises:
        ConfigurationError: Unknown backend or missing credentials
    """
    kind = (kind or cfg.tracker.backend or "github").strip().lower()
    logs_dir: Optional[Path] = None
    if project_root is not None:
        logs_dir = project_root / cfg.files.logs_dir

    if kind == "github":
        gh = cfg.tracker.github
        if gh.auth_method == "token" and not gh.repo:
            raise ConfigurationError(
                "tracker.github.repo must be set when using token authentication"
            )
        try:
            auth = create_auth(gh.auth_method, gh.token_env)
        except GitHubAuthError as e:
            raise ConfigurationError(str(e)) from e
        try:
            return GitHubIssuesBackend(
                auth=auth,
                repo=gh.repo,
                page_size=cfg.tracker.page_size,
                in_progress_label=gh.in_progress_label,
                todo_label=gh.todo_label,
                blocked_label=gh.blocked_label,
                api_log_path=logs_dir / "github-api.log" if logs_dir else None,
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    if kind == "linear":
        lin = cfg.tracker.linear
        return create_linear_backend(
            api_key_env=lin.api_key_env,
            team_key=lin.team_key,
            api_url=lin.api_url,
            page_size=cfg.tracker.page_size,
            blocked_label=lin.blocked_label,
            api_log_path=logs_dir / "linear-api.log" if logs_dir else None,
        )

    raise ConfigurationError(f"Unknown backend: {kind!r}. Use 'github' or 'linear'.")
