"""Git helpers for publishing finished work and undoing rejected work."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import ConfigurationError
from .subprocess_helper import run_subprocess

logger = logging.getLogger(__name__)


def git_head(project_root: Path) -> str:
    """Get the current git HEAD commit hash.

    Returns empty string if no commits yet.
    """
    result = run_subprocess(
        ["git", "rev-parse", "--verify", "HEAD"],
        cwd=project_root,
        check=False,
    )
    if result.failed:
        return ""
    return result.stdout.strip()


def git_head_subject(project_root: Path) -> str:
    """Subject line of the HEAD commit, or "" if there is none."""
    result = run_subprocess(
        ["git", "log", "-1", "--format=%s"],
        cwd=project_root,
        check=False,
    )
    if result.failed:
        return ""
    return result.stdout.strip()


def ensure_git_repo(project_root: Path) -> None:
    """Raises ConfigurationError unless ``project_root`` is inside a work tree."""
    try:
        result = run_subprocess(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=project_root,
            check=False,
        )
    except RuntimeError as e:
        raise ConfigurationError(str(e)) from e
    if result.failed or result.stdout.strip() != "true":
        raise ConfigurationError(f"Not a git repository: {project_root}")


def git_push(project_root: Path, remote: str = "") -> None:
    """Push the current branch.

    Raises:
        RuntimeError: If the push fails
    """
    argv = ["git", "push"]
    if remote:
        argv.extend([remote, "HEAD"])
    run_subprocess(argv, cwd=project_root, check=True, timeout=300)


def git_reset_soft(project_root: Path, ref: str) -> None:
    """Move HEAD back to ``ref`` keeping the working tree and index."""
    run_subprocess(["git", "reset", "--soft", ref], cwd=project_root, check=True)


class GitPublisher:
    """Pushes after each completed item; soft-resets after failed verification."""

    def __init__(
        self,
        project_root: Path,
        push: bool = False,
        remote: str = "",
        reset_on_verification_failure: bool = True,
    ):
        self.project_root = project_root
        self.push = push
        self.remote = remote
        self.reset_on_verification_failure = reset_on_verification_failure

    def head(self) -> str:
        return git_head(self.project_root)

    def last_commit_subject(self) -> str:
        return git_head_subject(self.project_root)

    def publish(self) -> bool:
        """Push if enabled. Failures are logged, never raised."""
        if not self.push:
            return False
        try:
            git_push(self.project_root, self.remote)
        except RuntimeError as e:
            logger.warning("git push failed: %s", e)
            return False
        logger.info("Pushed to %s", self.remote or "upstream")
        return True

    def revert(self, head_before: Optional[str]) -> bool:
        """Undo commits made since ``head_before``; True if HEAD was moved back."""
        if not self.reset_on_verification_failure or not head_before:
            return False
        current = self.head()
        if not current or current == head_before:
            return False
        try:
            git_reset_soft(self.project_root, head_before)
        except RuntimeError as e:
            logger.warning("git reset --soft %s failed: %s", head_before[:12], e)
            return False
        logger.info("Reverted commits %s..%s (soft)", head_before[:12], current[:12])
        return True
