"""Tests for git publishing helpers (git itself is mocked)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from ralph_taheri.config import ConfigurationError
from ralph_taheri.gitops import GitPublisher, ensure_git_repo, git_head
from ralph_taheri.subprocess_helper import SubprocessResult

RUN = "ralph_taheri.gitops.run_subprocess"
ROOT = Path("/work")


def _ok(stdout: str = "") -> SubprocessResult:
    return SubprocessResult(returncode=0, stdout=stdout, stderr="")


def _fail(stderr: str = "fatal") -> SubprocessResult:
    return SubprocessResult(returncode=128, stdout="", stderr=stderr)


def test_git_head():
    with patch(RUN, return_value=_ok("abc123\n")):
        assert git_head(ROOT) == "abc123"


def test_git_head_without_commits():
    with patch(RUN, return_value=_fail()):
        assert git_head(ROOT) == ""


def test_ensure_git_repo_accepts_work_tree():
    with patch(RUN, return_value=_ok("true\n")):
        ensure_git_repo(ROOT)


def test_ensure_git_repo_rejects_plain_directory():
    with patch(RUN, return_value=_fail("not a git repository")):
        with pytest.raises(ConfigurationError, match="Not a git repository"):
            ensure_git_repo(ROOT)


def test_ensure_git_repo_without_git():
    with patch(RUN, side_effect=RuntimeError("Command not found: git")):
        with pytest.raises(ConfigurationError, match="git"):
            ensure_git_repo(ROOT)


class TestGitPublisher:
    def test_publish_disabled(self):
        with patch(RUN) as run:
            assert GitPublisher(ROOT).publish() is False
        run.assert_not_called()

    def test_publish_pushes_to_remote(self):
        with patch(RUN, return_value=_ok()) as run:
            assert GitPublisher(ROOT, push=True, remote="origin").publish() is True
        assert run.call_args[0][0] == ["git", "push", "origin", "HEAD"]

    def test_publish_failure_is_not_raised(self):
        with patch(RUN, side_effect=RuntimeError("rejected")):
            assert GitPublisher(ROOT, push=True).publish() is False

    def test_revert_soft_resets_new_commits(self):
        with patch(RUN, side_effect=[_ok("new\n"), _ok()]) as run:
            assert GitPublisher(ROOT).revert("old") is True
        assert run.call_args[0][0] == ["git", "reset", "--soft", "old"]

    def test_revert_noop_when_head_unchanged(self):
        with patch(RUN, return_value=_ok("same\n")) as run:
            assert GitPublisher(ROOT).revert("same") is False
        assert run.call_count == 1

    def test_revert_disabled(self):
        with patch(RUN) as run:
            publisher = GitPublisher(ROOT, reset_on_verification_failure=False)
            assert publisher.revert("old") is False
        run.assert_not_called()

    def test_last_commit_subject(self):
        with patch(RUN, return_value=_ok("feat: #3 - Fix bug\n")):
            assert GitPublisher(ROOT).last_commit_subject() == "feat: #3 - Fix bug"
