"""Tests for the backend contract helpers and the backend factory."""

from __future__ import annotations

from dataclasses import replace
from datetime import timezone
from unittest.mock import patch

import pytest

from ralph_taheri.backends import GitHubIssuesBackend, LinearBackend, make_backend
from ralph_taheri.backends.base import extract_acceptance_criteria, parse_timestamp
from ralph_taheri.config import ConfigurationError, load_config
from ralph_taheri.github_auth import GitHubAuthError


class TestAcceptanceCriteria:
    def test_section_until_next_heading(self):
        body = "## Summary\nx\n\n## Acceptance Criteria\n- [ ] a\n\n- [ ] b\n## Notes\nn"
        assert extract_acceptance_criteria(body) == "- [ ] a\n- [ ] b"

    def test_subheadings_stay_in_section(self):
        body = "## Acceptance criteria\n### API\n- a\n### UI\n- b\n## Other"
        assert extract_acceptance_criteria(body) == "### API\n- a\n### UI\n- b"

    def test_runs_to_end_of_body(self):
        assert extract_acceptance_criteria("# Acceptance Criteria\n- only") == "- only"

    def test_missing_heading(self):
        assert extract_acceptance_criteria("Acceptance criteria: none\n- a") == ""
        assert extract_acceptance_criteria("") == ""


def test_parse_timestamp():
    ts = parse_timestamp("2026-03-01T12:00:00Z")
    assert ts.tzinfo is not None
    assert ts.astimezone(timezone.utc).hour == 12
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


class TestMakeBackend:
    @pytest.fixture
    def cfg(self, tmp_path, monkeypatch):
        for name in ("RALPH_LABEL", "LINEAR_TEAM_KEY", "RALPH_CONFIG", "LINEAR_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        return load_config(tmp_path)

    def test_github_via_gh(self, cfg, tmp_path):
        with patch("ralph_taheri.backends.create_auth") as create:
            backend = make_backend(cfg, "github", tmp_path)

        assert isinstance(backend, GitHubIssuesBackend)
        create.assert_called_once_with("gh_cli", "GITHUB_TOKEN")
        assert backend.api_log_path == tmp_path / ".ralph" / "logs" / "github-api.log"

    def test_github_auth_failure_is_configuration_error(self, cfg):
        with patch("ralph_taheri.backends.create_auth", side_effect=GitHubAuthError("no gh")):
            with pytest.raises(ConfigurationError, match="no gh"):
                make_backend(cfg, "github")

    def test_token_auth_requires_repo(self, cfg):
        github = replace(cfg.tracker.github, auth_method="token")
        cfg = replace(cfg, tracker=replace(cfg.tracker, github=github))
        with pytest.raises(ConfigurationError, match="repo"):
            make_backend(cfg, "github")

    def test_linear_requires_key(self, cfg):
        with pytest.raises(ConfigurationError, match="LINEAR_API_KEY"):
            make_backend(cfg, "linear")

    def test_linear(self, cfg, monkeypatch, tmp_path):
        monkeypatch.setenv("LINEAR_API_KEY", "lin_api_x")
        linear = replace(cfg.tracker.linear, team_key="ENG")
        cfg = replace(cfg, tracker=replace(cfg.tracker, linear=linear))

        backend = make_backend(cfg, "linear", tmp_path)

        assert isinstance(backend, LinearBackend)
        assert backend.api_log_path.name == "linear-api.log"

    def test_unknown(self, cfg):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            make_backend(cfg, "jira")
