"""Tests for doctor's credential checks."""

from __future__ import annotations

from unittest.mock import Mock

import ralph_taheri.doctor as doctor
from ralph_taheri.github_auth import GitHubAuthError


def test_gh_authenticated_uses_gh_api(monkeypatch):
    auth = Mock()
    auth.validate.return_value = True
    monkeypatch.setattr(doctor, "GhCliAuth", Mock(return_value=auth))

    assert doctor.gh_authenticated() is True
    auth.validate.assert_called_once()


def test_gh_authenticated_rejected_credentials(monkeypatch):
    auth = Mock()
    auth.validate.return_value = False
    monkeypatch.setattr(doctor, "GhCliAuth", Mock(return_value=auth))

    assert doctor.gh_authenticated() is False


def test_gh_authenticated_without_gh(monkeypatch):
    monkeypatch.setattr(doctor, "GhCliAuth", Mock(side_effect=GitHubAuthError("gh missing")))

    assert doctor.gh_authenticated() is False
