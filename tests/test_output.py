"""Tests for operator output and its verbosity levels."""

from __future__ import annotations

import pytest

import ralph_taheri.output as output_module
from ralph_taheri.output import OutputConfig, get_output_config, print_output, set_output_config


@pytest.fixture(autouse=True)
def reset_output_config(monkeypatch):
    """Reset the global output config before and after each test."""
    monkeypatch.delenv("RALPH_VERBOSITY", raising=False)
    original = output_module._output_config
    output_module._output_config = None
    yield
    output_module._output_config = original


def test_default_is_normal():
    assert get_output_config().verbosity == "normal"


def test_env_verbosity(monkeypatch):
    monkeypatch.setenv("RALPH_VERBOSITY", "quiet")
    assert get_output_config().verbosity == "quiet"


def test_unknown_env_verbosity_falls_back(monkeypatch):
    monkeypatch.setenv("RALPH_VERBOSITY", "chatty")
    assert get_output_config().verbosity == "normal"


@pytest.mark.parametrize(
    "verbosity,level,shown",
    [
        ("quiet", "normal", False),
        ("quiet", "quiet", True),
        ("normal", "normal", True),
        ("normal", "verbose", False),
        ("verbose", "verbose", True),
    ],
)
def test_levels(capsys, verbosity, level, shown):
    set_output_config(OutputConfig(verbosity=verbosity, timestamps=False))
    print_output("hello", level=level)
    assert (capsys.readouterr().out == "hello\n") is shown


def test_errors_always_go_to_stderr(capsys):
    set_output_config(OutputConfig(verbosity="quiet", timestamps=False))
    print_output("boom", level="error")
    captured = capsys.readouterr()
    assert captured.err == "boom\n"
    assert captured.out == ""


def test_timestamps_prefix(capsys):
    set_output_config(OutputConfig(verbosity="normal"))
    print_output("tick")
    out = capsys.readouterr().out
    assert out.startswith("[")
    assert out.rstrip().endswith("] tick")
