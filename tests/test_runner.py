"""Tests for the agent execution driver."""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from types import SimpleNamespace

import pytest

import ralph_taheri.runner as runner_module
from conftest import make_item
from ralph_taheri.runner import (
    AGENT_PRESETS,
    AgentRunner,
    ExecutionRequest,
    Signal,
    build_invocation,
    build_prompt,
    parse_signal,
    resolve_agent_argv,
)


def _request(item=None, is_last=False):
    item = item or make_item(7, title="Add login", body="Implement it.")
    return ExecutionRequest(
        item=item,
        acceptance_criteria="- [ ] works",
        is_last=is_last,
        iteration=3,
        backend_kind="github",
    )


def _runner(tmp_path, script: str, **kwargs) -> AgentRunner:
    kwargs.setdefault("grace_seconds", 2.0)
    return AgentRunner(
        argv=[sys.executable, "-c", script],
        prompt_template="Work on $ISSUE_IDENTIFIER.",
        project_root=tmp_path,
        logs_dir=tmp_path / "logs",
        echo=False,
        **kwargs,
    )


# -------------------------
# Markers
# -------------------------


@pytest.mark.parametrize(
    "text,expected",
    [
        ("<promise>ISSUE_COMPLETE</promise>", Signal.ISSUE_COMPLETE),
        ("done <promise>COMPLETE</promise>", Signal.COMPLETE),
        ("<promise> BLOCKED </promise>", Signal.BLOCKED),
        ("<promise>BLOCKED</promise><promise>ISSUE_COMPLETE</promise>", Signal.ISSUE_COMPLETE),
        ("<promise>ISSUE_COMPLETE</promise>\n<promise>COMPLETE</promise>", Signal.COMPLETE),
        ("ISSUE_COMPLETE", None),
        ("", None),
    ],
)
def test_parse_signal(text, expected):
    assert parse_signal(text) is expected


def test_success_signals():
    assert Signal.EXITED.is_success
    assert not Signal.BLOCKED.is_success
    assert not Signal.FAILED.is_success


# -------------------------
# Prompt and argv
# -------------------------


def test_build_prompt_substitutes_and_appends_details():
    item = make_item(7, title="Add login", body="Implement it.")
    prompt = build_prompt("Do $ISSUE_IDENTIFIER ($IS_LAST_ISSUE) $UNKNOWN", item, "- [ ] a", True, "github")

    assert prompt.startswith("Do #7 (true) $UNKNOWN")
    assert "**Issue:** #7 - Add login" in prompt
    assert "Implement it." in prompt
    assert "**Acceptance Criteria:**\n- [ ] a" in prompt
    assert prompt.rstrip().endswith("Follow the instructions in the prompt above.")


def test_build_invocation_appends_prompt():
    argv, stdin = build_invocation(["claude", "--print"], "PROMPT")
    assert argv == ["claude", "--print", "PROMPT"]
    assert stdin is None


def test_build_invocation_placeholder():
    argv, stdin = build_invocation(["agent", "--prompt", "{prompt}", "--yes"], "P")
    assert argv == ["agent", "--prompt", "P", "--yes"]
    assert stdin is None


def test_build_invocation_stdin_for_codex():
    argv, stdin = build_invocation(["codex", "exec"], "P", prompt_mode="stdin")
    assert argv == ["codex", "exec", "-"]
    assert stdin == "P"


def test_build_invocation_max_turns_only_for_claude():
    argv, _ = build_invocation(["claude", "--print"], "P", max_turns=5)
    assert argv == ["claude", "--print", "--max-turns", "5", "P"]

    argv, _ = build_invocation(["codex", "exec"], "P", max_turns=5)
    assert "--max-turns" not in argv


def test_build_invocation_empty_argv():
    with pytest.raises(ValueError):
        build_invocation([], "P")


def test_resolve_agent_argv():
    configured = ["my-agent", "--flag"]
    assert resolve_agent_argv(None, configured) == configured
    assert resolve_agent_argv("codex", configured) == AGENT_PRESETS["codex"]
    assert resolve_agent_argv("aider", configured) == ["aider"]


# -------------------------
# Subprocess behaviour
# -------------------------


class TestAgentRunner:
    def test_marker_stops_agent_early(self, tmp_path):
        script = (
            "import time\n"
            "print('<promise>ISSUE_COMPLETE</promise>', flush=True)\n"
            "time.sleep(30)\n"
        )
        start = time.monotonic()
        result = _runner(tmp_path, script).execute(_request())

        assert result.signal is Signal.ISSUE_COMPLETE
        assert time.monotonic() - start < 20
        assert "ISSUE_COMPLETE" in result.log_path.read_text(encoding="utf-8")

    def test_clean_exit_without_marker(self, tmp_path):
        result = _runner(tmp_path, "print('hello')").execute(_request())

        assert result.signal is Signal.EXITED
        assert result.return_code == 0

    def test_nonzero_exit_fails(self, tmp_path):
        result = _runner(tmp_path, "import sys; sys.exit(3)").execute(_request())

        assert result.signal is Signal.FAILED
        assert result.return_code == 3
        assert result.detail == "agent exited with code 3"

    def test_blocked_marker_on_stderr(self, tmp_path):
        script = "import sys; print('<promise>BLOCKED</promise>', file=sys.stderr, flush=True)"
        result = _runner(tmp_path, script).execute(_request())

        assert result.signal is Signal.BLOCKED

    def test_timeout(self, tmp_path):
        result = _runner(tmp_path, "import time; time.sleep(30)", timeout_seconds=1).execute(
            _request()
        )

        assert result.signal is Signal.FAILED
        assert result.timed_out is True
        assert "timed out" in result.detail

    def test_missing_executable(self, tmp_path):
        runner = AgentRunner(
            argv=["definitely-not-an-agent-binary-xyz"],
            prompt_template="",
            project_root=tmp_path,
            echo=False,
        )
        result = runner.execute(_request())

        assert result.signal is Signal.FAILED
        assert result.return_code is None
        assert "not found" in result.detail

    def test_item_environment_is_exported(self, tmp_path):
        script = (
            "import os\n"
            "print(os.environ['RALPH_ISSUE_IDENTIFIER'], os.environ['RALPH_IS_LAST_ISSUE'],"
            " os.environ['RALPH_ITERATION'], os.environ['RALPH_BACKEND'])\n"
        )
        result = _runner(tmp_path, script).execute(_request(is_last=True))

        assert "#7 true 3 github" in result.log_path.read_text(encoding="utf-8")

    def test_prompt_over_stdin(self, tmp_path):
        script = (
            "import sys\n"
            "data = sys.stdin.read()\n"
            "if 'Issue Details' in data:\n"
            "    print('<promise>ISSUE_COMPLETE</promise>', flush=True)\n"
        )
        result = _runner(tmp_path, script, prompt_mode="stdin").execute(_request())

        assert result.signal is Signal.ISSUE_COMPLETE

    def test_log_file_name_includes_iteration_and_item(self, tmp_path):
        result = _runner(tmp_path, "pass").execute(_request())

        assert result.log_path.parent == tmp_path / "logs"
        assert "-iter0003-" in result.log_path.name
        assert result.log_path.name.endswith("_7.log")

    def test_interrupt_kills_agent_and_propagates(self, tmp_path, monkeypatch):
        started = []
        real_popen = subprocess.Popen

        def popen(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            started.append(proc)
            return proc

        class InterruptingEvent(threading.Event):
            def wait(self, timeout=None):
                raise KeyboardInterrupt

        monkeypatch.setattr(runner_module.subprocess, "Popen", popen)
        monkeypatch.setattr(
            runner_module,
            "threading",
            SimpleNamespace(Event=InterruptingEvent, Lock=threading.Lock, Thread=threading.Thread),
        )

        with pytest.raises(KeyboardInterrupt):
            _runner(tmp_path, "import time\ntime.sleep(60)\n").execute(_request())

        assert len(started) == 1
        assert started[0].poll() is not None
