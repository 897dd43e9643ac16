"""Execution driver: runs the coding agent for one work item.

The agent's stdout/stderr are streamed line by line to the terminal and a
per-item log. A watcher looks for completion markers::

    <promise>ISSUE_COMPLETE</promise>   the item is finished
    <promise>COMPLETE</promise>         the item and the whole loop are finished
    <promise>BLOCKED</promise>          the agent cannot proceed

On the first marker the process is terminated early, so the scheduler only
ever sees one blocking ``execute`` call returning a terminal signal.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from string import Template
from typing import IO, Dict, List, Optional, Tuple

from .models import WorkItem

logger = logging.getLogger(__name__)

MARKER_RE = re.compile(r"<promise>\s*(ISSUE_COMPLETE|COMPLETE|BLOCKED)\s*</promise>")

# Seconds between SIGTERM and SIGKILL.
TERMINATE_GRACE_SECONDS = 5.0

AGENT_PRESETS: Dict[str, List[str]] = {
    "claude": ["claude", "--print", "--dangerously-skip-permissions"],
    "codex": ["codex", "exec", "--full-auto"],
}


class Signal(str, Enum):
    ISSUE_COMPLETE = "issue_complete"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    EXITED = "exited"  # exit 0 without a marker
    FAILED = "failed"  # non-zero exit, timeout, or agent missing

    @property
    def is_success(self) -> bool:
        return self in (Signal.ISSUE_COMPLETE, Signal.COMPLETE, Signal.EXITED)


_MARKER_SIGNALS = {
    "COMPLETE": Signal.COMPLETE,
    "ISSUE_COMPLETE": Signal.ISSUE_COMPLETE,
    "BLOCKED": Signal.BLOCKED,
}
_STRENGTH = (Signal.COMPLETE, Signal.ISSUE_COMPLETE, Signal.BLOCKED)


def parse_signal(text: str) -> Optional[Signal]:
    """Strongest marker in ``text`` (COMPLETE > ISSUE_COMPLETE > BLOCKED), or None."""
    found = {_MARKER_SIGNALS[m.group(1)] for m in MARKER_RE.finditer(text or "")}
    for sig in _STRENGTH:
        if sig in found:
            return sig
    return None


@dataclass
class ExecutionRequest:
    item: WorkItem
    acceptance_criteria: str
    is_last: bool
    iteration: int
    backend_kind: str = ""


@dataclass
class ExecutionResult:
    signal: Signal
    return_code: Optional[int]
    log_path: Optional[Path] = None
    duration_seconds: float = 0.0
    timed_out: bool = False
    detail: str = ""


def build_prompt(
    template: str, item: WorkItem, acceptance: str, is_last: bool, backend_kind: str
) -> str:
    """Fill the prompt template and append the item details block.

    Unknown ``$NAMES`` in the template are left as they are.
    """
    body = Template(template).safe_substitute(
        ISSUE_ID=str(item.id),
        ISSUE_IDENTIFIER=item.display_id,
        ISSUE_TITLE=item.title,
        IS_LAST_ISSUE="true" if is_last else "false",
        BACKEND=backend_kind,
    )
    return (
        f"{body.rstrip()}\n\n"
        "## Issue Details\n\n"
        f"**Issue:** {item.display_id} - {item.title}\n\n"
        "**Description:**\n"
        f"{item.body.strip()}\n\n"
        "**Acceptance Criteria:**\n"
        f"{acceptance.strip()}\n\n"
        "---\n\n"
        "Implement this issue now. Follow the instructions in the prompt above.\n"
    )


def build_invocation(
    argv: List[str], prompt: str, prompt_mode: str = "arg", max_turns: Optional[int] = None
) -> Tuple[List[str], Optional[str]]:
    """Return (argv, stdin_text) for one agent run.

    A literal ``{prompt}`` element in argv is replaced by the prompt.
    Otherwise the prompt is appended (``arg``) or piped (``stdin``).
    """
    argv = [str(x) for x in argv]
    if not argv:
        raise ValueError("Agent command is empty")

    if max_turns and Path(argv[0]).name == "claude" and "--max-turns" not in argv:
        argv.extend(["--max-turns", str(max_turns)])

    if "{prompt}" in argv:
        return [prompt if x == "{prompt}" else x for x in argv], None

    if prompt_mode == "stdin":
        # Codex reads the prompt from stdin only when given "-".
        if Path(argv[0]).name == "codex" and "-" not in argv:
            argv.append("-")
        return argv, prompt

    return argv + [prompt], None


def resolve_agent_argv(agent: Optional[str], configured: List[str]) -> List[str]:
    """Agent preset by name, a bare executable, or the configured argv."""
    if not agent:
        return list(configured)
    return list(AGENT_PRESETS.get(agent, [agent]))


def _safe_name(text: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_.-]+", "_", text.strip()) or "item"


class AgentRunner:
    """Runs the agent subprocess and waits for a terminal signal."""

    def __init__(
        self,
        argv: List[str],
        prompt_template: str,
        project_root: Path,
        logs_dir: Optional[Path] = None,
        timeout_seconds: int = 0,
        max_turns: Optional[int] = None,
        prompt_mode: str = "arg",
        echo: bool = True,
        grace_seconds: float = TERMINATE_GRACE_SECONDS,
    ):
        self.argv = list(argv)
        self.prompt_template = prompt_template
        self.project_root = project_root
        self.logs_dir = logs_dir
        self.timeout_seconds = timeout_seconds
        self.max_turns = max_turns
        self.prompt_mode = prompt_mode
        self.echo = echo
        self.grace_seconds = grace_seconds

    def _env(self, request: ExecutionRequest) -> Dict[str, str]:
        env = os.environ.copy()
        item = request.item
        env.update(
            {
                "RALPH_ISSUE_ID": str(item.id),
                "RALPH_ISSUE_IDENTIFIER": item.display_id,
                "RALPH_ISSUE_TITLE": item.title,
                "RALPH_ISSUE_BODY": item.body,
                "RALPH_ISSUE_AC": request.acceptance_criteria,
                "RALPH_IS_LAST_ISSUE": "true" if request.is_last else "false",
                "RALPH_BACKEND": request.backend_kind,
                "RALPH_ITERATION": str(request.iteration),
            }
        )
        return env

    def _log_path(self, request: ExecutionRequest) -> Optional[Path]:
        if self.logs_dir is None:
            return None
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return self.logs_dir / f"{stamp}-iter{request.iteration:04d}-{_safe_name(request.item.display_id)}.log"

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.debug("Agent ignored SIGTERM; killing pid %s", proc.pid)
            proc.kill()
            proc.wait()

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the agent for one item and block until it signals or exits.

        Raises:
            KeyboardInterrupt: After killing the subprocess
        """
        prompt = build_prompt(
            self.prompt_template,
            request.item,
            request.acceptance_criteria,
            request.is_last,
            request.backend_kind,
        )
        argv, stdin_text = build_invocation(self.argv, prompt, self.prompt_mode, self.max_turns)
        log_path = self._log_path(request)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.project_root),
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=self._env(request),
            )
        except FileNotFoundError:
            logger.error("Agent executable not found: %s", argv[0])
            return ExecutionResult(
                signal=Signal.FAILED,
                return_code=None,
                log_path=log_path,
                detail=f"agent executable not found: {argv[0]}",
            )

        markers: List[Signal] = []
        marker_seen = threading.Event()
        lock = threading.Lock()
        log_file: Optional[IO[str]] = (
            open(log_path, "w", encoding="utf-8") if log_path is not None else None
        )

        def pump(stream: IO[str], sink: IO[str]) -> None:
            for line in stream:
                with lock:
                    if self.echo:
                        sink.write(line)
                        sink.flush()
                    if log_file is not None:
                        log_file.write(line)
                        log_file.flush()
                sig = parse_signal(line)
                if sig is not None:
                    with lock:
                        markers.append(sig)
                    marker_seen.set()

        readers = [
            threading.Thread(target=pump, args=(proc.stdout, sys.stdout), daemon=True),
            threading.Thread(target=pump, args=(proc.stderr, sys.stderr), daemon=True),
        ]
        for t in readers:
            t.start()

        timed_out = False
        try:
            if stdin_text is not None and proc.stdin is not None:
                try:
                    proc.stdin.write(stdin_text)
                    proc.stdin.close()
                except BrokenPipeError:
                    logger.debug("Agent closed stdin before reading the prompt")

            while proc.poll() is None:
                if marker_seen.wait(0.2):
                    logger.info("Completion marker seen; stopping agent early")
                    self._terminate(proc)
                    break
                if self.timeout_seconds and time.monotonic() - start > self.timeout_seconds:
                    logger.warning("Agent timed out after %ss", self.timeout_seconds)
                    timed_out = True
                    self._terminate(proc)
                    break
        except KeyboardInterrupt:
            proc.kill()
            proc.wait()
            raise
        finally:
            for t in readers:
                t.join(timeout=self.grace_seconds)
            if log_file is not None:
                log_file.close()

        return_code = proc.wait()
        duration = time.monotonic() - start

        with lock:
            seen = list(markers)
        signal = next((s for s in _STRENGTH if s in seen), None)

        if signal is None:
            if timed_out:
                signal = Signal.FAILED
            elif return_code == 0:
                signal = Signal.EXITED
            else:
                signal = Signal.FAILED

        detail = ""
        if timed_out and signal is Signal.FAILED:
            detail = f"timed out after {self.timeout_seconds}s"
        elif signal is Signal.FAILED:
            detail = f"agent exited with code {return_code}"

        return ExecutionResult(
            signal=signal,
            return_code=return_code,
            log_path=log_path,
            duration_seconds=duration,
            timed_out=timed_out,
            detail=detail,
        )
