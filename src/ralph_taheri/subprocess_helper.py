"""Short-lived subprocess calls (git) with uniform errors.

The long-running agent process is not started through here; see
``runner.AgentRunner`` for the streaming, marker-watching variant.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class SubprocessResult:
    """Result of a finished subprocess.

    Attributes:
        returncode: Exit code (0 = success)
        stdout: Captured standard output
        stderr: Captured standard error
        cmd_str: Command line, for log messages
    """

    returncode: int
    stdout: str
    stderr: str
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        return self.returncode != 0


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    check: bool = False,
    timeout: Optional[int] = None,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> SubprocessResult:
    """Run a command to completion and capture its output as text.

    Args:
        argv: Command and arguments (e.g. ["git", "push"])
        cwd: Working directory
        check: Raise RuntimeError on a non-zero exit
        timeout: Seconds before the command is abandoned
        input_text: Optional text written to stdin
        env: Full environment for the child process

    Returns:
        SubprocessResult

    Raises:
        RuntimeError: On timeout, missing executable, or (with check=True)
            a non-zero exit
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {"capture_output": True, "text": True}
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = env
    if input_text is not None:
        kwargs["input"] = input_text

    try:
        cp = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"Command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e

    result = SubprocessResult(
        returncode=cp.returncode,
        stdout=cp.stdout or "",
        stderr=cp.stderr or "",
        cmd_str=cmd_str,
    )
    if check and result.failed:
        raise RuntimeError(
            f"Command failed with exit code {result.returncode}: {cmd_str}\n"
            f"stderr: {result.stderr.strip()}"
        )
    return result
