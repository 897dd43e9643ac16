from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import Config, ConfigurationError
from .github_auth import GhCliAuth, GitHubAuthError
from .verify import PLAYWRIGHT_AVAILABLE


@dataclass
class ToolStatus:
    name: str
    found: bool
    path: Optional[str]
    version: Optional[str]
    hint: Optional[str]
    required: bool = True


@dataclass
class CredentialStatus:
    name: str
    present: bool
    detail: str


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _version(cmd: List[str]) -> Optional[str]:
    try:
        cp = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=10)
        out = (cp.stdout or "").strip()
        err = (cp.stderr or "").strip()
        text = out if out else err
        if text:
            # first line only
            return text.splitlines()[0][:200]
        return None
    except Exception:
        return None


def check_tools(cfg: Optional[Config] = None, backend: str = "github") -> List[ToolStatus]:
    agent = cfg.runner.argv[0] if cfg is not None and cfg.runner.argv else "claude"
    checks = [
        ("git", ["git", "--version"], "Install git and run `git init` in your project.", True),
        (
            agent,
            [agent, "--version"],
            "Install the agent CLI (default: Claude Code) or set runner.argv in ralph.toml.",
            True,
        ),
        (
            "gh",
            ["gh", "--version"],
            "Install the GitHub CLI (https://cli.github.com/) and run `gh auth login`.",
            backend == "github",
        ),
    ]

    results: List[ToolStatus] = []
    for name, ver_cmd, hint, required in checks:
        path = _which(name)
        found = path is not None
        version = _version(ver_cmd) if found else None
        results.append(
            ToolStatus(
                name=name,
                found=found,
                path=path,
                version=version,
                hint=None if found else hint,
                required=required,
            )
        )
    return results


def gh_authenticated() -> bool:
    try:
        return GhCliAuth(timeout_seconds=10).validate()
    except GitHubAuthError:
        return False


def check_credentials(cfg: Config) -> List[CredentialStatus]:
    lin = cfg.tracker.linear
    gh = cfg.tracker.github
    results: List[CredentialStatus] = []

    if gh.auth_method == "token":
        present = bool(os.environ.get(gh.token_env))
        results.append(
            CredentialStatus(gh.token_env, present, "set" if present else "not set (GitHub token auth)")
        )
    else:
        authed = gh_authenticated()
        results.append(
            CredentialStatus(
                "gh auth",
                authed,
                "authenticated" if authed else "not authenticated (run: gh auth login)",
            )
        )

    key_present = bool(os.environ.get(lin.api_key_env))
    results.append(
        CredentialStatus(
            lin.api_key_env,
            key_present,
            "set" if key_present else "not set (required only for the Linear backend)",
        )
    )
    results.append(
        CredentialStatus(
            "LINEAR_TEAM_KEY",
            bool(lin.team_key),
            lin.team_key or "not set (required only for the Linear backend)",
        )
    )
    results.append(
        CredentialStatus(
            "playwright",
            PLAYWRIGHT_AVAILABLE,
            "installed" if PLAYWRIGHT_AVAILABLE else "not installed (needed only for --verify)",
        )
    )
    return results


def require_tools(cfg: Config, backend: str, project_root: Path, agent_argv: List[str]) -> None:
    """Fail fast when a tool the run depends on is missing.

    Raises:
        ConfigurationError: If git, the agent, or (for GitHub via gh) gh is missing
    """
    needed = ["git", agent_argv[0] if agent_argv else "claude"]
    if backend == "github" and cfg.tracker.github.auth_method == "gh_cli":
        needed.append("gh")
    missing = [cmd for cmd in needed if _which(cmd) is None]
    if missing:
        raise ConfigurationError(
            f"Required tools not found on PATH: {', '.join(missing)}. "
            f"Run `ralph-taheri doctor` in {project_root} for details."
        )
