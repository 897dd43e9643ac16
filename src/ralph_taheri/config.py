from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore


BACKEND_NAMES = ("github", "linear")
DEFAULT_LABEL = "ralph-taheri"


class ConfigurationError(Exception):
    """Missing credentials, tools or files detected before the loop starts."""

    pass


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 10
    runner_timeout_seconds: int = 3600  # 0 = no timeout
    retry_delay_seconds: int = 5
    reclaim_stale_minutes: int = 0  # 0 = disabled


@dataclass(frozen=True)
class FilesConfig:
    progress: str = ".ralph/progress.txt"
    prompt: str = ".ralph/PROMPT.md"
    logs_dir: str = ".ralph/logs"


@dataclass(frozen=True)
class RunnerConfig:
    argv: List[str] = field(
        default_factory=lambda: ["claude", "--print", "--dangerously-skip-permissions"]
    )
    prompt_mode: str = "arg"  # arg|stdin


@dataclass(frozen=True)
class GitHubBackendConfig:
    repo: str = ""  # empty => let gh resolve {owner}/{repo} from the checkout
    auth_method: str = "gh_cli"  # gh_cli|token
    token_env: str = "GITHUB_TOKEN"
    in_progress_label: str = "in-progress"
    todo_label: str = "todo"
    blocked_label: str = "blocked"


@dataclass(frozen=True)
class LinearBackendConfig:
    api_key_env: str = "LINEAR_API_KEY"
    team_key: str = ""
    api_url: str = "https://api.linear.app/graphql"
    blocked_label: str = "blocked"


@dataclass(frozen=True)
class TrackerConfig:
    backend: str = "github"
    label: str = DEFAULT_LABEL
    page_size: int = 50
    github: GitHubBackendConfig = field(default_factory=GitHubBackendConfig)
    linear: LinearBackendConfig = field(default_factory=LinearBackendConfig)


@dataclass(frozen=True)
class VerifyConfig:
    enabled: bool = False
    timeout_seconds: int = 30
    headless: bool = True
    snapshot_dir: str = ".ralph/snapshots"


@dataclass(frozen=True)
class GitConfig:
    push: bool = False
    remote: str = ""  # empty => git's upstream default
    reset_on_verification_failure: bool = True


@dataclass(frozen=True)
class OutputSettings:
    verbosity: str = "normal"  # quiet|normal|verbose
    log_file: str = ""


@dataclass(frozen=True)
class Config:
    loop: LoopConfig
    files: FilesConfig
    runner: RunnerConfig
    tracker: TrackerConfig
    verify: VerifyConfig
    git: GitConfig
    output: OutputSettings


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    return default


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    raw = data.get(key, {}) or {}
    return raw if isinstance(raw, dict) else {}


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (recursively for dicts), return new dict."""

    out: Dict[str, Any] = dict(a)
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _load_config_data(project_root: Path) -> Tuple[Dict[str, Any], List[Path]]:
    """Return merged toml data and the list of config files read (in order)."""

    paths: List[Path] = []

    p1 = project_root / ".ralph" / "ralph.toml"
    if p1.exists():
        paths.append(p1)

    p2 = project_root / "ralph.toml"
    if p2.exists():
        paths.append(p2)

    env = os.environ.get("RALPH_CONFIG")
    if env:
        p3 = Path(env)
        if not p3.is_absolute():
            p3 = (project_root / p3).resolve()
        if p3.exists():
            paths.append(p3)

    data: Dict[str, Any] = {}
    for p in paths:
        data = _deep_merge(data, _load_toml(p))

    return data, paths


def _resolve_prompt(project_root: Path, preferred: str) -> str:
    """Fall back to a root-level CLAUDE.md/PROMPT.md when the configured prompt is absent."""

    if (project_root / preferred).exists():
        return preferred
    for candidate in ("CLAUDE.md", "PROMPT.md", ".ralph/CLAUDE.md"):
        if (project_root / candidate).exists():
            return candidate
    return preferred


# -------------------------
# Public API
# -------------------------


def load_config(project_root: Path) -> Config:
    """Load and normalize configuration.

    Key behavior:
    - Prefers .ralph/ralph.toml (if present).
    - Allows ./ralph.toml to override.
    - Allows $RALPH_CONFIG to override both.
    - $RALPH_LABEL and $LINEAR_TEAM_KEY override the tracker label and team.

    Raises:
        ValueError: If an enumerated setting has an unknown value
    """

    data, _read_paths = _load_config_data(project_root)

    loop_raw = _section(data, "loop")
    files_raw = _section(data, "files")
    runner_raw = _section(data, "runner")
    tracker_raw = _section(data, "tracker")
    verify_raw = _section(data, "verify")
    git_raw = _section(data, "git")
    output_raw = _section(data, "output")

    loop = LoopConfig(
        max_iterations=_coerce_int(loop_raw.get("max_iterations"), 10),
        runner_timeout_seconds=_coerce_int(loop_raw.get("runner_timeout_seconds"), 3600),
        retry_delay_seconds=_coerce_int(loop_raw.get("retry_delay_seconds"), 5),
        reclaim_stale_minutes=_coerce_int(loop_raw.get("reclaim_stale_minutes"), 0),
    )

    files = FilesConfig(
        progress=str(files_raw.get("progress", FilesConfig.progress)),
        prompt=_resolve_prompt(
            project_root, str(files_raw.get("prompt", FilesConfig.prompt))
        ),
        logs_dir=str(files_raw.get("logs_dir", FilesConfig.logs_dir)),
    )

    runner_argv = runner_raw.get("argv")
    prompt_mode = str(runner_raw.get("prompt_mode", "arg")).strip().lower()
    if prompt_mode not in {"arg", "stdin"}:
        raise ValueError(
            f"Invalid runner.prompt_mode: {prompt_mode!r}. Must be 'arg' or 'stdin'."
        )
    if isinstance(runner_argv, list) and runner_argv:
        runner = RunnerConfig(argv=[str(x) for x in runner_argv], prompt_mode=prompt_mode)
    else:
        runner = RunnerConfig(prompt_mode=prompt_mode)

    backend = str(tracker_raw.get("backend", "github")).strip().lower() or "github"
    if backend not in BACKEND_NAMES:
        raise ValueError(
            f"Invalid tracker.backend: {backend!r}. Must be 'github' or 'linear'."
        )

    page_size = _coerce_int(tracker_raw.get("page_size"), 50)
    if not 1 <= page_size <= 100:
        raise ValueError(f"Invalid tracker.page_size: {page_size}. Must be 1-100.")

    github_raw = _section(tracker_raw, "github")
    auth_method = str(github_raw.get("auth_method", "gh_cli"))
    if auth_method not in {"gh_cli", "token"}:
        raise ValueError(
            f"Invalid tracker.github.auth_method: {auth_method!r}. "
            "Must be 'gh_cli' or 'token'."
        )
    github = GitHubBackendConfig(
        repo=str(github_raw.get("repo", "")).strip(),
        auth_method=auth_method,
        token_env=str(github_raw.get("token_env", "GITHUB_TOKEN")),
        in_progress_label=str(github_raw.get("in_progress_label", "in-progress")),
        todo_label=str(github_raw.get("todo_label", "todo")),
        blocked_label=str(github_raw.get("blocked_label", "blocked")),
    )

    linear_raw = _section(tracker_raw, "linear")
    linear = LinearBackendConfig(
        api_key_env=str(linear_raw.get("api_key_env", "LINEAR_API_KEY")),
        team_key=(
            os.environ.get("LINEAR_TEAM_KEY") or str(linear_raw.get("team_key", ""))
        ).strip(),
        api_url=str(linear_raw.get("api_url", LinearBackendConfig.api_url)),
        blocked_label=str(linear_raw.get("blocked_label", "blocked")),
    )

    tracker = TrackerConfig(
        backend=backend,
        label=(
            os.environ.get("RALPH_LABEL") or str(tracker_raw.get("label", DEFAULT_LABEL))
        ).strip()
        or DEFAULT_LABEL,
        page_size=page_size,
        github=github,
        linear=linear,
    )

    verify = VerifyConfig(
        enabled=_coerce_bool(verify_raw.get("enabled"), False),
        timeout_seconds=_coerce_int(verify_raw.get("timeout_seconds"), 30),
        headless=_coerce_bool(verify_raw.get("headless"), True),
        snapshot_dir=str(verify_raw.get("snapshot_dir", VerifyConfig.snapshot_dir)),
    )

    git = GitConfig(
        push=_coerce_bool(git_raw.get("push"), False),
        remote=str(git_raw.get("remote", "")).strip(),
        reset_on_verification_failure=_coerce_bool(
            git_raw.get("reset_on_verification_failure"), True
        ),
    )

    verbosity = str(output_raw.get("verbosity", "normal")).strip().lower()
    if verbosity not in {"quiet", "normal", "verbose"}:
        verbosity = "normal"
    output = OutputSettings(
        verbosity=verbosity,
        log_file=str(output_raw.get("log_file", "")),
    )

    return Config(
        loop=loop,
        files=files,
        runner=runner,
        tracker=tracker,
        verify=verify,
        git=git,
        output=output,
    )
