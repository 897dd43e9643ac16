from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .backends import BackendUnavailable, make_backend
from .config import BACKEND_NAMES, Config, ConfigurationError, load_config
from .dependencies import find_blocking_cycles, format_cycle, partition
from .doctor import check_credentials, check_tools, require_tools
from .gitops import GitPublisher, ensure_git_repo
from .ledger import ProgressLedger
from .logging_config import setup_logging
from .output import OutputConfig, print_output, set_output_config
from .runner import AgentRunner, resolve_agent_argv
from .scheduler import RunSummary, Scheduler
from .verify import BrowserVerifier

logger = logging.getLogger(__name__)


def _project_root() -> Path:
    return Path(os.getcwd()).resolve()


def _load(project_root: Path) -> Config:
    try:
        return load_config(project_root)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


class _RalphArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(2, f"Error: {message}\n")


def _non_negative_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if n < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {n}")
    return n


# -------------------------
# run
# -------------------------


def _print_summary(summary: RunSummary, max_iterations: int) -> None:
    remaining = "unknown" if summary.remaining is None else str(summary.remaining)
    print_output("", level="quiet")
    print_output("=" * 41, level="quiet")
    print_output("ralph-taheri loop complete", level="quiet")
    print_output("=" * 41, level="quiet")
    print_output(f"Iterations: {summary.iterations} / {max_iterations}", level="quiet")
    print_output(f"Completed:  {summary.completed}", level="quiet")
    print_output(f"Failed:     {summary.failed}", level="quiet")
    print_output(f"Blocked:    {summary.blocked}", level="quiet")
    print_output(f"Remaining:  {remaining}", level="quiet")
    print_output(f"Halted:     {summary.halt_reason.value}", level="quiet")
    if summary.reclaimed:
        print_output(f"Reclaimed:  {summary.reclaimed}", level="quiet")
    print_output("=" * 41, level="quiet")


def cmd_run(args: argparse.Namespace) -> int:
    root = _project_root()
    cfg = _load(root)

    kind = (args.backend or cfg.tracker.backend).strip().lower()
    label = args.label or cfg.tracker.label
    max_iterations = (
        args.max_iterations if args.max_iterations is not None else cfg.loop.max_iterations
    )
    reclaim = (
        args.reclaim_stale if args.reclaim_stale is not None else cfg.loop.reclaim_stale_minutes
    )
    agent_argv = resolve_agent_argv(args.agent, cfg.runner.argv)

    # Everything below may raise ConfigurationError before the first cycle.
    ensure_git_repo(root)
    require_tools(cfg, kind, root, agent_argv)

    prompt_path = root / cfg.files.prompt
    if not prompt_path.exists():
        raise ConfigurationError(
            f"Prompt template not found: {prompt_path}. "
            "Create it (or CLAUDE.md) or set files.prompt in ralph.toml."
        )
    template = prompt_path.read_text(encoding="utf-8")

    backend = make_backend(cfg, kind, root)
    logs_dir = root / cfg.files.logs_dir

    runner = AgentRunner(
        argv=agent_argv,
        prompt_template=template,
        project_root=root,
        logs_dir=logs_dir,
        timeout_seconds=cfg.loop.runner_timeout_seconds,
        max_turns=args.max_turns,
        prompt_mode=cfg.runner.prompt_mode,
    )
    verifier: Optional[BrowserVerifier] = None
    if args.verify or cfg.verify.enabled:
        verifier = BrowserVerifier(
            timeout_seconds=cfg.verify.timeout_seconds,
            headless=cfg.verify.headless,
            snapshot_dir=root / cfg.verify.snapshot_dir,
        )
    publisher = GitPublisher(
        root,
        push=bool(args.push or cfg.git.push),
        remote=cfg.git.remote,
        reset_on_verification_failure=cfg.git.reset_on_verification_failure,
    )

    scheduler = Scheduler(
        backend=backend,
        ledger=ProgressLedger(root / cfg.files.progress),
        driver=runner,
        label=label,
        max_iterations=max_iterations,
        verifier=verifier,
        publisher=publisher,
        reclaim_stale_minutes=reclaim,
        retry_delay_seconds=cfg.loop.retry_delay_seconds,
    )

    print_output("Starting ralph-taheri agent loop")
    print_output(f"Backend: {backend.name}")
    print_output(f"Label: {label}")
    print_output(f"Max iterations: {max_iterations}")
    print_output(f"Verification: {'on' if verifier is not None else 'off'}")
    print_output("---")

    summary = scheduler.run()
    _print_summary(summary, max_iterations)
    return 0


# -------------------------
# status
# -------------------------


def cmd_status(args: argparse.Namespace) -> int:
    root = _project_root()
    cfg = _load(root)
    kind = (args.backend or cfg.tracker.backend).strip().lower()
    label = args.label or cfg.tracker.label
    backend = make_backend(cfg, kind, root)

    try:
        remaining = backend.count_remaining(label)
        items = backend.list_open(label)
        runnable, blocked = partition(items, backend)
    except BackendUnavailable as e:
        print_output(f"Backend unavailable: {e}", level="error")
        return 1

    print_output(f"Backend: {backend.name}", level="quiet")
    print_output(f"Label: {label}", level="quiet")
    print_output(f"Remaining: {remaining}", level="quiet")
    if runnable:
        print_output(f"Next: {runnable[0].describe()}", level="quiet")
    elif items:
        print_output("Next: (none - all remaining work is blocked)", level="quiet")
    else:
        print_output("Next: (none)", level="quiet")

    if blocked:
        print_output("Blocked:", level="quiet")
        for item, blockers in blocked:
            print_output(f"  {item.describe()} <- {', '.join(blockers)}", level="quiet")
        for cycle in find_blocking_cycles(blocked):
            print_output(f"  Blocking cycle: {format_cycle(cycle)}", level="quiet")
    return 0


# -------------------------
# patterns
# -------------------------


def cmd_patterns(args: argparse.Namespace) -> int:
    root = _project_root()
    cfg = _load(root)
    ledger = ProgressLedger(root / cfg.files.progress)

    if args.patterns_cmd == "add":
        text = " ".join(args.text).strip()
        if not text:
            print_output("Pattern text is empty", level="error")
            return 2
        if ledger.add_pattern(text):
            print_output(f"Added pattern: {text}")
        else:
            print_output("Pattern already recorded")
        return 0

    patterns = ledger.read_patterns()
    if not patterns:
        print_output("No codebase patterns recorded yet.")
        return 0
    for p in patterns:
        print(f"- {p}")
    return 0


# -------------------------
# doctor
# -------------------------


def cmd_doctor(args: argparse.Namespace) -> int:
    """Check tools and credentials."""
    root = _project_root()
    cfg = _load(root)
    kind = (args.backend or cfg.tracker.backend).strip().lower()

    ok = True
    print_output("Tools:", level="quiet")
    for st in check_tools(cfg, backend=kind):
        if st.found:
            print_output(f"[OK]   {st.name}: {st.version or st.path or 'found'}", level="quiet")
        elif st.required:
            ok = False
            print_output(f"[MISS] {st.name}: {st.hint or 'not found'}", level="quiet")
        else:
            print_output(f"[INFO] {st.name}: {st.hint or 'not found'} (optional)", level="quiet")

    print_output("Credentials:", level="quiet")
    for cred in check_credentials(cfg):
        tag = "[OK]  " if cred.present else "[INFO]"
        print_output(f"{tag} {cred.name}: {cred.detail}", level="quiet")

    prompt_path = root / cfg.files.prompt
    if prompt_path.exists():
        print_output(f"[OK]   prompt: {cfg.files.prompt}", level="quiet")
    else:
        ok = False
        print_output(f"[MISS] prompt: {cfg.files.prompt} not found", level="quiet")

    return 0 if ok else 2


# -------------------------
# parser
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    p = _RalphArgumentParser(
        prog="ralph-taheri",
        description="ralph-taheri: run a coding agent over GitHub Issues or Linear, one issue at a time",
    )
    p.add_argument("--version", action="version", version=f"ralph-taheri {__version__}")
    verbosity = p.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only errors and the summary")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the agent loop")
    p_run.add_argument("--backend", choices=BACKEND_NAMES, default=None, help="Issue backend (default: from config, else github)")
    p_run.add_argument("--verify", action="store_true", help="Verify finished items in a headless browser")
    p_run.add_argument("--push", action="store_true", help="git push after each completed item")
    p_run.add_argument("--max-turns", type=_non_negative_int, default=None, help="Passed to the agent as --max-turns")
    p_run.add_argument("--agent", default=None, help="Agent preset (claude, codex) or executable name")
    p_run.add_argument("--label", default=None, help="Tracking label (default: ralph-taheri or $RALPH_LABEL)")
    p_run.add_argument(
        "--reclaim-stale",
        type=_non_negative_int,
        default=None,
        metavar="MINUTES",
        help="Requeue in-progress items not updated for MINUTES before starting (0 = off)",
    )
    p_run.add_argument("max_iterations", nargs="?", type=_non_negative_int, default=None, help="Max loop iterations (default: 10)")
    p_run.set_defaults(func=cmd_run)

    p_status = sub.add_parser("status", help="Show remaining, next and blocked items")
    p_status.add_argument("--backend", choices=BACKEND_NAMES, default=None)
    p_status.add_argument("--label", default=None)
    p_status.set_defaults(func=cmd_status)

    p_pat = sub.add_parser("patterns", help="Read or extend the codebase patterns section")
    pat_sub = p_pat.add_subparsers(dest="patterns_cmd", required=True)
    pat_sub.add_parser("list", help="List recorded patterns")
    p_pat_add = pat_sub.add_parser("add", help="Record a new pattern")
    p_pat_add.add_argument("text", nargs="+")
    p_pat.set_defaults(func=cmd_patterns)

    p_doc = sub.add_parser("doctor", help="Check local prerequisites (git, agent, gh, credentials)")
    p_doc.add_argument("--backend", choices=BACKEND_NAMES, default=None)
    p_doc.set_defaults(func=cmd_doctor)

    return p


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    root = _project_root()
    try:
        cfg = _load(root)
        verbosity = cfg.output.verbosity
        if args.verbose:
            verbosity = "verbose"
        elif args.quiet:
            verbosity = "quiet"
        set_output_config(OutputConfig(verbosity=verbosity))

        log_file: Optional[Path] = None
        if cfg.output.log_file:
            log_file = root / cfg.output.log_file
        elif args.cmd == "run":
            log_file = root / cfg.files.logs_dir / "ralph-taheri.log"
        setup_logging(
            verbose=verbosity == "verbose", log_file=log_file, quiet=verbosity == "quiet"
        )

        logger.debug("ralph-taheri v%s starting", __version__)
        logger.debug("Command: %s", getattr(args, "cmd", "unknown"))

        return int(args.func(args))
    except ConfigurationError as e:
        print_output(f"Error: {e}", level="error")
        return 2
    except KeyboardInterrupt:
        print_output("Interrupted.", level="error")
        return 130
    except Exception as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
