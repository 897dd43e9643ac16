"""Operator-facing terminal output.

Cycle outcomes and the end-of-run summary are printed through here rather
than through logging, so they stay visible at the default verbosity while
library logging stays at WARNING.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass
class OutputConfig:
    """Output configuration.

    Attributes:
        verbosity: "quiet", "normal", or "verbose"
        timestamps: Prefix each line with a local timestamp
    """

    verbosity: str = "normal"
    timestamps: bool = True


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    """Return the configured output settings, else defaults from $RALPH_VERBOSITY."""
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("RALPH_VERBOSITY", "normal")
    if verbosity not in ("quiet", "normal", "verbose"):
        verbosity = "normal"
    return OutputConfig(verbosity=verbosity)


def set_output_config(config: OutputConfig) -> None:
    global _output_config
    _output_config = config


def print_output(message: str, level: str = "normal", file: Any = None) -> None:
    """Print a line if the current verbosity allows it.

    - "error": always printed, to stderr by default
    - "quiet": printed in every mode
    - "normal": suppressed in quiet mode
    - "verbose": only printed in verbose mode
    """
    config = get_output_config()

    if level == "error":
        should_print = True
        if file is None:
            file = sys.stderr
    elif level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if not should_print:
        return

    if config.timestamps and message:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        message = f"[{stamp}] {message}"
    print(message, file=file if file is not None else sys.stdout, flush=True)
