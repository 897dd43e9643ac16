"""Progress ledger: codebase patterns plus an append-only run log.

File layout::

    ## Codebase Patterns
    - pattern one

    ## Progress Log
    [2026-01-01 10:00:00] started: #7 - Title
    [2026-01-01 10:05:00] completed: #7 - Title | Commit abc123

Log lines are appended with one write, flushed and fsynced, so a crash
leaves at most one torn line. Readers skip lines that do not parse.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .atomic_file import atomic_write_text
from .models import LedgerEntry, LedgerEvent, WorkItem

logger = logging.getLogger(__name__)

PATTERNS_HEADER = "## Codebase Patterns"
LOG_HEADER = "## Progress Log"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_EVENTS = "|".join(re.escape(e.value) for e in LedgerEvent)
_LINE_RE = re.compile(
    r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\] "
    rf"({_EVENTS}): (\S+) - (.*?)(?: \| (.*))?$"
)


def _one_line(text: str) -> str:
    return " ".join(str(text).split())


def format_entry(
    event: LedgerEvent, display_id: str, title: str, note: str = "", now: Optional[datetime] = None
) -> str:
    ts = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    # " | " separates the note, so it cannot appear in the title.
    line = f"[{ts}] {event.value}: {_one_line(display_id)} - {_one_line(title).replace(' | ', ' / ')}"
    if note:
        line += f" | {_one_line(note)}"
    return line


def parse_entry(line: str) -> Optional[LedgerEntry]:
    """Parse one log line; None if it is not a complete entry."""
    m = _LINE_RE.match(line.rstrip("\n"))
    if not m:
        return None
    ts, event, display_id, title, note = m.groups()
    return LedgerEntry(
        timestamp=ts,
        event=LedgerEvent(event),
        display_id=display_id,
        title=title,
        note=note or "",
    )


def _replace_bullets(head: List[str], bullets: List[str]) -> List[str]:
    """Swap the bullets of the patterns section, keeping every other line."""
    out: List[str] = []
    in_section = False
    placed = False

    def place() -> None:
        while out and not out[-1].strip():
            out.pop()
        out.extend(bullets)
        out.append("")

    for line in head:
        stripped = line.strip()
        if stripped.startswith("## "):
            if in_section and not placed:
                place()
                placed = True
            in_section = stripped == PATTERNS_HEADER
            out.append(line)
            continue
        if in_section and stripped.startswith("- "):
            if not placed:
                out.extend(bullets)
                placed = True
            continue
        out.append(line)

    if in_section and not placed:
        place()
    elif not placed:
        out = [PATTERNS_HEADER, *bullets, ""] + out
    return out


class ProgressLedger:
    """The progress file shared by the loop and the agent."""

    def __init__(self, path: Path):
        self.path = path

    def ensure(self) -> None:
        """Create the file skeleton if it does not exist."""
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.path, f"{PATTERNS_HEADER}\n\n{LOG_HEADER}\n")

    def _ends_with_newline(self) -> bool:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return True
        if size == 0:
            return True
        with open(self.path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"

    def append(self, event: LedgerEvent, item: WorkItem, note: str = "") -> str:
        """Append one entry durably and return the written line.

        Raises:
            OSError: If the file cannot be written
        """
        self.ensure()
        line = format_entry(event, item.display_id, item.title, note)
        # A previous write may have been cut short; keep its fragment on its own line.
        prefix = "" if self._ends_with_newline() else "\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(prefix + line + "\n")
            f.flush()
            os.fsync(f.fileno())
        logger.debug("Ledger: %s", line)
        return line

    def _read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def entries(self) -> List[LedgerEntry]:
        """All complete, well-formed log entries in file order."""
        text = self._read()
        if not text:
            return []
        lines = text.split("\n")
        if not text.endswith("\n"):
            # Last line is torn.
            lines = lines[:-1]
        out: List[LedgerEntry] = []
        for line in lines:
            entry = parse_entry(line)
            if entry is not None:
                out.append(entry)
        return out

    def _split(self) -> Tuple[List[str], str]:
        """Return (lines before the log, log section text).

        Without a log header, everything from the first log entry onwards
        is treated as the log and placed under a new header.
        """
        text = self._read()
        idx = text.find(LOG_HEADER)
        if idx != -1:
            return text[:idx].splitlines(), text[idx:]
        lines = text.splitlines()
        first = next((i for i, line in enumerate(lines) if parse_entry(line)), len(lines))
        tail = "".join(f"{line}\n" for line in lines[first:])
        return lines[:first], f"{LOG_HEADER}\n{tail}"

    def read_patterns(self) -> List[str]:
        """Bullet texts from the patterns section."""
        head, _ = self._split()
        patterns: List[str] = []
        in_section = False
        for line in head:
            stripped = line.strip()
            if stripped.startswith("## "):
                in_section = stripped == PATTERNS_HEADER
                continue
            if in_section and stripped.startswith("- "):
                patterns.append(stripped[2:].strip())
        return patterns

    def write_patterns(self, patterns: List[str]) -> None:
        """Replace the patterns section, keeping the log untouched.

        Read-modify-write; concurrent writers are last-writer-wins.
        """
        head, log = self._split()
        bullets = [f"- {_one_line(p)}" for p in patterns if p.strip()]
        lines = _replace_bullets(head, bullets)
        atomic_write_text(self.path, "\n".join(lines).rstrip("\n") + "\n\n" + log)

    def add_pattern(self, text: str) -> bool:
        """Add a pattern unless already present; return True when added."""
        text = _one_line(text)
        if not text:
            return False
        patterns = self.read_patterns()
        if text in patterns:
            return False
        patterns.append(text)
        self.write_patterns(patterns)
        return True
