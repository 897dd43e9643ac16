"""Blocking-dependency resolution and next-item selection.

An item is blocked while any of its blockers is non-terminal. Blockers come
from two places: relations the backend models natively, and free-text
"Blocked by" references in the item body. References to items that do not
exist never block.

The dependency graph here is only used for diagnostics: when every
candidate is blocked, cycles among them are reported so an operator can
break them by hand.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Set, Tuple

from .backends.base import Backend
from .models import ItemState, WorkItem

logger = logging.getLogger(__name__)

_BLOCKED_BY_RE = re.compile(r"\bblocked\s+by\b", re.IGNORECASE)
_HEADING_LINE_RE = re.compile(r"^\s*#{1,6}\s")


def _blocked_by_region(text: str) -> str:
    """Text following a "blocked by" phrase, up to a blank line or heading."""
    lines = text.split("\n")
    region: List[str] = [lines[0]]
    started = bool(lines[0].strip())
    for line in lines[1:]:
        if not line.strip():
            if started:
                break
            continue
        if _HEADING_LINE_RE.match(line):
            break
        region.append(line)
        started = True
    return "\n".join(region)


def parse_blocking_references(body: str, pattern: Pattern[str]) -> List[str]:
    """Extract blocker references from an item body.

    Every "blocked by" phrase (any case) starts a region that runs to the
    next blank line or markdown heading; leading blank lines are skipped.
    Group 1 of ``pattern`` is the reference. Results are upper-cased and
    de-duplicated in first-seen order.

    Example:
        >>> parse_blocking_references("## Blocked by\\n- #7", re.compile(r"#(\\d+)"))
        ['7']
    """
    if not body:
        return []

    refs: List[str] = []
    seen: Set[str] = set()
    for phrase in _BLOCKED_BY_RE.finditer(body):
        region = _blocked_by_region(body[phrase.end():])
        for m in pattern.finditer(region):
            ref = m.group(1).strip().upper()
            if ref and ref not in seen:
                seen.add(ref)
                refs.append(ref)
    return refs


class BlockingResolver:
    """Answers "is this item blocked?" against a backend.

    Point lookups are memoised for the lifetime of the resolver. Create one
    per selection pass so state changes between cycles are always seen.
    """

    def __init__(self, backend: Backend):
        self.backend = backend
        self._lookups: Dict[str, Optional[WorkItem]] = {}

    def lookup(self, ref: str) -> Optional[WorkItem]:
        """Fetch a referenced item (None if missing).

        Raises:
            BackendUnavailable: On transport failure
        """
        key = self.backend.normalize_reference(ref)
        if key not in self._lookups:
            self._lookups[key] = self.backend.get_item(key)
            if self._lookups[key] is None:
                logger.debug("Blocker reference %s does not exist; ignoring", ref)
        return self._lookups[key]

    def open_blockers(self, item: WorkItem) -> List[str]:
        """Display ids of the non-terminal blockers of ``item``."""
        normalize = self.backend.normalize_reference
        own = normalize(item.display_id)
        seen: Set[str] = {own}
        blockers: List[str] = []

        for ref in item.structured_blockers:
            key = normalize(ref.display_id)
            if key in seen:
                continue
            seen.add(key)
            if not ref.state.is_terminal:
                blockers.append(ref.display_id)

        for ref in parse_blocking_references(item.body, self.backend.reference_pattern):
            key = normalize(ref)
            if key in seen:
                continue
            seen.add(key)
            blocker = self.lookup(key)
            if blocker is not None and not blocker.is_terminal:
                blockers.append(blocker.display_id)

        return blockers

    def is_blocked(self, item: WorkItem) -> bool:
        return bool(self.open_blockers(item))


@dataclass
class Selection:
    """Outcome of one selection pass.

    Attributes:
        item: The chosen item, or None when every candidate is blocked
        blocked: Skipped items with their open blockers, in evaluation order
    """

    item: Optional[WorkItem] = None
    blocked: List[Tuple[WorkItem, List[str]]] = field(default_factory=list)


def _candidates(items: List[WorkItem]) -> List[WorkItem]:
    runnable = [i for i in items if not i.is_terminal and i.state is not ItemState.IN_PROGRESS]
    return sorted(runnable, key=lambda i: i.sort_key)


def select_next(
    items: List[WorkItem], backend: Backend, resolver: Optional[BlockingResolver] = None
) -> Selection:
    """Pick the most urgent unblocked item.

    Items are ordered by (priority, sequence, id); the first one without
    open blockers wins. Blockers are only evaluated up to the winner.

    Raises:
        BackendUnavailable: If a blocker lookup fails
    """
    resolver = resolver or BlockingResolver(backend)
    selection = Selection()
    for item in _candidates(items):
        blockers = resolver.open_blockers(item)
        if not blockers:
            selection.item = item
            return selection
        logger.debug("%s is blocked by %s", item.display_id, ", ".join(blockers))
        selection.blocked.append((item, blockers))
    return selection


def partition(
    items: List[WorkItem], backend: Backend, resolver: Optional[BlockingResolver] = None
) -> Tuple[List[WorkItem], List[Tuple[WorkItem, List[str]]]]:
    """Split all candidates into (runnable, blocked-with-blockers), both in selection order."""
    resolver = resolver or BlockingResolver(backend)
    runnable: List[WorkItem] = []
    blocked: List[Tuple[WorkItem, List[str]]] = []
    for item in _candidates(items):
        blockers = resolver.open_blockers(item)
        if blockers:
            blocked.append((item, blockers))
        else:
            runnable.append(item)
    return runnable, blocked


# -------------------------
# Graph diagnostics
# -------------------------


@dataclass
class ItemNode:
    """Node in the blocking graph."""

    item_id: str
    depends_on: List[str] = field(default_factory=list)
    blocked_by: List[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    nodes: Dict[str, ItemNode] = field(default_factory=dict)
    edges: List[Tuple[str, str]] = field(default_factory=list)


def build_dependency_graph(blocked: List[Tuple[WorkItem, List[str]]]) -> DependencyGraph:
    """Build a graph with an edge blocker -> item for every open blocker.

    Example:
        >>> a = WorkItem(id=1, display_id="#1", title="a")
        >>> graph = build_dependency_graph([(a, ["#2"])])
        >>> graph.edges
        [('#2', '#1')]
    """
    graph = DependencyGraph()

    for item, blockers in blocked:
        graph.nodes[item.display_id] = ItemNode(
            item_id=item.display_id, depends_on=list(blockers)
        )

    for item_id, node in graph.nodes.items():
        for dep_id in node.depends_on:
            graph.edges.append((dep_id, item_id))
            # Only blockers that are themselves candidates get a back-reference.
            if dep_id in graph.nodes:
                node.blocked_by.append(dep_id)

    return graph


def detect_circular_dependencies(graph: DependencyGraph) -> List[List[str]]:
    """Detect blocking cycles using depth-first search.

    Returns:
        Each cycle as a list of ids, closed by repeating its first id.
        Empty list if there are none.
    """
    cycles: List[List[str]] = []
    visited: Set[str] = set()
    rec_stack: Set[str] = set()
    path: List[str] = []

    def dfs(item_id: str) -> bool:
        visited.add(item_id)
        rec_stack.add(item_id)
        path.append(item_id)

        node = graph.nodes.get(item_id)
        if node:
            for dep_id in node.depends_on:
                if dep_id not in graph.nodes:
                    continue

                if dep_id not in visited:
                    if dfs(dep_id):
                        return True
                elif dep_id in rec_stack:
                    cycle_start = path.index(dep_id)
                    cycles.append(path[cycle_start:] + [dep_id])
                    return True

        path.pop()
        rec_stack.remove(item_id)
        return False

    for item_id in graph.nodes:
        if item_id not in visited:
            # Each root gets a fresh DFS stack; a cycle aborts its walk early.
            path.clear()
            rec_stack.clear()
            dfs(item_id)

    return cycles


def find_blocking_cycles(blocked: List[Tuple[WorkItem, List[str]]]) -> List[List[str]]:
    """Cycles among blocked candidates (used when nothing is runnable)."""
    return detect_circular_dependencies(build_dependency_graph(blocked))


def format_cycle(cycle: List[str]) -> str:
    return " -> ".join(cycle)
