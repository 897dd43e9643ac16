"""Property-based tests for selection and blocker parsing.

These use hypothesis to generate random pools of items with random
priorities, states and "Blocked by" references.
"""

from __future__ import annotations

import re
from typing import List

from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import InMemoryBackend, make_item
from ralph_taheri.dependencies import (
    BlockingResolver,
    parse_blocking_references,
    partition,
    select_next,
)
from ralph_taheri.models import ItemState, WorkItem

GITHUB_REF = re.compile(r"(?<![\w#&])#(\d+)\b")
STATES = [ItemState.QUEUED, ItemState.IN_PROGRESS, ItemState.DONE, ItemState.CANCELLED]


@st.composite
def pool_strategy(draw: st.DrawFn, min_size: int = 0, max_size: int = 12) -> List[WorkItem]:
    """Generate a pool of items numbered 1..n with random blockers."""
    n = draw(st.integers(min_value=min_size, max_value=max_size))
    items: List[WorkItem] = []
    for number in range(1, n + 1):
        refs = draw(st.lists(st.integers(min_value=1, max_value=n + 2), max_size=3))
        body = "Blocked by " + ", ".join(f"#{r}" for r in refs) if refs else ""
        items.append(
            make_item(
                number,
                priority=draw(st.integers(min_value=0, max_value=4)),
                body=body,
                state=draw(st.sampled_from(STATES)),
            )
        )
    return items


@given(pool=pool_strategy())
@settings(max_examples=100)
def test_selection_is_deterministic(pool: List[WorkItem]) -> None:
    backend = InMemoryBackend(pool)

    first = select_next(pool, backend).item
    second = select_next(list(reversed(pool)), backend).item

    assert (first.display_id if first else None) == (second.display_id if second else None)


@given(pool=pool_strategy())
@settings(max_examples=100)
def test_selected_item_is_queued_and_unblocked(pool: List[WorkItem]) -> None:
    backend = InMemoryBackend(pool)

    item = select_next(pool, backend).item

    if item is not None:
        assert item.state is ItemState.QUEUED
        assert not BlockingResolver(backend).is_blocked(item)


@given(pool=pool_strategy())
@settings(max_examples=100)
def test_selected_item_is_most_urgent_runnable(pool: List[WorkItem]) -> None:
    backend = InMemoryBackend(pool)

    item = select_next(pool, backend).item
    runnable, _ = partition(pool, backend)

    if runnable:
        assert item is not None
        assert item.sort_key == min(i.sort_key for i in runnable)
    else:
        assert item is None


@given(pool=pool_strategy(min_size=1), data=st.data())
@settings(max_examples=100)
def test_closing_a_blocker_never_blocks_more(pool: List[WorkItem], data: st.DataObject) -> None:
    backend = InMemoryBackend(pool)
    _, blocked_before = partition(pool, backend)

    victim = data.draw(st.sampled_from(pool))
    backend.items[str(victim.id)].state = ItemState.DONE
    victim.state = ItemState.DONE
    _, blocked_after = partition(pool, backend)

    before = {i.display_id for i, _ in blocked_before}
    after = {i.display_id for i, _ in blocked_after}
    assert after <= before


@given(
    refs=st.lists(st.integers(min_value=1, max_value=50), min_size=1, max_size=8),
    noise=st.text(alphabet="abc xyz\n", max_size=30),
)
@settings(max_examples=100)
def test_parsed_references_are_unique_and_from_the_region(refs: List[int], noise: str) -> None:
    body = noise + "\n\nBlocked by " + " ".join(f"#{r}" for r in refs) + "\n\nSee #999"
    parsed = parse_blocking_references(body, GITHUB_REF)

    assert len(parsed) == len(set(parsed))
    assert parsed == list(dict.fromkeys(str(r) for r in refs))
