"""
Tests for the context window manager.
"""

import pytest

from webpilot.context_window import (
    ContextWindowManager,
    KEEP_ON_OPTIMIZE,
    MAX_CHUNKS,
    chunk_score,
    prioritize_chunks,
)
from webpilot.types import ContextChunk, PageContext
from webpilot.utils import estimate_tokens

from conftest import make_context, make_step, with_history


@pytest.fixture
def manager():
    return ContextWindowManager(max_tokens=4000)


class TestScoring:
    """Tests for chunk scoring and ordering."""

    def test_score_weights(self):
        chunk = ContextChunk(id="a", content="x", importance=1.0, recency=0.5, relevance=0.0)
        assert chunk_score(chunk) == pytest.approx(0.55)

    def test_prioritize_descending_and_stable(self):
        low = ContextChunk(id="low", content="", importance=0.1)
        tie_a = ContextChunk(id="tie-a", content="", importance=0.5)
        tie_b = ContextChunk(id="tie-b", content="", importance=0.5)
        high = ContextChunk(id="high", content="", importance=0.9)
        ranked = prioritize_chunks([low, tie_a, high, tie_b])
        assert [c.id for c in ranked] == ["high", "tie-a", "tie-b", "low"]


class TestTokens:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestOptimize:
    """Tests for optimize."""

    def test_under_budget_is_noop(self, manager):
        context = make_context(context_window=manager.initialize())
        assert manager.optimize(context) is False
        assert context.context_window.current_tokens > 0
        assert context.context_window.priority_chunks == []

    def test_over_budget_rebuilds_top_chunks(self):
        manager = ContextWindowManager(max_tokens=50)
        context = make_context(context_window=manager.initialize(),
                               page_state=PageContext(visible_text="lorem ipsum " * 200))
        with_history(context, *[
            make_step("click", f"Open section {name}", index=i, selector=f"e{i}")
            for i, name in enumerate(["alpha", "bravo", "charlie", "delta", "echo", "foxtrot"])
        ])
        for i in range(12):
            manager.add_context_chunk(context, f"observation {i}", importance=0.1, recency=0.1)

        assert manager.optimize(context) is True
        window = context.context_window
        assert window.current_tokens > window.max_tokens
        assert len(window.priority_chunks) == KEEP_ON_OPTIMIZE
        assert window.priority_chunks[0].id == "goal"
        scores = [chunk_score(c) for c in window.priority_chunks]
        assert scores == sorted(scores, reverse=True)
        assert window.last_optimization is not None

    def test_optimize_deduplicates_by_id(self):
        manager = ContextWindowManager(max_tokens=10)
        context = make_context(context_window=manager.initialize(),
                               page_state=PageContext(visible_text="x" * 500))
        with_history(context, make_step("click", "Open menu", index=1, selector="e1"))
        manager.optimize(context)
        manager.optimize(context)
        ids = [c.id for c in context.context_window.priority_chunks]
        assert len(ids) == len(set(ids))

    def test_context_chunks_cover_goal_and_last_five_steps(self, manager):
        context = with_history(make_context(), *[
            make_step("wait", f"pause {i}", index=i) for i in range(7)
        ])
        chunks = manager.create_context_chunks(context)
        assert chunks[0].id == "goal"
        assert [c.id for c in chunks[1:]] == [f"exec-test-step-{i}" for i in range(2, 7)]
        assert chunks[-1].recency == 1.0
        assert chunks[1].recency == pytest.approx(0.2)


class TestChunks:
    """Tests for add_context_chunk and build_memory_text."""

    def test_add_chunk_bounded(self, manager):
        context = make_context(context_window=manager.initialize())
        for i in range(MAX_CHUNKS + 5):
            manager.add_context_chunk(context, f"note {i}")
        chunks = context.context_window.priority_chunks
        assert len(chunks) == MAX_CHUNKS
        assert chunks[0].content == "note 5"
        assert chunks[-1].content == f"note {MAX_CHUNKS + 4}"

    def test_chunk_fields(self, manager):
        context = make_context()
        chunk = manager.add_context_chunk(context, "Action: Open | Result: Success | Duration: 12ms",
                                          type="action", importance=0.8)
        assert chunk.type == "action"
        assert chunk.tokens == estimate_tokens(chunk.content)
        assert chunk.id.startswith("chunk-")

    def test_memory_text_top_five(self, manager):
        context = make_context()
        for i in range(8):
            manager.add_context_chunk(context, f"chunk {i}", importance=i / 10)
        text = manager.build_memory_text(context)
        assert text.split("\n\n") == [f"chunk {i}" for i in (7, 6, 5, 4, 3)]

    def test_memory_text_empty(self, manager):
        assert manager.build_memory_text(make_context()) == ""
