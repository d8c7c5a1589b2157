"""
Token-bounded, scored working memory used to build LLM prompts.

Token counts are a heuristic (characters / 4), not a tokenizer.
"""

import json
import logging
import uuid
from datetime import datetime

from .types import ContextChunk, ContextWindow, ExecutionContext
from .utils import estimate_tokens

logger = logging.getLogger(__name__)

MAX_CHUNKS = 20
KEEP_ON_OPTIMIZE = 10
MEMORY_CHUNKS = 5
HISTORY_CHUNKS = 5

IMPORTANCE_WEIGHT = 0.4
RECENCY_WEIGHT = 0.3
RELEVANCE_WEIGHT = 0.3


def chunk_score(chunk: ContextChunk) -> float:
    """0.4 importance + 0.3 recency + 0.3 relevance."""
    return (
        chunk.importance * IMPORTANCE_WEIGHT
        + chunk.recency * RECENCY_WEIGHT
        + chunk.relevance * RELEVANCE_WEIGHT
    )


def prioritize_chunks(chunks: list[ContextChunk]) -> list[ContextChunk]:
    """Sort by score, highest first. Stable, so ties keep insertion order."""
    return sorted(chunks, key=chunk_score, reverse=True)


class ContextWindowManager:
    """Maintains the ContextWindow of an ExecutionContext."""

    def __init__(self, max_tokens: int = 4000, relevance_threshold: float = 0.7):
        self.max_tokens = max_tokens
        self.relevance_threshold = relevance_threshold

    def initialize(self) -> ContextWindow:
        return ContextWindow(
            max_tokens=self.max_tokens,
            relevance_threshold=self.relevance_threshold,
        )

    def build_context_text(self, context: ExecutionContext) -> str:
        """Full, unoptimized context text; its size drives optimization."""
        history = [step.to_dict() for step in context.recent_steps(3)]
        strategy = {
            "approach": context.current_strategy.approach,
            "currentObjective": context.current_strategy.current_objective,
            "expectedElements": context.current_strategy.expected_elements,
        }
        return "\n".join([
            f"Goal: {context.goal}",
            f"Current URL: {context.current_url}",
            f"Strategy: {json.dumps(strategy)}",
            f"History: {json.dumps(history, default=str)}",
            f"Page state: {json.dumps(context.page_state.to_dict(), default=str)}",
        ])

    def create_context_chunks(self, context: ExecutionContext) -> list[ContextChunk]:
        """Candidate chunks: the goal plus the last five steps."""
        chunks = [ContextChunk(
            id="goal",
            content=f"Goal: {context.goal}",
            type="strategy",
            importance=1.0,
            recency=1.0,
            relevance=1.0,
            tokens=estimate_tokens(context.goal),
        )]
        for index, step in enumerate(context.recent_steps(HISTORY_CHUNKS)):
            outcome = "Success" if step.success else "Failure"
            content = f"{step.action.description} -> {outcome}"
            chunks.append(ContextChunk(
                id=step.id,
                content=content,
                type="action",
                importance=0.8 if step.success else 0.4,
                recency=(index + 1) / HISTORY_CHUNKS,
                relevance=0.7,
                tokens=estimate_tokens(content),
                timestamp=step.timestamp,
            ))
        return chunks

    def optimize(self, context: ExecutionContext) -> bool:
        """Re-rank chunks when the context is over budget.

        Returns:
            True if the window was rebuilt
        """
        window = context.context_window
        window.current_tokens = estimate_tokens(self.build_context_text(context))
        if window.current_tokens <= window.max_tokens:
            return False

        logger.debug(f"Optimizing context: {window.current_tokens}/{window.max_tokens} tokens")
        candidates: dict[str, ContextChunk] = {}
        for chunk in self.create_context_chunks(context) + window.priority_chunks:
            candidates.setdefault(chunk.id, chunk)
        ranked = prioritize_chunks(list(candidates.values()))
        window.priority_chunks = ranked[:KEEP_ON_OPTIMIZE]
        window.last_optimization = datetime.now()
        return True

    def add_context_chunk(
        self,
        context: ExecutionContext,
        content: str,
        type: str = "observation",
        importance: float = 0.5,
        recency: float = 1.0,
        relevance: float = 0.7,
    ) -> ContextChunk:
        """Append a chunk, keeping only the 20 most recent."""
        chunk = ContextChunk(
            id=f"chunk-{uuid.uuid4().hex[:8]}",
            content=content,
            type=type,
            importance=importance,
            recency=recency,
            relevance=relevance,
            tokens=estimate_tokens(content),
        )
        window = context.context_window
        window.priority_chunks.append(chunk)
        if len(window.priority_chunks) > MAX_CHUNKS:
            window.priority_chunks = window.priority_chunks[-MAX_CHUNKS:]
        return chunk

    def build_memory_text(self, context: ExecutionContext) -> str:
        """The top five chunks, joined, for the decision prompt."""
        top = prioritize_chunks(context.context_window.priority_chunks)[:MEMORY_CHUNKS]
        return "\n\n".join(chunk.content for chunk in top)
