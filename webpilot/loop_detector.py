"""
Loop detection and correction for the agent loop.

Detection looks at the most recent steps only. Correction is applied
without consulting the LLM: it replaces the objective, demotes the phase,
penalizes confidence and queues a forced action that breaks the pattern.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from .types import (
    ActionType,
    ExecutionContext,
    LoopDetection,
    LoopDetectionRecord,
    MCPAction,
    Phase,
)
from .utils import descriptions_similar

logger = logging.getLogger(__name__)

STAGNATION_PATTERN = "no_progress"
PATTERN_SEPARATOR = " -> "

HISTORY_WINDOW = 8
FREQUENCY_WINDOW = 4
SEQUENCE_WINDOW = 6

# Stagnation: long history without enough confidence
STAGNATION_MIN_HISTORY = 15
STAGNATION_CONFIDENCE = 60

CONFIDENCE_FLOOR = 10
MAX_LOOP_RECORDS = 2
HISTORY_KEEP = 3


@dataclass(frozen=True)
class LoopCorrection:
    new_phase: str
    new_objective: str
    confidence_adjustment: int
    forced_action: MCPAction


CORRECTIONS = {
    ActionType.ASSERT.value: LoopCorrection(
        new_phase=Phase.COMPLETION.value,
        new_objective="Finish the test and extract the available results",
        confidence_adjustment=-30,
        forced_action=MCPAction(
            type=ActionType.WAIT.value,
            description="Wait for the page to settle before finishing",
            reasoning="Break a repeated verification loop",
        ),
    ),
    ActionType.NAVIGATE.value: LoopCorrection(
        new_phase=Phase.RECOVERY.value,
        new_objective="Analyze the current page instead of navigating again",
        confidence_adjustment=-25,
        forced_action=MCPAction(
            type=ActionType.SCREENSHOT.value,
            description="Capture the current state for analysis",
            reasoning="Break a repeated navigation loop",
        ),
    ),
    ActionType.EXTRACT.value: LoopCorrection(
        new_phase=Phase.COMPLETION.value,
        new_objective="Conclude with the data already collected",
        confidence_adjustment=-20,
        forced_action=MCPAction(
            type=ActionType.WAIT.value,
            description="Prepare to finish",
            reasoning="Break a repeated extraction loop",
        ),
    ),
    STAGNATION_PATTERN: LoopCorrection(
        new_phase=Phase.RECOVERY.value,
        new_objective="Force conclusion - insufficient progress detected",
        confidence_adjustment=-40,
        forced_action=MCPAction(
            type=ActionType.WAIT.value,
            description="Force finishing after lack of progress",
            reasoning="Too many steps without progress",
        ),
    ),
}


def loop_category(pattern: str) -> str:
    """Map a detected pattern to the correction that handles it."""
    if STAGNATION_PATTERN in pattern:
        return STAGNATION_PATTERN
    if ActionType.NAVIGATE.value in pattern:
        return ActionType.NAVIGATE.value
    if ActionType.EXTRACT.value in pattern:
        return ActionType.EXTRACT.value
    return ActionType.ASSERT.value


def pattern_severity(pattern: list[str], confidence: float) -> str:
    """Severity of an exactly repeated type window."""
    has_navigation = ActionType.NAVIGATE.value in pattern
    if len(pattern) >= 3 or (has_navigation and confidence < 50):
        return "high"
    if len(pattern) == 2 or has_navigation:
        return "medium"
    return "low"


class LoopDetector:
    """Detects repeated or stagnant behavior and forces a way out."""

    def detect(self, context: ExecutionContext) -> LoopDetection:
        """Run the four checks in order and report the first hit.

        Args:
            context: The execution context to inspect

        Returns:
            LoopDetection, with is_loop False when nothing was found
        """
        recent = [step.action for step in context.recent_steps(HISTORY_WINDOW)]

        # Frequency: one type dominating the last four steps
        last = recent[-FREQUENCY_WINDOW:]
        counts = Counter(action.type for action in last)
        for action_type, count in counts.items():
            if count >= 3:
                pattern = f"{action_type} (repeated {count}x)"
                logger.warning(f"Loop detected: '{action_type}' repeated {count}x recently")
                return self._found(pattern, "high" if count >= 4 else "medium")

        # Semantic: consecutive same-type steps saying the same thing
        for i in range(len(last) - 1, 0, -1):
            current, previous = last[i], last[i - 1]
            if current.type == previous.type and descriptions_similar(
                current.description, previous.description
            ):
                pattern = f"{current.type}{PATTERN_SEPARATOR}{previous.type} (semantic)"
                logger.warning(f"Semantic loop detected: {current.type} with similar descriptions")
                return self._found(pattern, "high")

        # Exact: the last window of types equals the one before it
        sequence = [action.type for action in recent[-SEQUENCE_WINDOW:]]
        for length in (2, 3):
            if len(sequence) < length * 2:
                continue
            window = sequence[-length:]
            if window == sequence[-length * 2:-length]:
                pattern = PATTERN_SEPARATOR.join(window)
                logger.warning(f"Exact loop detected: {pattern}")
                return self._found(pattern, pattern_severity(window, context.confidence))

        if (len(context.execution_history) > STAGNATION_MIN_HISTORY
                and context.confidence < STAGNATION_CONFIDENCE):
            logger.warning(
                f"Loop from lack of progress: {len(context.execution_history)} steps, "
                f"confidence {context.confidence:.0f}%"
            )
            return self._found(STAGNATION_PATTERN, "high")

        return LoopDetection.none()

    def _found(self, pattern: str, severity: str) -> LoopDetection:
        return LoopDetection(
            is_loop=True, pattern=pattern, severity=severity, category=loop_category(pattern)
        )

    def apply_correction(self, context: ExecutionContext, detection: LoopDetection) -> MCPAction:
        """Correct the context in place and queue the forced action.

        Returns:
            The forced action that was queued
        """
        category = detection.category or loop_category(detection.pattern)
        correction = CORRECTIONS[category]

        context.current_strategy.current_objective = correction.new_objective
        context.confidence = max(context.confidence + correction.confidence_adjustment, CONFIDENCE_FLOOR)
        context.execution_state.current_phase = correction.new_phase
        context.execution_state.adaptation_level = 1.0

        forced = MCPAction(
            type=correction.forced_action.type,
            description=correction.forced_action.description,
            reasoning=correction.forced_action.reasoning,
        )
        context.next_actions = [forced]

        context.action_memory.loop_detection.append(LoopDetectionRecord(
            pattern=detection.pattern.split(PATTERN_SEPARATOR),
            severity="high",
        ))

        if len(context.execution_history) > HISTORY_KEEP:
            context.execution_history = context.execution_history[-HISTORY_KEEP:]

        if len(context.action_memory.loop_detection) >= MAX_LOOP_RECORDS:
            logger.error("Multiple loops detected, forcing completion")
            context.is_complete = True
            context.confidence = max(context.confidence, 50)

        logger.warning(
            f"Loop correction applied ({category}): {correction.new_objective} | "
            f"phase {correction.new_phase}, confidence {context.confidence:.0f}%"
        )
        return forced

    def check(self, context: ExecutionContext) -> Optional[MCPAction]:
        """Detect and, if needed, correct. Returns the forced action or None."""
        detection = self.detect(context)
        if not detection.is_loop:
            return None
        return self.apply_correction(context, detection)
