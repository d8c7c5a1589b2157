"""
Pre-execution validation of agent actions.

Rules are checked in order and the first failing rule decides the
rejection reason.
"""

import logging

from .errors import ActionValidationError
from .types import ActionType, ExecutionContext, MCPAction, ValidationResult, VERIFICATION_TYPES
from .utils import descriptions_similar, same_url

logger = logging.getLogger(__name__)

RECENT_WINDOW = 3
TYPE_WINDOW = 6
MAX_TYPE_REPEATS = 3
VERIFICATION_RUN = 2


class ActionValidator:
    """Rejects actions that repeat recent work or are missing fields."""

    def validate(self, action: MCPAction, context: ExecutionContext) -> ValidationResult:
        """Check an action against the recent history and the current page.

        Args:
            action: Candidate action
            context: Current execution context

        Returns:
            ValidationResult with the rejection reason when invalid
        """
        history = context.execution_history

        for step in history[-RECENT_WINDOW:]:
            if step.action.identity() == action.identity():
                return ValidationResult(
                    False, f"Identical action executed recently: {action.type}"
                )
            if step.action.type == action.type and descriptions_similar(
                step.action.description, action.description
            ):
                return ValidationResult(
                    False, f"Semantically similar action executed recently: {action.type} - \"{action.description}\""
                )

        recent_types = [step.action.type for step in history[-TYPE_WINDOW:]]
        repeats = recent_types.count(action.type)
        if repeats >= MAX_TYPE_REPEATS:
            return ValidationResult(
                False, f"Action type '{action.type}' used {repeats}x recently - possible loop"
            )

        if action.type == ActionType.NAVIGATE.value and not action.url:
            return ValidationResult(False, "URL required for navigate")
        if action.type in (ActionType.CLICK.value, ActionType.FILL.value) and not action.selector:
            return ValidationResult(False, "Selector required to interact with an element")
        if action.type == ActionType.FILL.value and action.value is None:
            return ValidationResult(False, "Value required for fill")

        if action.type == ActionType.NAVIGATE.value and (
            same_url(action.url, context.page_state.url) or same_url(action.url, context.current_url)
        ):
            return ValidationResult(False, "Already on the target URL - navigation unnecessary")

        last_types = [step.action.type for step in history[-VERIFICATION_RUN:]]
        if (action.type in VERIFICATION_TYPES
                and len(last_types) == VERIFICATION_RUN
                and all(t in VERIFICATION_TYPES for t in last_types)):
            return ValidationResult(
                False,
                f"Too many consecutive verification actions: {' -> '.join(last_types)} -> {action.type}",
            )

        return ValidationResult(True)

    def check(self, action: MCPAction, context: ExecutionContext) -> None:
        """Raise ActionValidationError if the action is rejected."""
        result = self.validate(action, context)
        if not result.is_valid:
            raise ActionValidationError(result.reason)
