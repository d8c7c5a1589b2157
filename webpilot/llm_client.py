"""
LLM collaborator for the agent loop.

Builds the prompts and validates the JSON documents the loop depends on:
goal interpretation, next-action decision, progress evaluation and the
alternative action requested after a rejection.
"""

import json
import logging
import re
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .adapters import LLMAdapter, create_adapter
from .errors import LLMCollaboratorError
from .langchain_client import LangChainCompleter
from .providers import ProviderConfig
from .types import (
    DecisionFactor,
    ExecutionContext,
    MCPAction,
    TestGoal,
    TestStrategy,
)
from .utils import extract_json_from_response, truncate_text

logger = logging.getLogger(__name__)


class ChatCompleter(Protocol):
    """Anything that turns a system/user prompt pair into text."""

    def complete(self, system: str, user: str) -> str: ...


class AdapterCompleter:
    """ChatCompleter over the httpx provider adapters."""

    def __init__(self, adapter: LLMAdapter, max_retries: int = 3):
        self.adapter = adapter
        self.max_retries = max_retries

    def complete(self, system: str, user: str) -> str:
        try:
            return self.adapter.chat_completion(system, user, self.max_retries)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            # ValueError covers a 200 response whose body is not JSON
            raise LLMCollaboratorError(f"LLM request failed: {e}") from e

    def close(self) -> None:
        self.adapter.close()


def create_completer(provider_config: ProviderConfig, use_langchain: bool = True) -> ChatCompleter:
    """Pick the completer for a provider.

    OpenAI-compatible providers go through LangChain when enabled; the
    others use their native adapter.
    """
    if use_langchain and provider_config.is_openai_compatible:
        return LangChainCompleter(provider_config)
    return AdapterCompleter(create_adapter(provider_config))


# Response contracts

class _Contract(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ActionModel(_Contract):
    type: str
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    timeout: Optional[int] = None
    description: str = ""
    reasoning: str = ""
    expected_outcome: str = Field(default="", alias="expectedOutcome")

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v) if isinstance(v, (dict, list)) else str(v)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    def to_action(self) -> MCPAction:
        return MCPAction(
            type=self.type,
            url=self.url or None,
            selector=self.selector or None,
            value=self.value,
            timeout=self.timeout,
            description=self.description or f"{self.type} action",
            reasoning=self.reasoning,
            expected_outcome=self.expected_outcome,
        )


class StrategyModel(_Contract):
    approach: str = "exploratory"
    primary_objective: str = Field(default="", alias="primaryObjective")
    secondary_objectives: list[str] = Field(default_factory=list, alias="secondaryObjectives")
    expected_elements: list[str] = Field(default_factory=list, alias="expectedElements")
    fallback_plan: list[str] = Field(default_factory=list, alias="fallbackPlan")
    success_criteria: str = Field(default="", alias="successCriteria")

    def to_strategy(self) -> TestStrategy:
        return TestStrategy(
            approach=self.approach,
            current_objective=self.primary_objective,
            expected_elements=list(self.expected_elements),
            fallback_plan=list(self.fallback_plan),
            success_criteria=self.success_criteria,
        )


class GoalInterpretation(_Contract):
    strategy: StrategyModel = Field(default_factory=StrategyModel)
    initial_action: Optional[ActionModel] = Field(default=None, alias="initialAction")
    confidence: Optional[float] = None
    thoughts: str = ""


class DecisionFactorModel(_Contract):
    factor: str = ""
    weight: float = 0.0
    value: float = 0.0
    reasoning: str = ""

    def to_factor(self) -> DecisionFactor:
        return DecisionFactor(self.factor, self.weight, self.value, self.reasoning)


class NextActionDecision(_Contract):
    action: ActionModel
    decision_factors: list[DecisionFactorModel] = Field(default_factory=list, alias="decisionFactors")
    phase_recommendation: Optional[str] = Field(default=None, alias="phaseRecommendation")
    confidence: Optional[float] = None


class Progress(_Contract):
    is_complete: bool = Field(default=False, alias="isComplete")
    completion_percentage: Optional[float] = Field(default=None, alias="completionPercentage")
    current_phase: Optional[str] = Field(default=None, alias="currentPhase")
    next_steps: list[str] = Field(default_factory=list, alias="nextSteps")


class Adaptations(_Contract):
    strategy_adjustment: Optional[str] = Field(default=None, alias="strategyAdjustment")
    confidence_adjustment: float = Field(default=0.0, alias="confidenceAdjustment")
    phase_recommendation: Optional[str] = Field(default=None, alias="phaseRecommendation")


class Learning(_Contract):
    pattern: str = ""
    confidence: float = 0.0
    action: Optional[str] = None


class ProgressEvaluation(_Contract):
    progress: Progress = Field(default_factory=Progress)
    adaptations: Adaptations = Field(default_factory=Adaptations)
    learnings: list[Learning] = Field(default_factory=list)


class AlternativeAction(_Contract):
    action: ActionModel


def parse_json_with_recovery(raw_response: str) -> dict[str, Any]:
    """Parse a JSON object out of an LLM response.

    Tries markdown code blocks, the raw text, the text with trailing
    commas removed, and finally the span from the first "{" to the last "}".

    Raises:
        json.JSONDecodeError: If all parsing attempts fail
    """
    candidates = []
    extracted = extract_json_from_response(raw_response)
    if extracted:
        candidates.append(extracted)
    cleaned = raw_response.strip()
    candidates.append(cleaned)
    candidates.append(re.sub(r',\s*([}\]])', r'\1', cleaned))
    start, end = cleaned.find('{'), cleaned.rfind('}')
    if start != -1 and end > start:
        candidates.append(re.sub(r',\s*([}\]])', r'\1', cleaned[start:end + 1]))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise json.JSONDecodeError("Could not parse JSON object from response", raw_response, 0)


class AgentLLM:
    """Prompts the collaborator and validates what comes back."""

    INTERPRET_PROMPT = """You are a web testing expert planning an adaptive browser test.

Analyze the goal and create a strategy that considers:
- Patterns that succeed in similar tests
- The page context and the elements you expect to find
- Fallback strategies for complex scenarios
- An efficient action budget

Respond with ONLY valid JSON in exactly this structure:
{
  "strategy": {
    "approach": "adaptive|systematic|exploratory",
    "primaryObjective": "specific, measurable objective",
    "secondaryObjectives": ["obj1", "obj2"],
    "expectedElements": ["element1", "element2"],
    "fallbackPlan": ["action1", "action2"],
    "successCriteria": "clear success criterion"
  },
  "initialAction": {
    "type": "navigate",
    "url": "URL_TO_OPEN",
    "description": "Clear description of the action",
    "reasoning": "Why this action is the right start",
    "expectedOutcome": "What should happen"
  },
  "confidence": 85,
  "thoughts": "Analysis of the situation and the strategy"
}"""

    DECIDE_PROMPT = """You are an intelligent browser test agent with a dynamic context system.

CURRENT STATE:
- Phase: {phase}
- Confidence: {confidence:.0f}%
- Exploration budget: {budget}

IMPORTANT:
- AVOID repeating recent similar actions!
- Consider the current page state!
- Adapt the strategy to the current execution phase!
- Elements are addressed by their ref (for example "e12") from the page state.

Respond with ONLY valid JSON in exactly this structure:
{{
  "action": {{
    "type": "navigate|click|fill|screenshot|wait|analyze|assert|extract",
    "selector": "element ref if needed",
    "value": "value if needed",
    "url": "url if navigate",
    "timeout": 5000,
    "description": "Clear description of the action",
    "reasoning": "Why this is the best action now",
    "expectedOutcome": "What should happen"
  }},
  "decisionFactors": [
    {{"factor": "page_analysis", "weight": 0.3, "value": 0.8, "reasoning": "Page analyzed"}}
  ],
  "phaseRecommendation": "exploration|focused|completion|recovery",
  "confidence": 85
}}"""

    ALTERNATIVE_PROMPT = """The suggested action was rejected. Produce an alternative action that avoids the problem.

Respond with ONLY valid JSON:
{
  "action": {
    "type": "wait|analyze|screenshot|extract",
    "description": "Safe alternative action",
    "reasoning": "Why this action is better",
    "timeout": 3000
  }
}"""

    EVALUATE_PROMPT = """Evaluate the progress of the browser test and suggest adaptations.

Respond with ONLY valid JSON:
{
  "progress": {
    "isComplete": false,
    "completionPercentage": 65,
    "currentPhase": "focused",
    "nextSteps": ["analyze_result", "fill_field"]
  },
  "adaptations": {
    "strategyAdjustment": "keep|intensify|change_approach",
    "confidenceAdjustment": 5,
    "phaseRecommendation": "focused"
  },
  "learnings": [
    {"pattern": "form_found", "confidence": 0.9, "action": "continue_filling"}
  ]
}"""

    REPAIR_NOTE = (
        "\n\nYour previous response was not valid JSON for the required structure. "
        "Respond with ONLY the raw JSON object, starting with { and ending with }."
    )

    def __init__(self, completer: ChatCompleter, max_retries: int = 1):
        """Initialize the collaborator.

        Args:
            completer: Chat completer to send prompts through
            max_retries: Repair attempts after an unparsable response
        """
        self.completer = completer
        self.max_retries = max_retries

    def close(self) -> None:
        close = getattr(self.completer, "close", None)
        if callable(close):
            close()

    def _ask(self, system: str, user: str, contract: type[BaseModel]):
        """Send a prompt and validate the reply against a contract.

        Raises:
            LLMCollaboratorError: If no valid reply arrived
        """
        last_error: Optional[Exception] = None
        raw = ""
        for attempt in range(self.max_retries + 1):
            prompt = user + (self.REPAIR_NOTE if attempt > 0 else "")
            raw = self.completer.complete(system, prompt)
            try:
                return contract.model_validate(parse_json_with_recovery(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                last_error = e
                logger.debug(f"Invalid {contract.__name__} response (attempt {attempt + 1}): {e}")
        raise LLMCollaboratorError(
            f"Invalid {contract.__name__} response after {self.max_retries + 1} attempts: {last_error}",
            raw_response=raw,
        )

    def interpret_goal(self, goal: TestGoal) -> GoalInterpretation:
        user = (
            f"Goal: {goal.description}\n"
            f"Target URL: {goal.target_url}\n\n"
            "Create an adaptive strategy to test this goal. The system keeps a memory "
            "of actions and can adapt the strategy as it goes."
        )
        return self._ask(self.INTERPRET_PROMPT, user, GoalInterpretation)

    def decide_next_action(self, context: ExecutionContext, memory_text: str) -> NextActionDecision:
        """Ask for the next action, showing the last three so they are not repeated."""
        state = context.execution_state
        system = self.DECIDE_PROMPT.format(
            phase=state.current_phase,
            confidence=context.confidence,
            budget=state.exploration_budget,
        )
        recent = "\n".join(
            f"{step.action.type}({step.action.target()}): "
            f"{'OK' if step.success else 'FAILED'} - {step.description}"
            for step in context.recent_steps(3)
        ) or "(none yet)"
        avoid = ", ".join(
            " -> ".join(record.pattern) for record in context.action_memory.loop_detection
        ) or "(none)"
        page = context.page_state.to_dict()
        user = f"""OPTIMIZED CONTEXT:
{memory_text or '(empty)'}

LAST 3 ACTIONS (DO NOT REPEAT!):
{recent}

CURRENT OBJECTIVE: {context.objective}
CURRENT URL: {context.page_state.url or context.current_url}
TITLE: {context.page_state.title}
VISIBLE TEXT: {truncate_text(context.page_state.visible_text, 500)}
FORM FIELDS: {json.dumps(page['forms'])}
BUTTONS: {json.dumps(page['buttons'][:30])}
LINKS: {json.dumps(page['links'][:30])}

PATTERNS TO AVOID: {avoid}

What is the most appropriate next action given all of this context?"""
        return self._ask(system, user, NextActionDecision)

    def generate_alternative_action(self, context: ExecutionContext, reason: str) -> MCPAction:
        user = (
            f"Action rejected because: {reason}\n"
            f"Context: {json.dumps(context.page_state.to_dict(max_text_chars=300))}\n\n"
            "Suggest an alternative action that is safe and productive."
        )
        return self._ask(self.ALTERNATIVE_PROMPT, user, AlternativeAction).action.to_action()

    def evaluate_progress(self, context: ExecutionContext) -> ProgressEvaluation:
        last = context.execution_history[-1] if context.execution_history else None
        user = (
            f"GOAL: {context.goal}\n"
            f"CURRENT PROGRESS: {context.confidence:.0f}%\n"
            f"ACTIONS EXECUTED: {context.steps_executed}\n"
            f"LAST ACTION: {last.action.description if last else '(none)'}\n"
            f"RESULT: {('Success' if last.success else 'Failure') if last else '(none)'}\n"
            f"CURRENT PAGE: {context.page_state.url}\n\n"
            "Evaluate the progress and suggest adaptations."
        )
        return self._ask(self.EVALUATE_PROMPT, user, ProgressEvaluation)
