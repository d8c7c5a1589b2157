"""
Type definitions for WebPilot.

Typed dataclasses for the structures shared by the transport, the page
bridge and the agent loop. Every structure that crosses the execution
stream knows how to turn itself into a JSON-friendly dict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ActionType(str, Enum):
    """Kinds of browser action the agent can take."""
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    SCREENSHOT = "screenshot"
    WAIT = "wait"
    ANALYZE = "analyze"
    ASSERT = "assert"
    EXTRACT = "extract"


class Phase(str, Enum):
    """Execution phases of the agent state machine."""
    EXPLORATION = "exploration"
    FOCUSED = "focused"
    COMPLETION = "completion"
    RECOVERY = "recovery"


# Action types that only look at the page
VERIFICATION_TYPES = {ActionType.ASSERT.value, ActionType.EXTRACT.value}

# Action types offered as "safe" alternatives after a rejection
SAFE_ALTERNATIVE_TYPES = {
    ActionType.WAIT.value,
    ActionType.ANALYZE.value,
    ActionType.SCREENSHOT.value,
    ActionType.EXTRACT.value,
}


def clamp_confidence(value: float) -> float:
    """Clamp a confidence value to [0, 100]."""
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True)
class ServerConfig:
    """Launch configuration for a named tool server."""
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "description": self.description,
        }


@dataclass
class MCPAction:
    """One action decided by the agent.

    Attributes:
        type: Action kind (see ActionType); kept as a plain string so an
            unknown type coming from the LLM survives until the bridge
            reports it as a failure
        url: Target URL (navigate)
        selector: Element description/ref (click, fill, assert, extract)
        value: Text to type (fill), expected text (assert), or ms (wait)
        timeout: Optional per-action timeout in milliseconds
        description: Human description of the action
        reasoning: Why the action was chosen (observability only)
        expected_outcome: What the decider expects to happen
    """
    type: str
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    timeout: Optional[int] = None
    description: str = ""
    reasoning: str = ""
    expected_outcome: str = ""

    def __post_init__(self):
        if isinstance(self.type, ActionType):
            self.type = self.type.value

    def target(self) -> str:
        """Short label of what the action points at."""
        return self.url or self.selector or self.value or ""

    def identity(self) -> tuple:
        """Fields that make two actions identical for repetition checks."""
        return (self.type, self.url, self.selector, self.value)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "description": self.description}
        for key in ("url", "selector", "value", "timeout"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.expected_outcome:
            data["expectedOutcome"] = self.expected_outcome
        return data


@dataclass
class FormField:
    selector: str
    type: str = "textbox"
    name: Optional[str] = None
    required: bool = False


@dataclass
class FormInfo:
    selector: str
    fields: list[FormField] = field(default_factory=list)


@dataclass
class ButtonInfo:
    selector: str
    text: str
    is_visible: bool = True
    is_enabled: bool = True


@dataclass
class LinkInfo:
    selector: str
    text: str
    href: Optional[str] = None
    is_visible: bool = True


@dataclass
class PageContext:
    """Snapshot of what the page looks like after an action."""
    url: str = ""
    title: str = ""
    visible_text: str = ""
    forms: list[FormInfo] = field(default_factory=list)
    buttons: list[ButtonInfo] = field(default_factory=list)
    links: list[LinkInfo] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    loading_state: str = "loading"  # loading | complete | error
    has_changes: bool = False

    @classmethod
    def fallback(cls, reason: str = "Failed to capture page context") -> "PageContext":
        """Safe context used when capture is impossible."""
        return cls(title="Capture failed", errors=[reason], loading_state="error")

    def to_dict(self, max_text_chars: int = 500) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "visibleText": self.visible_text[:max_text_chars],
            "forms": [
                {
                    "selector": f.selector,
                    "fields": [{"ref": ff.selector, "type": ff.type, "name": ff.name} for ff in f.fields],
                }
                for f in self.forms
            ],
            "buttons": [{"ref": b.selector, "text": b.text} for b in self.buttons],
            "links": [{"ref": l.selector, "text": l.text, "href": l.href} for l in self.links],
            "errors": list(self.errors),
            "loadingState": self.loading_state,
            "hasChanges": self.has_changes,
        }


@dataclass
class PageChange:
    """One difference between two consecutive page contexts."""
    type: str  # url_changed | content_changed | element_added | element_removed
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    element: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "element": self.element,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PerformanceMetrics:
    load_time: float = 0.0
    dom_content_loaded: float = 0.0
    network_requests: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "loadTime": self.load_time,
            "domContentLoaded": self.dom_content_loaded,
            "networkRequests": self.network_requests,
            "errors": list(self.errors),
        }


@dataclass
class MCPResult:
    """Outcome of one action. Well-formed even when the action failed."""
    success: bool
    duration: float
    page_context: PageContext = field(default_factory=PageContext)
    changes: list[PageChange] = field(default_factory=list)
    data: Any = None
    error: Optional[str] = None
    screenshot: Optional[str] = None
    performance: Optional[PerformanceMetrics] = None

    def to_dict(self, include_screenshot: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "duration": self.duration,
            "pageContext": self.page_context.to_dict(),
            "changes": [c.to_dict() for c in self.changes],
        }
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.performance is not None:
            result["performance"] = self.performance.to_dict()
        if self.screenshot is not None:
            result["screenshot"] = self.screenshot if include_screenshot else True
        return result


@dataclass(frozen=True)
class TestGoal:
    """A natural-language test goal submitted by a caller."""
    __test__ = False  # keep pytest from collecting this class

    description: str
    target_url: str
    user_id: str = "local"
    llm_provider: str = "openai"
    model: Optional[str] = None


@dataclass
class TestStrategy:
    __test__ = False

    approach: str = "exploratory"  # direct | exploratory | fallback | adaptive
    current_objective: str = ""
    expected_elements: list[str] = field(default_factory=list)
    fallback_plan: list[str] = field(default_factory=list)
    success_criteria: str = ""


@dataclass
class ContextChunk:
    """One scored fragment of context text."""
    id: str
    content: str
    type: str = "observation"  # action | result | observation | strategy
    importance: float = 0.5
    recency: float = 1.0
    relevance: float = 0.7
    tokens: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ContextWindow:
    max_tokens: int = 4000
    current_tokens: int = 0
    priority_chunks: list[ContextChunk] = field(default_factory=list)
    relevance_threshold: float = 0.7
    last_optimization: datetime = field(default_factory=datetime.now)


@dataclass
class ActionPattern:
    action_sequence: list[str]
    outcome: str  # success | failure | neutral
    page_context: str = ""
    confidence: float = 0.5
    frequency: int = 1
    last_used: datetime = field(default_factory=datetime.now)


@dataclass
class LoopDetectionRecord:
    pattern: list[str]
    occurrences: int = 1
    severity: str = "high"
    last_detected: datetime = field(default_factory=datetime.now)


@dataclass
class ActionMemory:
    success_patterns: list[ActionPattern] = field(default_factory=list)
    failure_patterns: list[ActionPattern] = field(default_factory=list)
    loop_detection: list[LoopDetectionRecord] = field(default_factory=list)


@dataclass
class DecisionFactor:
    factor: str
    weight: float = 0.0
    value: float = 0.0
    reasoning: str = ""


@dataclass
class ExecutionState:
    """Phase and adaptation bookkeeping of the state machine."""
    current_phase: str = Phase.EXPLORATION.value
    adaptation_level: float = 0.5
    pattern_confidence: float = 0.0
    exploration_budget: int = 10
    decision_factors: list[DecisionFactor] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "exploration_budget":
            value = max(0, int(value))
        elif name == "adaptation_level":
            value = max(0.0, min(1.0, float(value)))
        elif name == "current_phase" and isinstance(value, Phase):
            value = value.value
        super().__setattr__(name, value)


@dataclass(frozen=True)
class ContextSnapshot:
    """The parts of the working memory captured with each emitted step."""
    url: str
    objective: str
    phase: str
    confidence: float
    adaptation_level: float
    exploration_budget: int
    history_length: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "objective": self.objective,
            "phase": self.phase,
            "confidence": self.confidence,
            "adaptationLevel": self.adaptation_level,
            "explorationBudget": self.exploration_budget,
            "historyLength": self.history_length,
        }


@dataclass(frozen=True)
class AgentStep:
    """One executed action as it appears in history and on the stream."""
    id: str
    action: MCPAction
    result: MCPResult
    context: ContextSnapshot
    timestamp: datetime
    duration: float
    description: str

    @property
    def success(self) -> bool:
        return self.result.success

    def to_dict(self, include_screenshot: bool = False) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.to_dict(),
            "result": self.result.to_dict(include_screenshot=include_screenshot),
            "context": self.context.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration,
            "description": self.description,
            "success": self.success,
        }


@dataclass
class ExecutionContext:
    """The agent's working memory for one goal. Mutated every iteration.

    Confidence is clamped to [0, 100] on every assignment.
    """
    goal: str
    target_url: str
    current_url: str = ""
    current_strategy: TestStrategy = field(default_factory=TestStrategy)
    page_state: PageContext = field(default_factory=PageContext)
    execution_history: list[AgentStep] = field(default_factory=list)
    is_complete: bool = False
    confidence: float = 70.0
    next_actions: list[MCPAction] = field(default_factory=list)
    thoughts: str = ""
    context_window: ContextWindow = field(default_factory=ContextWindow)
    action_memory: ActionMemory = field(default_factory=ActionMemory)
    execution_state: ExecutionState = field(default_factory=ExecutionState)

    # Step counters survive history truncation
    steps_executed: int = 0
    steps_succeeded: int = 0
    steps_failed: int = 0

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "confidence":
            value = clamp_confidence(value)
        super().__setattr__(name, value)

    def adjust_confidence(self, delta: float) -> float:
        """Apply a delta and return the clamped confidence."""
        self.confidence = self.confidence + delta
        return self.confidence

    @property
    def phase(self) -> str:
        return self.execution_state.current_phase

    @property
    def objective(self) -> str:
        return self.current_strategy.current_objective or self.goal

    def recent_steps(self, count: int) -> list[AgentStep]:
        return self.execution_history[-count:] if count > 0 else []

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            url=self.current_url,
            objective=self.objective,
            phase=self.phase,
            confidence=self.confidence,
            adaptation_level=self.execution_state.adaptation_level,
            exploration_budget=self.execution_state.exploration_budget,
            history_length=len(self.execution_history),
        )


@dataclass(frozen=True)
class LoopDetection:
    """Result of a loop check. A control signal, not a fault."""
    is_loop: bool
    pattern: str = ""
    severity: str = "low"
    category: str = ""

    @classmethod
    def none(cls) -> "LoopDetection":
        return cls(is_loop=False)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: str = "Valid action"


@dataclass
class ExecutionSummary:
    """Final report of one execution."""
    execution_id: str
    goal: str
    is_complete: bool
    total_steps: int
    succeeded_steps: int
    failed_steps: int
    final_phase: str
    final_confidence: float
    loops_detected: int
    elapsed_seconds: float
    stopped: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.stopped:
            return "stopped"
        return "success" if self.is_complete else "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "goal": self.goal,
            "status": self.status,
            "isComplete": self.is_complete,
            "totalSteps": self.total_steps,
            "succeededSteps": self.succeeded_steps,
            "failedSteps": self.failed_steps,
            "finalPhase": self.final_phase,
            "finalConfidence": self.final_confidence,
            "loopsDetected": self.loops_detected,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
            "error": self.error,
        }
