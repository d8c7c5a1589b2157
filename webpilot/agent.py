"""
Agent core for WebPilot.

DynamicAgent runs the per-goal state machine: decide an action, validate
it, execute it through the page context bridge, update confidence and
phase, detect and correct loops, and wait an adaptive amount of time.
ExecutionOrchestrator owns the in-flight executions and the shared
tool-server pool.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from dataclasses import dataclass
from typing import Callable, Optional

from .config import AgentConfig
from .context_window import ContextWindowManager
from .errors import LLMCollaboratorError, WebPilotError
from .llm_client import AgentLLM, GoalInterpretation, ProgressEvaluation, create_completer
from .logger import RunLogger
from .loop_detector import LoopDetector
from .mcp.bridge import PageContextBridge
from .mcp.manager import MCPManager
from .mcp.playwright import PlaywrightTools
from .mcp.servers import default_servers
from .stream import StepStream
from .types import (
    ActionPattern,
    ActionType,
    AgentStep,
    ExecutionContext,
    ExecutionState,
    ExecutionSummary,
    MCPAction,
    MCPResult,
    Phase,
    SAFE_ALTERNATIVE_TYPES,
    TestGoal,
    TestStrategy,
)
from .validation import ActionValidator

logger = logging.getLogger(__name__)

PHASES = {phase.value for phase in Phase}

PHASE_WAIT_MULTIPLIERS = {
    Phase.EXPLORATION.value: 0.5,
    Phase.FOCUSED.value: 1.0,
    Phase.COMPLETION.value: 1.5,
    Phase.RECOVERY.value: 2.0,
}

MAX_PATTERNS = 20
RECOVERY_CONFIDENCE = 30
RECOVERY_BUDGET = 5
RECOVERY_OBJECTIVE = "Recover a stable state and analyze the situation"
CRITICAL_CONFIDENCE = 10


def new_execution_id() -> str:
    return f"exec-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def compute_action_timeout(action_type: str, phase: str, base_ms: int = 5000) -> int:
    """Adaptive per-action timeout in milliseconds.

    Recovery gets 1.5x, navigation gets 2x, and the two multiply.
    """
    phase_multiplier = 1.5 if phase == Phase.RECOVERY.value else 1.0
    action_multiplier = 2.0 if action_type == ActionType.NAVIGATE.value else 1.0
    return int(base_ms * phase_multiplier * action_multiplier)


def compute_wait_ms(
    phase: str,
    success: bool,
    confidence: float,
    base_ms: float = 1000,
    min_ms: float = 500,
    max_ms: float = 5000,
) -> float:
    """Adaptive pause between iterations, clamped to [min_ms, max_ms]."""
    phase_multiplier = PHASE_WAIT_MULTIPLIERS.get(phase, 1.0)
    success_multiplier = 0.8 if success else 1.2
    confidence_multiplier = 0.7 if confidence > 80 else 1.3
    wait = base_ms * phase_multiplier * success_multiplier * confidence_multiplier
    return min(max(wait, min_ms), max_ms)


def fallback_wait_action() -> MCPAction:
    return MCPAction(
        type=ActionType.WAIT.value,
        value="2000",
        timeout=2000,
        description="Wait for the page to stabilize",
        reasoning="Safe default when no alternative action could be generated",
    )


class DynamicAgent:
    """Pursues one TestGoal until it is complete or the step budget runs out."""

    def __init__(
        self,
        goal: TestGoal,
        llm: AgentLLM,
        bridge: PageContextBridge,
        config: Optional[AgentConfig] = None,
        execution_id: Optional[str] = None,
        stream: Optional[StepStream] = None,
        run_logger: Optional[RunLogger] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the agent.

        Args:
            goal: The goal to pursue
            llm: Collaborator that interprets, decides and evaluates
            bridge: Executes actions and captures page state
            config: Loop limits and timing; defaults from the environment
            execution_id: Identifier used for step ids and logging
            stream: Where completed steps are published
            run_logger: Optional artifact and console logger
            stop_event: Set by the orchestrator to stop before the next iteration
            sleep: Replaces the adaptive wait (seconds); tests pass a no-op
            clock: Monotonic clock in seconds
        """
        self.goal = goal
        self.llm = llm
        self.bridge = bridge
        self.config = config or AgentConfig()
        self.execution_id = execution_id or new_execution_id()
        self.stream = stream or StepStream(self.execution_id)
        self.run_logger = run_logger
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep or self.stop_event.wait
        self._clock = clock

        self.context_manager = ContextWindowManager(max_tokens=self.config.max_context_tokens)
        self.loop_detector = LoopDetector()
        self.validator = ActionValidator()

        self.context: Optional[ExecutionContext] = None
        self.loops_detected = 0
        self.last_error: Optional[str] = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set() or self.stream.closed

    def run(self) -> ExecutionSummary:
        """Run the loop and finalize. Never raises for step-level failures.

        Returns:
            ExecutionSummary for the execution
        """
        started = self._clock()
        logger.info(f"Starting execution {self.execution_id}: {self.goal.description}")
        if self.run_logger:
            self.run_logger.print_header(self.goal.target_url)

        error: Optional[str] = None
        step_number = 0
        try:
            context = self.context = self.interpret_goal()
            logger.info(f"Objective: {context.objective}")

            while not context.is_complete and step_number < self.config.max_steps:
                if self.stopped:
                    logger.info(f"Execution {self.execution_id} stopped")
                    break
                step_number += 1
                try:
                    self.run_iteration(context, step_number)
                except Exception as e:
                    logger.error(f"Error in step {step_number}: {e}")
                    if self.run_logger:
                        self.run_logger.print_error(str(e))
                    self.handle_step_error(context, e)

                if context.confidence < CRITICAL_CONFIDENCE:
                    self.activate_recovery_mode(context)

            if not context.is_complete and not self.stopped and step_number >= self.config.max_steps:
                error = "Reached maximum step limit"
                if self.last_error:
                    error += f" (last error: {self.last_error})"
        except WebPilotError as e:
            logger.error(f"Execution {self.execution_id} failed: {e}")
            error = str(e)
        except Exception as e:
            logger.exception(f"Execution {self.execution_id} crashed")
            error = f"{type(e).__name__}: {e}"

        return self.finalize(self._clock() - started, error)

    # Initialization

    def new_context(self) -> ExecutionContext:
        return ExecutionContext(
            goal=self.goal.description,
            target_url=self.goal.target_url,
            confidence=self.config.initial_confidence,
            context_window=self.context_manager.initialize(),
            execution_state=ExecutionState(exploration_budget=self.config.exploration_budget),
        )

    def interpret_goal(self) -> ExecutionContext:
        """Build the initial context from the collaborator's interpretation.

        If interpretation fails, start from a default strategy that opens
        the target URL.
        """
        context = self.new_context()
        try:
            interpretation = self.llm.interpret_goal(self.goal)
        except LLMCollaboratorError as e:
            logger.warning(f"Goal interpretation failed, using default strategy: {e}")
            context.current_strategy = TestStrategy(
                approach="exploratory",
                current_objective=self.goal.description,
            )
            context.next_actions = [self._navigate_to_target()]
            context.thoughts = "Interpretation unavailable; starting at the target URL"
            return context

        self._apply_interpretation(context, interpretation)
        return context

    def _apply_interpretation(self, context: ExecutionContext,
                              interpretation: GoalInterpretation) -> None:
        strategy = interpretation.strategy.to_strategy()
        if not strategy.current_objective:
            strategy.current_objective = self.goal.description
        context.current_strategy = strategy
        if interpretation.confidence:
            context.confidence = interpretation.confidence
        context.thoughts = interpretation.thoughts

        initial = (
            interpretation.initial_action.to_action()
            if interpretation.initial_action else self._navigate_to_target()
        )
        if initial.type == ActionType.NAVIGATE.value and not initial.url:
            initial.url = self.goal.target_url
        context.next_actions = [initial]

    def _navigate_to_target(self) -> MCPAction:
        return MCPAction(
            type=ActionType.NAVIGATE.value,
            url=self.goal.target_url,
            description=f"Navigate to {self.goal.target_url}",
            reasoning="Every test starts at the target page",
        )

    # One iteration

    def run_iteration(self, context: ExecutionContext, step_number: int) -> AgentStep:
        """Decide, validate, execute, record, evaluate and wait."""
        self.context_manager.optimize(context)

        detection = self.loop_detector.detect(context)
        if detection.is_loop:
            forced = self.loop_detector.apply_correction(context, detection)
            self.loops_detected += 1
            if self.run_logger:
                self.run_logger.print_loop(detection, forced)

        if context.next_actions:
            action = context.next_actions.pop(0)
            logger.info(f"Using queued action: {action.description}")
        else:
            action = self.decide_next_action(context)

        validation = self.validator.validate(action, context)
        if not validation.is_valid:
            logger.warning(f"Invalid action: {validation.reason} - generating alternative")
            action = self.generate_alternative_action(context, validation.reason)

        action.timeout = compute_action_timeout(
            action.type, context.phase, self.config.base_action_timeout_ms
        )
        logger.debug(f"Step {step_number} [{context.phase}]: {action.description} "
                     f"(timeout {action.timeout}ms)")

        started = self._clock()
        result = self.bridge.execute_action_with_analysis(action)
        duration = (self._clock() - started) * 1000

        self.update_context(context, action, result, duration)
        step = self.record_step(context, action, result, duration, step_number)

        self.evaluate_progress(context)

        wait_ms = compute_wait_ms(
            context.phase, result.success, context.confidence,
            self.config.base_wait_ms, self.config.min_wait_ms, self.config.max_wait_ms,
        )
        logger.debug(f"Waiting {wait_ms:.0f}ms [{context.phase}]")
        self._sleep(wait_ms / 1000)
        return step

    def decide_next_action(self, context: ExecutionContext) -> MCPAction:
        memory = self.context_manager.build_memory_text(context)
        decision = self.llm.decide_next_action(context, memory)

        context.execution_state.decision_factors = [f.to_factor() for f in decision.decision_factors]
        recommended = decision.phase_recommendation
        if recommended in PHASES and recommended != context.phase:
            logger.debug(f"Phase change: {context.phase} -> {recommended}")
            context.execution_state.current_phase = recommended
        return decision.action.to_action()

    def generate_alternative_action(self, context: ExecutionContext, reason: str) -> MCPAction:
        """Ask for a safe replacement; fall back to a plain wait."""
        try:
            alternative = self.llm.generate_alternative_action(context, reason)
        except LLMCollaboratorError as e:
            logger.warning(f"Could not generate alternative action: {e}")
            return fallback_wait_action()
        if alternative.type not in SAFE_ALTERNATIVE_TYPES:
            logger.warning(f"Alternative action '{alternative.type}' is not a safe type, waiting instead")
            return fallback_wait_action()
        return alternative

    # Context updates

    def update_context(self, context: ExecutionContext, action: MCPAction,
                       result: MCPResult, duration: float) -> None:
        """Absorb an action's result into the working memory."""
        context.page_state = result.page_context
        if result.page_context.url:
            context.current_url = result.page_context.url

        self.register_action_pattern(context, action, result)

        state = context.execution_state
        if result.success:
            context.adjust_confidence(5)
            state.exploration_budget -= 1
        else:
            context.adjust_confidence(-10)

        if result.success and state.current_phase == Phase.EXPLORATION.value:
            state.current_phase = Phase.FOCUSED.value
        elif (not result.success and state.current_phase != Phase.RECOVERY.value
              and state.adaptation_level > 0.7):
            state.current_phase = Phase.RECOVERY.value

        self.evaluate_strategy(context, action, result)

        outcome = "Success" if result.success else "Failure"
        self.context_manager.add_context_chunk(
            context,
            f"Action: {action.description} | Result: {outcome} | Duration: {duration:.0f}ms",
            type="action",
            importance=0.8 if result.success else 0.6,
            recency=1.0,
        )
        context.thoughts = self.generate_thoughts(context, action, result)

    def register_action_pattern(self, context: ExecutionContext, action: MCPAction,
                                result: MCPResult) -> None:
        memory = context.action_memory
        pattern = ActionPattern(
            action_sequence=[action.type],
            outcome="success" if result.success else "failure",
            page_context=result.page_context.url,
            confidence=0.8 if result.success else 0.3,
        )
        if result.success:
            memory.success_patterns = (memory.success_patterns + [pattern])[-MAX_PATTERNS:]
        else:
            memory.failure_patterns = (memory.failure_patterns + [pattern])[-MAX_PATTERNS:]

    def evaluate_strategy(self, context: ExecutionContext, action: MCPAction,
                          result: MCPResult) -> None:
        strategy = context.current_strategy
        if not result.success and strategy.approach != "fallback":
            strategy.approach = "fallback"
            strategy.current_objective = f"Try an alternative after failure in: {action.description}"

        if strategy.approach == "exploratory":
            text = result.page_context.visible_text.lower()
            found = [e for e in strategy.expected_elements if e and e.lower() in text]
            if found:
                strategy.approach = "direct"
                strategy.current_objective = f"Interact with the elements found: {', '.join(found)}"

    def generate_thoughts(self, context: ExecutionContext, action: MCPAction,
                          result: MCPResult) -> str:
        thoughts = [f"Executed: {action.description}"]
        if result.success:
            thoughts.append("Action succeeded")
            if result.changes:
                thoughts.append(f"Detected {len(result.changes)} page change(s)")
        else:
            thoughts.append(f"Action failed: {result.error}")
            thoughts.append("Strategy needs adjusting")
        if result.page_context.errors:
            thoughts.append(f"Page errors: {', '.join(result.page_context.errors)}")
        thoughts.append(f"Current confidence: {context.confidence:.0f}%")
        return " | ".join(thoughts)

    def record_step(self, context: ExecutionContext, action: MCPAction, result: MCPResult,
                    duration: float, step_number: int) -> AgentStep:
        """Append the step to history, count it and publish it."""
        step = AgentStep(
            id=f"{self.execution_id}-step-{step_number}",
            action=action,
            result=result,
            context=context.snapshot(),
            timestamp=datetime.now(),
            duration=duration,
            description=action.description,
        )
        context.execution_history.append(step)
        context.steps_executed += 1
        if result.success:
            context.steps_succeeded += 1
        else:
            context.steps_failed += 1

        if not self.stream.publish(step):
            logger.debug(f"Stream closed, step {step.id} not published")
        if self.run_logger:
            self.run_logger.log_step(step)
            self.run_logger.print_step(step)
        return step

    def evaluate_progress(self, context: ExecutionContext) -> None:
        """Merge the collaborator's evaluation. Failures only log."""
        try:
            evaluation = self.llm.evaluate_progress(context)
        except LLMCollaboratorError as e:
            logger.warning(f"Progress evaluation failed: {e}")
            return
        self.apply_evaluation(context, evaluation)

    def apply_evaluation(self, context: ExecutionContext, evaluation: ProgressEvaluation) -> None:
        # Completion is sticky: a forced completion is never undone
        context.is_complete = context.is_complete or evaluation.progress.is_complete
        context.adjust_confidence(evaluation.adaptations.confidence_adjustment)

        recommended = evaluation.adaptations.phase_recommendation
        if recommended in PHASES:
            context.execution_state.current_phase = recommended

        memory = context.action_memory
        for learning in evaluation.learnings:
            if learning.pattern and learning.confidence > 0.7:
                memory.success_patterns.append(ActionPattern(
                    action_sequence=[learning.pattern],
                    outcome="success" if learning.action else "neutral",
                    page_context=context.page_state.url,
                    confidence=learning.confidence,
                ))
        memory.success_patterns = memory.success_patterns[-MAX_PATTERNS:]

    # Failure handling

    def handle_step_error(self, context: ExecutionContext, error: Exception) -> None:
        """Record the failure and push the state machine into recovery."""
        self.last_error = str(error)
        memory = context.action_memory
        memory.failure_patterns.append(ActionPattern(
            action_sequence=[step.action.type for step in context.recent_steps(2)],
            outcome="failure",
            page_context=context.page_state.url,
            confidence=0.3,
        ))
        memory.failure_patterns = memory.failure_patterns[-MAX_PATTERNS:]

        context.adjust_confidence(-15)
        state = context.execution_state
        state.current_phase = Phase.RECOVERY.value
        state.adaptation_level = state.adaptation_level + 0.3

    def activate_recovery_mode(self, context: ExecutionContext) -> None:
        """Full reset after confidence collapsed."""
        logger.error("Confidence critically low, activating recovery mode")
        state = context.execution_state
        state.current_phase = Phase.RECOVERY.value
        state.adaptation_level = 1.0
        state.exploration_budget = RECOVERY_BUDGET
        context.current_strategy.current_objective = RECOVERY_OBJECTIVE
        context.confidence = RECOVERY_CONFIDENCE
        context.action_memory.loop_detection = []

    # Finalization

    def finalize(self, elapsed: float, error: Optional[str] = None) -> ExecutionSummary:
        context = self.context or self.new_context()
        summary = ExecutionSummary(
            execution_id=self.execution_id,
            goal=self.goal.description,
            is_complete=context.is_complete,
            total_steps=context.steps_executed,
            succeeded_steps=context.steps_succeeded,
            failed_steps=context.steps_failed,
            final_phase=context.phase,
            final_confidence=context.confidence,
            loops_detected=self.loops_detected,
            elapsed_seconds=elapsed,
            stopped=self.stopped and not context.is_complete,
            error=error,
        )
        logger.info(
            f"Execution {self.execution_id} finished: {summary.status}, "
            f"{summary.succeeded_steps}/{summary.total_steps} steps ok, "
            f"{summary.loops_detected} loop(s), phase {summary.final_phase}, "
            f"confidence {summary.final_confidence:.0f}%, {elapsed:.1f}s"
        )
        if self.run_logger:
            self.run_logger.write_summary(summary)
            self.run_logger.print_summary(summary)
        self.stream.finish(summary)
        return summary


@dataclass
class ExecutionRecord:
    execution_id: str
    goal: TestGoal
    agent: DynamicAgent
    stream: StepStream
    stop_event: threading.Event
    thread: Optional[threading.Thread] = None


class ExecutionOrchestrator:
    """Starts, tracks and stops executions over a shared tool-server pool.

    Usage:
        with ExecutionOrchestrator(config) as orchestrator:
            stream = orchestrator.start(goal)
            for step in stream:
                ...
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        manager: Optional[MCPManager] = None,
        llm_factory: Optional[Callable[[TestGoal], AgentLLM]] = None,
        run_logger_factory: Optional[Callable[[TestGoal], Optional[RunLogger]]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or AgentConfig()
        if manager is None:
            manager = MCPManager(
                request_timeout_s=self.config.request_timeout_s,
                stop_grace_s=self.config.stop_grace_s,
                startup_delay_s=self.config.startup_delay_s,
            )
            for server in default_servers(self.config):
                manager.register_server(server)
        self.manager = manager
        self.tools = PlaywrightTools(self.manager)

        self._llm_factory = llm_factory or self._default_llm
        self._run_logger_factory = run_logger_factory or self._default_run_logger
        self._sleep = sleep
        self._executions: dict[str, ExecutionRecord] = {}
        self._lock = threading.Lock()

    def _default_llm(self, goal: TestGoal) -> AgentLLM:
        provider_config = self.config.provider_config(goal.llm_provider, goal.model)
        is_valid, message = provider_config.validate()
        if not is_valid:
            raise LLMCollaboratorError(message)
        return AgentLLM(create_completer(provider_config, self.config.use_langchain))

    def _default_run_logger(self, goal: TestGoal) -> Optional[RunLogger]:
        if not self.config.log_runs:
            return None
        return RunLogger(goal.description, enable_console=False)

    def _create_record(self, goal: TestGoal) -> ExecutionRecord:
        execution_id = new_execution_id()
        stream = StepStream(execution_id)
        stop_event = threading.Event()
        agent = DynamicAgent(
            goal=goal,
            llm=self._llm_factory(goal),
            bridge=PageContextBridge(self.tools),
            config=self.config,
            execution_id=execution_id,
            stream=stream,
            run_logger=self._run_logger_factory(goal),
            stop_event=stop_event,
            sleep=self._sleep,
        )
        record = ExecutionRecord(execution_id, goal, agent, stream, stop_event)
        with self._lock:
            self._executions[execution_id] = record
        return record

    def _execute(self, record: ExecutionRecord) -> ExecutionSummary:
        try:
            return record.agent.run()
        finally:
            record.agent.llm.close()
            with self._lock:
                self._executions.pop(record.execution_id, None)

    def start(self, goal: TestGoal) -> StepStream:
        """Start an execution in the background and return its stream."""
        record = self._create_record(goal)
        record.thread = threading.Thread(
            target=self._execute, args=(record,),
            name=f"execution-{record.execution_id}", daemon=True,
        )
        record.thread.start()
        logger.info(f"Started execution {record.execution_id}")
        return record.stream

    def run(self, goal: TestGoal) -> ExecutionSummary:
        """Run an execution in the calling thread."""
        return self._execute(self._create_record(goal))

    def stop(self, execution_id: str) -> bool:
        """Stop an execution before its next iteration.

        Returns:
            True if the execution was running
        """
        with self._lock:
            record = self._executions.get(execution_id)
        if record is None:
            return False
        record.stop_event.set()
        record.stream.close()
        logger.info(f"Execution {execution_id} stop requested")
        return True

    def active_executions(self) -> list[str]:
        with self._lock:
            return list(self._executions)

    def health(self) -> dict:
        return self.tools.check_health()

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every execution, wait for them, then stop the tool servers."""
        with self._lock:
            records = list(self._executions.values())
        for record in records:
            self.stop(record.execution_id)
        for record in records:
            if record.thread is not None:
                record.thread.join(timeout)
        self.manager.close()

    def __enter__(self) -> "ExecutionOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
