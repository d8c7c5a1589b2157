"""
Page context bridge: runs one action and reports what it did to the page.

execute_action_with_analysis never raises. Tool failures, transport
failures and capture failures all come back as a well-formed MCPResult.
"""

import logging
import time
from typing import Any, Callable, Optional

from ..errors import ActionExecutionError, WebPilotError
from ..types import ActionType, MCPAction, MCPResult, PageChange, PageContext, PerformanceMetrics
from ..utils import truncate_text
from .playwright import PlaywrightTools, parse_snapshot, result_image, result_text

logger = logging.getLogger(__name__)

# Only these action types pay for a screenshot
SCREENSHOT_ACTIONS = {
    ActionType.NAVIGATE.value,
    ActionType.CLICK.value,
    ActionType.FILL.value,
    ActionType.SCREENSHOT.value,
}

DEFAULT_WAIT_MS = 2000
MAX_ELEMENT_CHANGES = 10


class PageContextBridge:
    """Wraps each tool call with page capture, diffing and screenshots.

    One bridge per execution: it remembers the last captured page so it
    can report changes.
    """

    def __init__(self, tools: PlaywrightTools, capture_screenshots: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.tools = tools
        self.capture_screenshots = capture_screenshots
        self.previous_page_state: Optional[PageContext] = None
        self._clock = clock
        self._handlers: dict[str, Callable[[MCPAction, Optional[float]], Any]] = {
            ActionType.NAVIGATE.value: self._navigate,
            ActionType.CLICK.value: self._click,
            ActionType.FILL.value: self._fill,
            ActionType.SCREENSHOT.value: self._screenshot,
            ActionType.WAIT.value: self._wait,
            ActionType.ANALYZE.value: self._analyze,
            ActionType.ASSERT.value: self._assert,
            ActionType.EXTRACT.value: self._extract,
        }

    def execute_action_with_analysis(self, action: MCPAction) -> MCPResult:
        """Execute an action and capture the resulting page state.

        Args:
            action: The action to run; ``action.timeout`` (ms) bounds each
                underlying tool call

        Returns:
            MCPResult, with success False on any failure
        """
        start = self._clock()
        timeout_s = action.timeout / 1000 if action.timeout else None
        logger.debug(f"Executing {action.type}: {action.description}")

        try:
            success, data, error, raw = self._execute_raw(action, timeout_s)
            raw_ms = (self._clock() - start) * 1000

            capture_start = self._clock()
            page_context = self.capture_page_context(timeout_s)
            capture_ms = (self._clock() - capture_start) * 1000

            changes = self.detect_page_changes(page_context)
            page_context.has_changes = bool(changes)
            performance = PerformanceMetrics(
                load_time=round(raw_ms, 1),
                dom_content_loaded=round(capture_ms, 1),
                network_requests=0,
                errors=list(page_context.errors),
            )
            screenshot = self.capture_smart_screenshot(action, raw, timeout_s)

            duration = (self._clock() - start) * 1000
            self.previous_page_state = page_context
            logger.debug(f"{action.type} finished in {duration:.0f}ms (success={success})")
            return MCPResult(
                success=success,
                duration=duration,
                data=data,
                error=error,
                page_context=page_context,
                changes=changes,
                screenshot=screenshot,
                performance=performance,
            )
        except Exception as e:
            duration = (self._clock() - start) * 1000
            logger.error(f"Action {action.type} crashed during analysis: {e}")
            return MCPResult(
                success=False,
                duration=duration,
                error=str(e),
                page_context=PageContext.fallback(),
                performance=PerformanceMetrics(errors=["Failed to capture metrics"]),
            )

    def _execute_raw(self, action: MCPAction, timeout_s: Optional[float]):
        """Run the one tool behind an action type.

        Returns:
            (success, data, error, raw_tool_result)
        """
        handler = self._handlers.get(action.type)
        if handler is None:
            return False, None, f"Unsupported action type: {action.type}", None
        try:
            raw = handler(action, timeout_s)
        except (WebPilotError, ValueError) as e:
            logger.debug(f"{action.type} failed: {e}")
            return False, None, str(e), None

        if isinstance(raw, dict) and "content" in raw:
            return True, truncate_text(result_text(raw), 2000), None, raw
        return True, raw, None, None

    # Action handlers

    def _navigate(self, action, timeout_s):
        if not action.url:
            raise ActionExecutionError("URL required for navigate")
        return self.tools.navigate(action.url, timeout_s)

    def _click(self, action, timeout_s):
        if not action.selector:
            raise ActionExecutionError("Selector required for click")
        return self.tools.click(action.selector, timeout_s)

    def _fill(self, action, timeout_s):
        if not action.selector or action.value is None:
            raise ActionExecutionError("Selector and value required for fill")
        return self.tools.fill(action.selector, action.value, timeout_s)

    def _screenshot(self, action, timeout_s):
        return self.tools.screenshot("auto-screenshot.png", timeout_s)

    def _wait(self, action, timeout_s):
        wait_ms = int(action.value) if action.value else DEFAULT_WAIT_MS
        # The request must outlive the wait itself
        request_timeout = max(timeout_s or 0, wait_ms / 1000 + 5) if timeout_s else None
        self.tools.wait(wait_ms, request_timeout)
        return {"waited": wait_ms}

    def _analyze(self, action, timeout_s):
        page = parse_snapshot(self.tools.get_visible_text(timeout_s))
        return {
            "analysis": "Page analyzed",
            "url": page.url,
            "title": page.title,
            "links": len(page.links),
            "buttons": len(page.buttons),
            "fields": sum(len(form.fields) for form in page.forms),
            "textLength": len(page.visible_text),
        }

    def _assert(self, action, timeout_s):
        expected = action.value or action.selector
        if not expected:
            raise ActionExecutionError("Expected text required for assert")
        text = self.tools.get_visible_text(timeout_s)
        if expected.lower() not in text.lower():
            raise ActionExecutionError(f"Expected text not found: {expected!r}")
        return {"asserted": expected, "found": True}

    def _extract(self, action, timeout_s):
        snapshot = self.tools.get_visible_text(timeout_s)
        page = parse_snapshot(snapshot)
        if action.selector:
            needle = action.selector.lower()
            matches = [
                line.strip() for line in snapshot.splitlines()
                if needle in line.lower()
            ]
            return {"selector": action.selector, "matches": matches,
                    "text": truncate_text(page.visible_text, 2000)}
        return {"text": truncate_text(page.visible_text, 2000)}

    # Capture

    def capture_page_context(self, timeout_s: Optional[float] = None) -> PageContext:
        """Snapshot the page. Falls back to a safe context on failure."""
        try:
            context = parse_snapshot(self.tools.get_visible_text(timeout_s))
        except WebPilotError as e:
            logger.warning(f"Failed to capture page context: {e}")
            return PageContext.fallback()
        context.errors = self.detect_errors(timeout_s)
        return context

    def detect_errors(self, timeout_s: Optional[float] = None) -> list[str]:
        """Console lines tagged as errors."""
        try:
            lines = self.tools.get_console_logs(timeout_s)
        except WebPilotError as e:
            logger.debug(f"Console messages unavailable: {e}")
            return []
        return [line.strip() for line in lines if "[ERROR]" in line.upper()]

    def detect_page_changes(self, current: PageContext) -> list[PageChange]:
        """Diff a fresh context against the previously captured one."""
        previous = self.previous_page_state
        if previous is None:
            return []

        changes: list[PageChange] = []
        if previous.url != current.url:
            changes.append(PageChange(
                type="url_changed", old_value=previous.url, new_value=current.url,
            ))
        if previous.visible_text != current.visible_text:
            changes.append(PageChange(
                type="content_changed",
                old_value=previous.visible_text[:100],
                new_value=current.visible_text[:100],
            ))

        before = _element_labels(previous)
        after = _element_labels(current)
        for label in sorted(after - before)[:MAX_ELEMENT_CHANGES]:
            changes.append(PageChange(type="element_added", element=label, new_value=label))
        for label in sorted(before - after)[:MAX_ELEMENT_CHANGES]:
            changes.append(PageChange(type="element_removed", element=label, old_value=label))
        return changes

    def capture_smart_screenshot(self, action: MCPAction, raw: Optional[dict[str, Any]] = None,
                                 timeout_s: Optional[float] = None) -> Optional[str]:
        """Screenshot after state-changing actions only."""
        if not self.capture_screenshots or action.type not in SCREENSHOT_ACTIONS:
            return None
        if action.type == ActionType.SCREENSHOT.value and raw is not None:
            image = result_image(raw)
            if image:
                return image
        try:
            result = self.tools.screenshot(f"{action.type}-{int(time.time() * 1000)}.png", timeout_s)
        except WebPilotError as e:
            logger.warning(f"Screenshot failed: {e}")
            return None
        return result_image(result)

    def reset(self) -> None:
        self.previous_page_state = None


def _element_labels(context: PageContext) -> set[str]:
    labels = {f"link:{link.text}" for link in context.links if link.text}
    labels.update(f"button:{button.text}" for button in context.buttons if button.text)
    return labels
