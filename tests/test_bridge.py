"""
Tests for the page context bridge.
"""

from unittest.mock import MagicMock

import pytest

from webpilot.errors import ProcessExitedError, RequestTimeoutError
from webpilot.mcp.bridge import PageContextBridge
from webpilot.mcp.playwright import PlaywrightTools
from webpilot.types import ActionType, MCPAction, PageContext

from conftest import EXAMPLE_URL, LOGIN_URL, PNG_B64


@pytest.fixture
def bridge(browser):
    return PageContextBridge(PlaywrightTools(browser))


def navigate(url=EXAMPLE_URL, **kwargs):
    return MCPAction(type=ActionType.NAVIGATE, url=url, description=f"Open {url}", **kwargs)


class TestExecuteAction:
    """Tests for execute_action_with_analysis."""

    def test_navigate_success(self, bridge, browser):
        result = bridge.execute_action_with_analysis(navigate())
        assert result.success
        assert result.error is None
        assert result.page_context.url == EXAMPLE_URL
        assert result.page_context.title == "Example Domain"
        assert "Navigated to" in result.data
        assert result.duration >= 0
        assert browser.tool_names()[0] == "browser_navigate"

    def test_first_action_has_no_changes(self, bridge):
        result = bridge.execute_action_with_analysis(navigate())
        assert result.changes == []
        assert not result.page_context.has_changes

    def test_navigate_without_url_fails(self, bridge, browser):
        result = bridge.execute_action_with_analysis(MCPAction(type="navigate", description="nowhere"))
        assert not result.success
        assert "URL required" in result.error
        assert "browser_navigate" not in browser.tool_names()

    def test_fill_requires_value(self, bridge):
        result = bridge.execute_action_with_analysis(
            MCPAction(type="fill", selector="e2", description="fill email")
        )
        assert not result.success
        assert "value required" in result.error

    def test_fill_accepts_empty_string(self, bridge, browser):
        """An empty value clears a field; only a missing value is an error."""
        result = bridge.execute_action_with_analysis(
            MCPAction(type="fill", selector="e2", value="", description="clear email")
        )
        assert result.success
        assert ("browser_type", {"element": "e2", "ref": "e2", "text": ""}) in [
            call[:2] for call in browser.calls
        ]

    def test_unknown_type(self, bridge):
        result = bridge.execute_action_with_analysis(MCPAction(type="teleport", description="?"))
        assert not result.success
        assert result.error == "Unsupported action type: teleport"

    def test_tool_failure_is_reported(self, bridge, browser):
        browser.failures["browser_click"] = RequestTimeoutError("playwright", "tools/call", 7, 5.0)
        browser.current = EXAMPLE_URL
        result = bridge.execute_action_with_analysis(
            MCPAction(type="click", selector="e5", description="click more")
        )
        assert not result.success
        assert "Timeout" in result.error
        # Page capture still ran after the failure
        assert result.page_context.url == EXAMPLE_URL

    def test_timeout_passed_to_tools(self, bridge, browser):
        bridge.execute_action_with_analysis(navigate(timeout=10000))
        assert browser.calls[0] == ("browser_navigate", {"url": EXAMPLE_URL}, 10.0)

    def test_wait_extends_request_timeout(self, bridge, browser):
        result = bridge.execute_action_with_analysis(
            MCPAction(type="wait", value="4000", timeout=1000, description="wait")
        )
        assert result.success
        assert result.data == {"waited": 4000}
        tool, args, timeout_s = browser.calls[0]
        assert (tool, args) == ("browser_wait_for", {"time": 4.0})
        assert timeout_s == 9.0

    def test_wait_with_bad_value_fails(self, bridge):
        result = bridge.execute_action_with_analysis(
            MCPAction(type="wait", value="soon", description="wait")
        )
        assert not result.success


class TestAssertAndExtract:
    """Tests for the read-only action handlers."""

    def test_assert_found_case_insensitive(self, bridge, browser):
        browser.current = EXAMPLE_URL
        result = bridge.execute_action_with_analysis(
            MCPAction(type="assert", value="example domain", description="heading shown")
        )
        assert result.success
        assert result.data == {"asserted": "example domain", "found": True}

    def test_assert_missing_text_fails(self, bridge, browser):
        browser.current = EXAMPLE_URL
        result = bridge.execute_action_with_analysis(
            MCPAction(type="assert", value="Welcome back", description="greeting shown")
        )
        assert not result.success
        assert "Expected text not found" in result.error

    def test_extract_filters_snapshot_lines(self, bridge, browser):
        browser.current = LOGIN_URL
        result = bridge.execute_action_with_analysis(
            MCPAction(type="extract", selector="password", description="extract password controls")
        )
        assert result.success
        assert result.data["matches"] == [
            '- textbox "Password" [ref=e3]',
            '- link "Forgot password?" [ref=e6]:',
        ]
        assert "Sign in" in result.data["text"]

    def test_analyze_counts(self, bridge, browser):
        browser.current = LOGIN_URL
        result = bridge.execute_action_with_analysis(MCPAction(type="analyze", description="look"))
        assert result.data["fields"] == 2
        assert result.data["buttons"] == 2
        assert result.data["links"] == 1


class TestChangeDetection:
    """Tests for page diffing between consecutive actions."""

    def test_url_and_element_changes(self, bridge):
        bridge.execute_action_with_analysis(navigate())
        result = bridge.execute_action_with_analysis(
            MCPAction(type="click", selector="e5", description="More information")
        )
        assert result.success
        types = [change.type for change in result.changes]
        assert "url_changed" in types
        assert "content_changed" in types
        added = {c.element for c in result.changes if c.type == "element_added"}
        removed = {c.element for c in result.changes if c.type == "element_removed"}
        assert "button:Log in" in added
        assert "link:More information..." in removed
        assert result.page_context.has_changes

    def test_no_changes_on_same_page(self, bridge):
        bridge.execute_action_with_analysis(navigate())
        result = bridge.execute_action_with_analysis(MCPAction(type="analyze", description="look"))
        assert result.changes == []

    def test_reset_forgets_previous_page(self, bridge):
        bridge.execute_action_with_analysis(navigate())
        bridge.reset()
        assert bridge.previous_page_state is None


class TestCapture:
    """Tests for page capture, console errors and screenshots."""

    def test_console_errors(self, bridge, browser):
        browser.console = ["[LOG] loaded", "[ERROR] Uncaught TypeError: x is undefined"]
        result = bridge.execute_action_with_analysis(navigate())
        assert result.page_context.errors == ["[ERROR] Uncaught TypeError: x is undefined"]
        assert result.performance.errors == result.page_context.errors

    def test_capture_failure_uses_fallback(self, bridge, browser):
        browser.failures["browser_snapshot"] = ProcessExitedError("playwright")
        result = bridge.execute_action_with_analysis(navigate())
        assert result.success
        assert result.page_context.loading_state == "error"
        assert result.page_context.title == "Capture failed"

    def test_screenshot_after_navigate(self, bridge, browser):
        result = bridge.execute_action_with_analysis(navigate())
        assert result.screenshot == PNG_B64
        assert "browser_take_screenshot" in browser.tool_names()

    def test_no_screenshot_for_wait(self, bridge, browser):
        result = bridge.execute_action_with_analysis(
            MCPAction(type="wait", value="500", description="pause")
        )
        assert result.screenshot is None
        assert "browser_take_screenshot" not in browser.tool_names()

    def test_screenshot_action_reuses_image(self, bridge, browser):
        result = bridge.execute_action_with_analysis(MCPAction(type="screenshot", description="shot"))
        assert result.screenshot == PNG_B64
        assert browser.tool_names().count("browser_take_screenshot") == 1

    def test_screenshots_disabled(self, browser):
        bridge = PageContextBridge(PlaywrightTools(browser), capture_screenshots=False)
        result = bridge.execute_action_with_analysis(navigate())
        assert result.screenshot is None

    def test_unexpected_crash_returns_failure(self, browser):
        """Any exception during analysis becomes a failed result."""
        bridge = PageContextBridge(PlaywrightTools(browser))
        bridge.detect_page_changes = MagicMock(side_effect=RuntimeError("diff exploded"))
        result = bridge.execute_action_with_analysis(navigate())
        assert not result.success
        assert result.error == "diff exploded"
        assert result.page_context.loading_state == "error"
        assert result.performance.errors == ["Failed to capture metrics"]


class TestPageContextFallback:
    def test_fallback_shape(self):
        page = PageContext.fallback("boom")
        assert page.url == ""
        assert page.errors == ["boom"]
        assert page.loading_state == "error"
