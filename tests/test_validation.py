"""
Tests for pre-execution action validation.
"""

import pytest

from webpilot.errors import ActionValidationError
from webpilot.types import MCPAction, PageContext
from webpilot.validation import ActionValidator

from conftest import EXAMPLE_URL, make_context, make_step, with_history


@pytest.fixture
def validator():
    return ActionValidator()


class TestRepetition:
    """Tests for the history-based rules."""

    def test_first_action_is_valid(self, validator):
        action = MCPAction(type="navigate", url=EXAMPLE_URL, description="Open example")
        result = validator.validate(action, make_context())
        assert result.is_valid
        assert result.reason == "Valid action"

    def test_identical_action_rejected(self, validator):
        context = with_history(make_context(), make_step("click", "Press the menu", selector="e4"))
        action = MCPAction(type="click", selector="e4", description="Open navigation drawer")
        result = validator.validate(action, context)
        assert not result.is_valid
        assert "Identical action" in result.reason

    def test_identical_outside_window_allowed(self, validator):
        context = with_history(
            make_context(),
            make_step("click", "Press the menu", selector="e4"),
            make_step("fill", "Type email", selector="e2", value="a@b.c"),
            make_step("screenshot", "Capture form"),
            make_step("analyze", "Inspect layout"),
        )
        action = MCPAction(type="click", selector="e4", description="Open navigation drawer")
        assert validator.validate(action, context).is_valid

    def test_similar_description_rejected(self, validator):
        context = with_history(make_context(),
                               make_step("click", "Click the submit button", selector="e4"))
        action = MCPAction(type="click", selector="e9", description="Click the submit button again")
        result = validator.validate(action, context)
        assert not result.is_valid
        assert "Semantically similar" in result.reason

    def test_similar_description_different_type_allowed(self, validator):
        context = with_history(make_context(),
                               make_step("click", "Submit the signup form", selector="e4"))
        action = MCPAction(type="screenshot", description="Submit the signup form")
        assert validator.validate(action, context).is_valid

    def test_type_used_three_times(self, validator):
        context = with_history(
            make_context(),
            make_step("click", "Open pricing", selector="e1"),
            make_step("screenshot", "Capture pricing"),
            make_step("click", "Choose yearly", selector="e2"),
            make_step("wait", "Let animations finish"),
            make_step("click", "Accept cookies", selector="e3"),
        )
        action = MCPAction(type="click", selector="e7", description="Start trial")
        result = validator.validate(action, context)
        assert not result.is_valid
        assert "used 3x" in result.reason


class TestRequiredFields:
    """Tests for the per-type field rules."""

    def test_navigate_requires_url(self, validator):
        result = validator.validate(MCPAction(type="navigate", description="Go"), make_context())
        assert result.reason == "URL required for navigate"

    @pytest.mark.parametrize("action_type", ["click", "fill"])
    def test_selector_required(self, validator, action_type):
        action = MCPAction(type=action_type, value="x", description="Interact")
        assert not validator.validate(action, make_context()).is_valid

    def test_fill_requires_value(self, validator):
        action = MCPAction(type="fill", selector="e2", description="Type email")
        assert validator.validate(action, make_context()).reason == "Value required for fill"

    def test_fill_with_empty_value_allowed(self, validator):
        action = MCPAction(type="fill", selector="e2", value="", description="Clear email")
        assert validator.validate(action, make_context()).is_valid


class TestNavigationAndVerification:
    """Tests for the page-aware rules."""

    def test_navigate_to_current_url_rejected(self, validator):
        context = make_context(page_state=PageContext(url=EXAMPLE_URL))
        action = MCPAction(type="navigate", url="https://example.com", description="Open example")
        result = validator.validate(action, context)
        assert not result.is_valid
        assert "Already on the target URL" in result.reason

    def test_navigate_to_current_url_from_context(self, validator):
        context = make_context(current_url=EXAMPLE_URL)
        action = MCPAction(type="navigate", url=EXAMPLE_URL, description="Open example")
        assert not validator.validate(action, context).is_valid

    def test_third_verification_rejected(self, validator):
        context = with_history(make_context(),
                               make_step("assert", "Heading is visible", value="Example"),
                               make_step("extract", "Collect the links"))
        action = MCPAction(type="assert", value="More information", description="Link text present")
        result = validator.validate(action, context)
        assert not result.is_valid
        assert "consecutive verification" in result.reason

    def test_first_verification_allowed(self, validator):
        """An empty history does not count as a verification run."""
        action = MCPAction(type="assert", value="Example", description="Heading is visible")
        assert validator.validate(action, make_context()).is_valid

    def test_second_verification_allowed(self, validator):
        context = with_history(make_context(),
                               make_step("navigate", "Open example", url=EXAMPLE_URL),
                               make_step("assert", "Heading is visible", value="Example"))
        action = MCPAction(type="extract", description="Collect the links")
        assert validator.validate(action, context).is_valid


class TestCheck:
    def test_check_raises(self, validator):
        with pytest.raises(ActionValidationError, match="URL required"):
            validator.check(MCPAction(type="navigate", description="Go"), make_context())

    def test_check_passes(self, validator):
        validator.check(MCPAction(type="wait", value="500", description="Pause"), make_context())
