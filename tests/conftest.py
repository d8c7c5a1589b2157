"""
Shared fixtures for the WebPilot test suite.
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest

from webpilot.mcp.manager import MCPManager
from webpilot.types import (
    AgentStep,
    ExecutionContext,
    MCPAction,
    MCPResult,
    PageContext,
    ServerConfig,
)

FAKE_SERVER = Path(__file__).parent / "fake_tool_server.py"


def fake_server_config(name: str = "fake", **env: str) -> ServerConfig:
    """Launch config for the fake stdio tool server."""
    return ServerConfig(
        name=name,
        command=sys.executable,
        args=(str(FAKE_SERVER),),
        env=dict(env),
        description="Fake tool server for tests",
    )


@pytest.fixture
def manager():
    """A manager with the fake server registered (not started)."""
    mgr = MCPManager(request_timeout_s=5.0, stop_grace_s=2.0)
    mgr.register_server(fake_server_config())
    yield mgr
    mgr.close()


@pytest.fixture
def running_manager(manager):
    """A manager whose fake server has completed the handshake."""
    manager.start_server("fake")
    return manager


EXAMPLE_URL = "https://example.com/"
LOGIN_URL = "https://example.com/login"

EXAMPLE_SNAPSHOT = """### Page state
- Page URL: https://example.com/
- Page Title: Example Domain
- Page Snapshot:
```yaml
- generic [ref=e1]:
  - heading "Example Domain" [level=1] [ref=e2]
  - paragraph [ref=e3]: This domain is for use in illustrative examples.
  - paragraph [ref=e4]:
    - link "More information..." [ref=e5] [cursor=pointer]:
      - /url: https://www.iana.org/domains/example
```"""

LOGIN_SNAPSHOT = """### Page state
- Page URL: https://example.com/login
- Page Title: Login
- Page Snapshot:
```yaml
- heading "Sign in" [level=1] [ref=e1]
- textbox "Email" [ref=e2]
- textbox "Password" [ref=e3]
- button "Log in" [ref=e4] [cursor=pointer]
- button "Cancel" [disabled] [ref=e5]
- link "Forgot password?" [ref=e6]:
  - /url: /reset
```"""

# Base64 of the 8-byte PNG signature
PNG_B64 = "iVBORw0KGgo="


def text_result(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class ScriptedBrowser:
    """Stands in for MCPManager, answering Playwright tool calls from canned pages.

    Attributes:
        pages: URL -> snapshot text served after navigating there
        links: element ref -> URL that clicking it navigates to
        failures: tool name -> exception raised when that tool is called
        console: lines returned by browser_console_messages
        calls: (tool, arguments, timeout_s) for every call made
    """

    request_timeout_s = 30.0

    def __init__(self):
        self.pages = {EXAMPLE_URL: EXAMPLE_SNAPSHOT, LOGIN_URL: LOGIN_SNAPSHOT}
        self.links = {"e5": LOGIN_URL}
        self.failures: dict = {}
        self.console: list[str] = []
        self.calls: list[tuple] = []
        self.current = ""
        self.running = False

    def is_server_running(self, name: str) -> bool:
        return self.running

    def start_server(self, name: str) -> None:
        self.running = True

    def list_tools(self, name: str) -> list[dict]:
        return [{"name": "browser_navigate"}, {"name": "browser_snapshot"}, {"name": "browser_click"}]

    def page_text(self) -> str:
        if not self.current:
            return "### Page state\n- Page URL: about:blank\n- Page Title: \n"
        return self.pages.get(
            self.current,
            f"### Page state\n- Page URL: {self.current}\n- Page Title: Untitled\n",
        )

    def call_tool(self, name, tool_name, arguments=None, timeout_s=None):
        arguments = arguments or {}
        self.calls.append((tool_name, arguments, timeout_s))
        if tool_name in self.failures:
            raise self.failures[tool_name]

        if tool_name == "browser_navigate":
            self.current = arguments["url"]
            return text_result(f"Navigated to {self.current}\n{self.page_text()}")
        if tool_name == "browser_click" and arguments.get("ref") in self.links:
            self.current = self.links[arguments["ref"]]
            return text_result(self.page_text())
        if tool_name == "browser_snapshot":
            return text_result(self.page_text())
        if tool_name == "browser_take_screenshot":
            return {"content": [
                {"type": "text", "text": f"Took screenshot {arguments.get('filename')}"},
                {"type": "image", "data": PNG_B64, "mimeType": "image/png"},
            ]}
        if tool_name == "browser_console_messages":
            return text_result("\n".join(self.console))
        return text_result(f"{tool_name} done")

    def tool_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def close(self) -> None:
        self.running = False


@pytest.fixture
def browser():
    return ScriptedBrowser()


def make_context(goal: str = "Check the example page", target_url: str = EXAMPLE_URL,
                 **kwargs) -> ExecutionContext:
    return ExecutionContext(goal=goal, target_url=target_url, **kwargs)


def make_step(action_type: str, description: str = "", success: bool = True,
              index: int = 0, url: str = EXAMPLE_URL, **action_fields) -> AgentStep:
    """An executed step as it would sit in execution_history."""
    action = MCPAction(type=action_type, description=description or f"{action_type} #{index}",
                       **action_fields)
    result = MCPResult(
        success=success,
        duration=10.0,
        page_context=PageContext(url=url, loading_state="complete"),
        error=None if success else f"{action_type} failed",
    )
    return AgentStep(
        id=f"exec-test-step-{index}",
        action=action,
        result=result,
        context=make_context().snapshot(),
        timestamp=datetime.now(),
        duration=10.0,
        description=action.description,
    )


def with_history(context: ExecutionContext, *steps: AgentStep) -> ExecutionContext:
    context.execution_history.extend(steps)
    return context
