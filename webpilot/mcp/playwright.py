"""
Typed facade over the Playwright MCP server's tools.

Every operation is a thin wrapper over ``tools/call`` with defaults suited
to that tool. Element-targeted tools take a snapshot first so the server
has fresh element refs, then pass the selector as both the human element
description and the ref.
"""

import logging
import re
import threading
import time
from typing import Any, Optional

from ..errors import ActionExecutionError
from ..types import ButtonInfo, FormField, FormInfo, LinkInfo, PageContext
from ..utils import clean_text
from .manager import MCPManager
from .servers import PLAYWRIGHT_SERVER

logger = logging.getLogger(__name__)


def result_text(result: Optional[dict[str, Any]]) -> str:
    """Concatenate the text items of a ``tools/call`` result."""
    if not result:
        return ""
    parts = [
        item.get("text", "")
        for item in result.get("content", [])
        if isinstance(item, dict) and item.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p)


def result_image(result: Optional[dict[str, Any]]) -> Optional[str]:
    """Return the base64 payload of the first image item, if any."""
    if not result:
        return None
    for item in result.get("content", []):
        if isinstance(item, dict) and item.get("type") == "image" and item.get("data"):
            return item["data"]
    return None


def check_tool_result(tool_name: str, result: dict[str, Any]) -> dict[str, Any]:
    """Raise ActionExecutionError if the tool reported failure."""
    if result.get("isError"):
        message = result_text(result) or "tool reported an error"
        raise ActionExecutionError(f"{tool_name} failed: {message}")
    return result


# - link "More information..." [ref=e6] [cursor=pointer]:
_ELEMENT_LINE = re.compile(
    r'^(?P<indent>\s*)-\s+(?P<role>[a-z]+)(?:\s+"(?P<name>(?:[^"\\]|\\.)*)")?(?P<rest>.*)$'
)
_REF = re.compile(r'\[ref=([^\]]+)\]')
_ATTRS = re.compile(r'\s*\[[^\]]*\]')
_URL_LINE = re.compile(r'^\s*-\s+/url:\s*(?P<url>\S+)')

FIELD_ROLES = {"textbox", "searchbox", "combobox", "checkbox", "radio", "spinbutton", "slider"}
BUTTON_ROLES = {"button", "menuitem", "tab"}
TEXT_ROLES = {"heading", "paragraph", "text", "cell", "listitem", "link", "button", "generic", "strong", "emphasis"}


def parse_snapshot(text: str) -> PageContext:
    """Build a PageContext from a ``browser_snapshot`` response.

    The response carries "Page URL:" and "Page Title:" lines followed by a
    YAML accessibility tree. Links, buttons and form fields are keyed by
    their element ref.

    Args:
        text: Text content of the snapshot result

    Returns:
        PageContext with loading_state "complete"
    """
    url_match = re.search(r'Page URL:[ \t]*(\S+)', text)
    title_match = re.search(r'Page Title:[ \t]*(.*)', text)

    links: list[LinkInfo] = []
    buttons: list[ButtonInfo] = []
    fields: list[FormField] = []
    visible: list[str] = []
    last_link: Optional[LinkInfo] = None

    for line in text.splitlines():
        url_line = _URL_LINE.match(line)
        if url_line:
            if last_link is not None and last_link.href is None:
                last_link.href = url_line.group("url")
            continue

        match = _ELEMENT_LINE.match(line)
        if not match:
            continue
        role = match.group("role")
        name = (match.group("name") or "").replace('\\"', '"')
        rest = match.group("rest") or ""
        ref_match = _REF.search(rest)
        ref = ref_match.group(1) if ref_match else name
        disabled = "[disabled]" in rest

        # Inline text after the trailing colon: "- paragraph [ref=e4]: Hello"
        inline = _ATTRS.sub("", rest).strip()
        inline = inline[1:].strip() if inline.startswith(":") else ""

        if role == "link":
            last_link = LinkInfo(selector=ref, text=name or inline)
            links.append(last_link)
        elif role in BUTTON_ROLES:
            buttons.append(ButtonInfo(selector=ref, text=name or inline, is_enabled=not disabled))
        elif role in FIELD_ROLES:
            fields.append(FormField(selector=ref, type=role, name=name or None))

        if role in TEXT_ROLES:
            for piece in (name, inline):
                if piece:
                    visible.append(piece)

    forms = [FormInfo(selector="page", fields=fields)] if fields else []
    return PageContext(
        url=url_match.group(1) if url_match else "",
        title=title_match.group(1).strip() if title_match else "",
        visible_text=clean_text(" ".join(visible)),
        forms=forms,
        buttons=buttons,
        links=links,
        loading_state="complete",
    )


class PlaywrightTools:
    """Named browser operations routed to the Playwright tool server.

    The server is started lazily on the first call.
    """

    def __init__(self, manager: MCPManager, server_name: str = PLAYWRIGHT_SERVER):
        self.manager = manager
        self.server_name = server_name
        self._start_lock = threading.Lock()

    def ensure_running(self) -> None:
        with self._start_lock:
            if not self.manager.is_server_running(self.server_name):
                logger.debug(f"Starting {self.server_name} tool server")
                self.manager.start_server(self.server_name)

    def call(self, tool_name: str, arguments: Optional[dict[str, Any]] = None,
             timeout_s: Optional[float] = None) -> dict[str, Any]:
        """Call a tool and return its raw result.

        Raises:
            ActionExecutionError: If the tool reported isError
            TransportError: If the request itself failed
        """
        self.ensure_running()
        try:
            result = self.manager.call_tool(self.server_name, tool_name, arguments, timeout_s)
        except Exception as e:
            logger.error(f"Playwright {tool_name} failed: {e}")
            raise
        return check_tool_result(tool_name, result)

    def list_tools(self) -> list[dict[str, Any]]:
        self.ensure_running()
        return self.manager.list_tools(self.server_name)

    # Navigation

    def navigate(self, url: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        # Page loads get twice the normal window
        timeout_s = timeout_s or self.manager.request_timeout_s * 2
        return self.call("browser_navigate", {"url": url}, timeout_s)

    def go_back(self, timeout_s: Optional[float] = None) -> dict[str, Any]:
        return self.call("browser_navigate_back", {}, timeout_s)

    def go_forward(self, timeout_s: Optional[float] = None) -> dict[str, Any]:
        return self.call("browser_navigate_forward", {}, timeout_s)

    def close_browser(self) -> dict[str, Any]:
        return self.call("browser_close", {})

    # Element interaction

    def snapshot(self, timeout_s: Optional[float] = None) -> dict[str, Any]:
        return self.call("browser_snapshot", {}, timeout_s)

    def click(self, selector: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        self.snapshot(timeout_s)
        return self.call("browser_click", {"element": selector, "ref": selector}, timeout_s)

    def fill(self, selector: str, value: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        self.snapshot(timeout_s)
        return self.call(
            "browser_type", {"element": selector, "ref": selector, "text": value}, timeout_s
        )

    def hover(self, selector: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        self.snapshot(timeout_s)
        return self.call("browser_hover", {"element": selector, "ref": selector}, timeout_s)

    def select(self, selector: str, value: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        self.snapshot(timeout_s)
        return self.call(
            "browser_select_option",
            {"element": selector, "ref": selector, "values": [value]},
            timeout_s,
        )

    def drag(self, source: str, target: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        self.snapshot(timeout_s)
        return self.call(
            "browser_drag",
            {"startElement": source, "startRef": source, "endElement": target, "endRef": target},
            timeout_s,
        )

    def press_key(self, key: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        return self.call("browser_press_key", {"key": key}, timeout_s)

    def wait(self, milliseconds: int, timeout_s: Optional[float] = None) -> dict[str, Any]:
        """Wait on the browser side. The tool takes seconds."""
        return self.call("browser_wait_for", {"time": milliseconds / 1000}, timeout_s)

    def evaluate(self, script: str, timeout_s: Optional[float] = None) -> dict[str, Any]:
        return self.call("browser_evaluate", {"function": script}, timeout_s)

    # Capture

    def screenshot(self, name: Optional[str] = None,
                   timeout_s: Optional[float] = None) -> dict[str, Any]:
        filename = name or f"screenshot-{int(time.time() * 1000)}.png"
        return self.call("browser_take_screenshot", {"filename": filename, "raw": False}, timeout_s)

    def get_visible_text(self, timeout_s: Optional[float] = None) -> str:
        return result_text(self.snapshot(timeout_s))

    def get_visible_html(self, timeout_s: Optional[float] = None) -> str:
        # The server exposes no raw HTML; the snapshot is the closest thing
        return result_text(self.snapshot(timeout_s))

    def get_console_logs(self, timeout_s: Optional[float] = None) -> list[str]:
        text = result_text(self.call("browser_console_messages", {}, timeout_s))
        return [line for line in text.splitlines() if line.strip()]

    def check_health(self) -> dict[str, Any]:
        """Report whether the tool server answers. Never raises.

        Returns:
            {"healthy": bool, "message": str}
        """
        try:
            tools = self.list_tools()
        except Exception as e:
            return {"healthy": False, "message": f"Playwright MCP unavailable: {e}"}
        return {
            "healthy": True,
            "message": f"Playwright MCP active with {len(tools)} tools available",
        }
