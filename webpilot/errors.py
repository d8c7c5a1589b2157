"""
Exception taxonomy for WebPilot.

Transport faults propagate to callers; everything else is recovered
somewhere inside the agent loop.
"""

from typing import Any, Optional


class WebPilotError(Exception):
    """Base class for all WebPilot errors."""


class TransportError(WebPilotError):
    """A tool-server process or its stdio channel failed."""


class ServerNotFoundError(TransportError):
    """No configuration is registered under the requested name."""

    def __init__(self, server_name: str):
        super().__init__(f"Tool server not registered: {server_name}")
        self.server_name = server_name


class ServerNotRunningError(TransportError):
    """A request targeted a server that is not running."""

    def __init__(self, server_name: str):
        super().__init__(f"Tool server is not running: {server_name}")
        self.server_name = server_name


class RequestTimeoutError(TransportError, TimeoutError):
    """No response arrived within the request's timeout window."""

    def __init__(self, server_name: str, method: str, request_id: int, timeout_s: float):
        super().__init__(
            f"Timeout waiting for {method} (id={request_id}) on {server_name} after {timeout_s:g}s"
        )
        self.server_name = server_name
        self.method = method
        self.request_id = request_id
        self.timeout_s = timeout_s


class ProcessExitedError(TransportError):
    """The tool-server process went away while a request was outstanding."""

    def __init__(self, server_name: str, detail: str = "process exited"):
        super().__init__(f"Tool server {server_name}: {detail}")
        self.server_name = server_name


class RemoteError(TransportError):
    """The tool server answered a request with an ``error`` object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"MCP error {code}: {message}" if code is not None else f"MCP error: {message}")
        self.code = code
        self.remote_message = message
        self.data = data


class ProtocolError(WebPilotError):
    """A line on the child's stdout was not a valid protocol message."""

    def __init__(self, server_name: str, line: str, reason: str):
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"{server_name}: {reason}: {preview!r}")
        self.server_name = server_name
        self.line = line


class ActionValidationError(WebPilotError):
    """An action was rejected before execution."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ActionExecutionError(WebPilotError):
    """A tool call reported failure. Folded into a failed MCPResult by the bridge."""


class LLMCollaboratorError(WebPilotError):
    """The LLM returned something unusable (or could not be reached)."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response
