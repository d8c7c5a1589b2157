"""
Process supervisor and JSON-RPC transport for stdio MCP tool servers.

Each running server owns one child process, one stdout reader thread and
one stderr reader thread. Requests are correlated to responses purely by
id; every request completes exactly once, by its response, its timeout
timer, or the process going away.
"""

import atexit
import itertools
import json
import logging
import os
import shutil
import subprocess
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Optional

from .. import __version__
from ..errors import (
    ProcessExitedError,
    ProtocolError,
    RemoteError,
    RequestTimeoutError,
    ServerNotFoundError,
    ServerNotRunningError,
    TransportError,
)
from ..types import ServerConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC "method not found"
METHOD_NOT_FOUND = -32601


# Track all managers for cleanup on exit
_active_managers: list["MCPManager"] = []


def _cleanup_all_managers():
    """Stop every child process still owned by a live manager."""
    for manager in _active_managers[:]:
        try:
            manager.close()
        except Exception as e:
            logger.debug(f"Error during MCP manager cleanup: {e}")
    _active_managers.clear()


atexit.register(_cleanup_all_managers)


@dataclass
class PendingRequest:
    """An outstanding request waiting for its response."""
    id: int
    method: str
    future: Future
    created_at: float = field(default_factory=time.monotonic)
    timer: Optional[threading.Timer] = None


class ServerHandle:
    """The live state of one running tool server."""

    def __init__(self, config: ServerConfig, process: subprocess.Popen):
        self.config = config
        self.process = process
        self.pending: dict[int, PendingRequest] = {}
        self.closed = False
        self.stopping = False
        self.started_at = time.monotonic()

        self._ids = itertools.count(1)
        # Guards pending, closed and the id counter
        self.lock = threading.Lock()
        # One logical message per line on stdin
        self.write_lock = threading.Lock()

        self.stdout_thread: Optional[threading.Thread] = None
        self.stderr_thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return self.config.name

    def next_id(self) -> int:
        return next(self._ids)


class MCPManager:
    """Starts, stops and talks to named stdio tool servers.

    Usage:
        manager = MCPManager()
        manager.register_server(playwright_server_config())
        manager.start_server("playwright")
        tools = manager.list_tools("playwright")
        manager.close()
    """

    def __init__(
        self,
        request_timeout_s: float = 30.0,
        stop_grace_s: float = 5.0,
        startup_delay_s: float = 0.0,
    ):
        """Initialize the manager.

        Args:
            request_timeout_s: Default timeout for every request
            stop_grace_s: How long stop_server waits before force-killing
            startup_delay_s: Settle time between spawn and handshake
        """
        self.request_timeout_s = request_timeout_s
        self.stop_grace_s = stop_grace_s
        self.startup_delay_s = startup_delay_s

        self._configs: dict[str, ServerConfig] = {}
        self._servers: dict[str, ServerHandle] = {}
        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._closed = False

        _active_managers.append(self)

    # Registry

    def register_server(self, config: ServerConfig) -> None:
        """Add or replace a server configuration. Does not start anything."""
        with self._lock:
            replaced = config.name in self._configs
            self._configs[config.name] = config
        logger.info(f"{'Replaced' if replaced else 'Registered'} tool server config: {config.name}")

    def get_registered_servers(self) -> list[ServerConfig]:
        with self._lock:
            return list(self._configs.values())

    def is_server_running(self, name: str) -> bool:
        with self._lock:
            handle = self._servers.get(name)
        return handle is not None and not handle.closed

    def pending_count(self, name: str) -> int:
        """Number of requests still waiting on a server (0 if not running)."""
        with self._lock:
            handle = self._servers.get(name)
        if handle is None:
            return 0
        with handle.lock:
            return len(handle.pending)

    # Lifecycle

    def start_server(self, name: str) -> None:
        """Spawn a registered server and perform the MCP handshake.

        A server that is already running is left alone.

        Raises:
            ServerNotFoundError: If no config is registered under name
            TransportError: If the spawn or the handshake fails
        """
        with self._start_lock:
            if self.is_server_running(name):
                logger.debug(f"Tool server {name} already running")
                return

            with self._lock:
                config = self._configs.get(name)
            if config is None:
                raise ServerNotFoundError(name)

            handle = self._spawn(config)
            if self.startup_delay_s > 0:
                time.sleep(self.startup_delay_s)

            try:
                self._handshake(handle)
            except TransportError as e:
                self._terminate(handle, ProcessExitedError(name, "handshake failed"))
                raise TransportError(f"Tool server {name} failed to initialize: {e}") from e

            with self._lock:
                self._servers[name] = handle
            logger.info(f"Tool server {name} started (pid {handle.process.pid})")

    def _spawn(self, config: ServerConfig) -> ServerHandle:
        command = shutil.which(config.command) or config.command
        env = {**os.environ, **config.env}
        logger.debug(f"Spawning {config.name}: {command} {' '.join(config.args)}")
        try:
            process = subprocess.Popen(
                [command, *config.args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise TransportError(f"Failed to start tool server {config.name}: {e}") from e

        handle = ServerHandle(config, process)
        handle.stdout_thread = threading.Thread(
            target=self._read_stdout, args=(handle,),
            name=f"mcp-{config.name}-stdout", daemon=True,
        )
        handle.stderr_thread = threading.Thread(
            target=self._read_stderr, args=(handle,),
            name=f"mcp-{config.name}-stderr", daemon=True,
        )
        handle.stdout_thread.start()
        handle.stderr_thread.start()
        return handle

    def _handshake(self, handle: ServerHandle) -> None:
        params = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"sampling": {}},
            "clientInfo": {"name": "webpilot", "version": __version__},
        }
        result = self._request(handle, "initialize", params, self.request_timeout_s).result()
        server_info = (result or {}).get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.debug(f"{handle.name} initialized: {server_info}")
        self._notify(handle, "notifications/initialized", None)

    def stop_server(self, name: str) -> bool:
        """Stop a running server, rejecting everything still pending on it.

        Returns:
            True if a running server was stopped
        """
        with self._lock:
            handle = self._servers.pop(name, None)
        if handle is None:
            return False
        self._terminate(handle, ProcessExitedError(name, "server stopped"))
        logger.info(f"Tool server {name} stopped")
        return True

    def stop_all_servers(self) -> None:
        with self._lock:
            names = list(self._servers)
        for name in names:
            self.stop_server(name)

    def _terminate(self, handle: ServerHandle, reason: Exception) -> None:
        handle.stopping = True
        self._reject_all(handle, reason)

        process = handle.process
        try:
            if process.stdin and not process.stdin.closed:
                process.stdin.close()
        except OSError as e:
            logger.debug(f"Closing stdin of {handle.name} failed: {e}")

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.stop_grace_s)
            except subprocess.TimeoutExpired:
                logger.warning(f"Tool server {handle.name} ignored terminate, killing")
                process.kill()
                process.wait()

        for thread in (handle.stdout_thread, handle.stderr_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=1.0)

    def close(self) -> None:
        """Stop all servers. The manager can still be used afterwards."""
        self.stop_all_servers()
        if self in _active_managers:
            _active_managers.remove(self)

    def __enter__(self) -> "MCPManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Requests

    def _handle_for(self, name: str) -> ServerHandle:
        with self._lock:
            handle = self._servers.get(name)
            known = name in self._configs
        if handle is None or handle.closed:
            if not known:
                raise ServerNotFoundError(name)
            raise ServerNotRunningError(name)
        return handle

    def send_request(
        self,
        name: str,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Future:
        """Send a request and return a future for its result.

        The future resolves with the response's ``result`` or fails with
        RemoteError, RequestTimeoutError or ProcessExitedError.

        Raises:
            ServerNotRunningError: If the server is not running
        """
        handle = self._handle_for(name)
        return self._request(handle, method, params, timeout_s or self.request_timeout_s)

    def request(
        self,
        name: str,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        """Blocking form of send_request."""
        return self.send_request(name, method, params, timeout_s).result()

    def send_notification(self, name: str, method: str,
                          params: Optional[dict[str, Any]] = None) -> None:
        """Send a message that expects no response."""
        self._notify(self._handle_for(name), method, params)

    def list_tools(self, name: str) -> list[dict[str, Any]]:
        result = self.request(name, "tools/list", {})
        return (result or {}).get("tools", [])

    def call_tool(
        self,
        name: str,
        tool_name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> dict[str, Any]:
        """Invoke a tool and return the raw ``tools/call`` result."""
        params = {"name": tool_name, "arguments": arguments or {}}
        logger.debug(f"{name} <- {tool_name} {arguments}")
        return self.request(name, "tools/call", params, timeout_s) or {}

    def _request(self, handle: ServerHandle, method: str,
                 params: Optional[dict[str, Any]], timeout_s: float) -> Future:
        future: Future = Future()
        with handle.lock:
            if handle.closed:
                raise ProcessExitedError(handle.name)
            request_id = handle.next_id()
            pending = PendingRequest(id=request_id, method=method, future=future)
            pending.timer = threading.Timer(
                timeout_s, self._on_timeout, args=(handle, request_id, timeout_s)
            )
            pending.timer.daemon = True
            handle.pending[request_id] = pending
            pending.timer.start()

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            self._write(handle, message)
        except (OSError, ValueError) as e:
            self._complete(handle, request_id,
                           error=TransportError(f"Failed to write to {handle.name}: {e}"))
        return future

    def _notify(self, handle: ServerHandle, method: str,
                params: Optional[dict[str, Any]]) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._write(handle, message)
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to write to {handle.name}: {e}") from e

    def _write(self, handle: ServerHandle, message: dict[str, Any]) -> None:
        line = json.dumps(message, separators=(",", ":"))
        with handle.write_lock:
            stdin = handle.process.stdin
            if stdin is None or stdin.closed:
                raise ValueError("stdin is closed")
            stdin.write(line + "\n")
            stdin.flush()
        logger.debug(f"{handle.name} <<< {line[:500]}")

    def _complete(self, handle: ServerHandle, request_id: int,
                  result: Any = None, error: Optional[Exception] = None) -> bool:
        """Finish a pending request. Only the caller that pops it wins."""
        with handle.lock:
            pending = handle.pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _on_timeout(self, handle: ServerHandle, request_id: int, timeout_s: float) -> None:
        with handle.lock:
            pending = handle.pending.get(request_id)
        if pending is None:
            return
        error = RequestTimeoutError(handle.name, pending.method, request_id, timeout_s)
        if self._complete(handle, request_id, error=error):
            logger.warning(str(error))

    def _reject_all(self, handle: ServerHandle, reason: Exception) -> None:
        with handle.lock:
            handle.closed = True
            outstanding = list(handle.pending)
        for request_id in outstanding:
            self._complete(handle, request_id, error=reason)
        if outstanding:
            logger.warning(f"Rejected {len(outstanding)} pending request(s) on {handle.name}: {reason}")

    # Readers

    def _read_stdout(self, handle: ServerHandle) -> None:
        stdout = handle.process.stdout
        for raw in iter(stdout.readline, ""):
            line = raw.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                logger.warning(str(ProtocolError(handle.name, line, "invalid JSON")))
                continue
            if not isinstance(message, dict):
                logger.warning(str(ProtocolError(handle.name, line, "not a JSON object")))
                continue
            logger.debug(f"{handle.name} >>> {line[:500]}")
            try:
                self._dispatch(handle, message)
            except Exception:
                # A dispatch failure must not stop the reader
                logger.exception(f"{handle.name}: failed to dispatch {line[:120]!r}")

        returncode = handle.process.wait()
        self._on_exit(handle, returncode)

    def _read_stderr(self, handle: ServerHandle) -> None:
        for line in iter(handle.process.stderr.readline, ""):
            line = line.rstrip()
            if line:
                logger.debug(f"[{handle.name}] {line}")

    def _dispatch(self, handle: ServerHandle, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is not None and (
            isinstance(request_id, bool) or not isinstance(request_id, (int, str))
        ):
            logger.warning(str(ProtocolError(handle.name, json.dumps(message), "invalid id")))
            return
        has_id = request_id is not None
        if has_id and ("result" in message or "error" in message):
            error = None
            if "error" in message:
                err = message["error"] if isinstance(message["error"], dict) else {"message": str(message["error"])}
                error = RemoteError(err.get("code"), err.get("message", "unknown error"), err.get("data"))
            if not self._complete(handle, request_id, result=message.get("result"), error=error):
                logger.warning(f"{handle.name}: unsolicited response for id {request_id!r}")
        elif "method" in message and has_id:
            # Server-to-client requests are not supported
            logger.debug(f"{handle.name}: rejecting server request {message['method']}")
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message['method']}"},
            }
            try:
                self._write(handle, reply)
            except (OSError, ValueError) as e:
                logger.debug(f"{handle.name}: could not reply to server request: {e}")
        elif "method" in message:
            logger.debug(f"{handle.name} notification: {message['method']}")
        else:
            logger.warning(str(ProtocolError(handle.name, json.dumps(message), "unrecognized message")))

    def _on_exit(self, handle: ServerHandle, returncode: Optional[int]) -> None:
        with self._lock:
            if self._servers.get(handle.name) is handle:
                del self._servers[handle.name]
        if not handle.stopping:
            logger.warning(f"Tool server {handle.name} exited with code {returncode}")
        self._reject_all(
            handle, ProcessExitedError(handle.name, f"process exited with code {returncode}")
        )
