"""
Tests for the stdio tool-server supervisor and RPC correlator.

These spawn tests/fake_tool_server.py with the current interpreter.
"""

import json
import logging
import time
from concurrent.futures import wait

import pytest

from webpilot.errors import (
    ProcessExitedError,
    RemoteError,
    RequestTimeoutError,
    ServerNotFoundError,
    ServerNotRunningError,
    TransportError,
)
from webpilot.mcp.manager import MCPManager
from webpilot.mcp.playwright import result_text
from webpilot.types import ServerConfig

from conftest import fake_server_config


class TestRegistry:
    """Tests for server registration."""

    def test_register_does_not_start(self, manager):
        """Registering a config only records it."""
        assert [c.name for c in manager.get_registered_servers()] == ["fake"]
        assert not manager.is_server_running("fake")

    def test_register_replaces_by_name(self, manager):
        """A second config under the same name wins."""
        manager.register_server(ServerConfig(name="fake", command="other"))
        configs = manager.get_registered_servers()
        assert len(configs) == 1
        assert configs[0].command == "other"

    def test_start_unknown_server(self, manager):
        """Starting an unregistered name fails."""
        with pytest.raises(ServerNotFoundError):
            manager.start_server("nope")

    def test_request_to_unknown_server(self, manager):
        with pytest.raises(ServerNotFoundError):
            manager.send_request("nope", "tools/list")

    def test_request_to_stopped_server(self, manager):
        """A registered but not running server rejects requests."""
        with pytest.raises(ServerNotRunningError):
            manager.send_request("fake", "tools/list")


class TestLifecycle:
    """Tests for start, stop and handshake."""

    def test_start_performs_handshake(self, running_manager):
        """After start the server answers tools/list."""
        assert running_manager.is_server_running("fake")
        tools = running_manager.list_tools("fake")
        assert [t["name"] for t in tools] == ["echo", "slow"]

    def test_start_twice_is_noop(self, running_manager):
        running_manager.start_server("fake")
        assert running_manager.is_server_running("fake")

    def test_failed_handshake_does_not_register(self):
        """A server that refuses initialize is terminated and not running."""
        mgr = MCPManager(request_timeout_s=5.0)
        mgr.register_server(fake_server_config(FAKE_FAIL_INIT="1"))
        try:
            with pytest.raises(TransportError):
                mgr.start_server("fake")
            assert not mgr.is_server_running("fake")
        finally:
            mgr.close()

    def test_spawn_failure(self):
        """A command that does not exist fails at start."""
        mgr = MCPManager()
        mgr.register_server(ServerConfig(name="missing", command="/nonexistent/webpilot-server"))
        try:
            with pytest.raises(TransportError):
                mgr.start_server("missing")
        finally:
            mgr.close()

    def test_stop_rejects_pending(self, running_manager):
        """Stopping a server fails every outstanding request."""
        future = running_manager.send_request(
            "fake", "tools/call", {"name": "hang", "arguments": {}}, timeout_s=30
        )
        assert running_manager.stop_server("fake") is True
        with pytest.raises(ProcessExitedError):
            future.result(timeout=5)
        assert not running_manager.is_server_running("fake")
        assert running_manager.pending_count("fake") == 0

    def test_stop_unknown_returns_false(self, manager):
        assert manager.stop_server("fake") is False

    def test_restart_after_stop(self, running_manager):
        """A stopped server can be started again."""
        running_manager.stop_server("fake")
        running_manager.start_server("fake")
        assert running_manager.call_tool("fake", "echo", {"n": 1})["content"]

    def test_context_manager_stops_servers(self):
        with MCPManager(request_timeout_s=5.0) as mgr:
            mgr.register_server(fake_server_config())
            mgr.start_server("fake")
        assert not mgr.is_server_running("fake")


class TestCorrelation:
    """Tests for request/response correlation."""

    def test_call_tool_returns_result(self, running_manager):
        result = running_manager.call_tool("fake", "echo", {"hello": "world"})
        assert json.loads(result_text(result)) == {"hello": "world"}

    def test_out_of_order_responses(self, running_manager):
        """A slow call issued first resolves after a fast call issued second."""
        slow = running_manager.send_request(
            "fake", "tools/call", {"name": "slow", "arguments": {"seconds": 0.5, "label": "slow"}}
        )
        fast = running_manager.send_request(
            "fake", "tools/call", {"name": "echo", "arguments": {"label": "fast"}}
        )
        assert "fast" in result_text(fast.result(timeout=5))
        assert not slow.done()
        assert result_text(slow.result(timeout=5)) == "slow"

    def test_concurrent_requests_all_resolve(self, running_manager):
        futures = [
            running_manager.send_request(
                "fake", "tools/call", {"name": "echo", "arguments": {"i": i}}
            )
            for i in range(20)
        ]
        done, not_done = wait(futures, timeout=10)
        assert not not_done
        values = sorted(json.loads(result_text(f.result()))["i"] for f in futures)
        assert values == list(range(20))
        assert running_manager.pending_count("fake") == 0

    def test_remote_error(self, running_manager):
        """An error object becomes RemoteError with the remote code."""
        with pytest.raises(RemoteError) as exc_info:
            running_manager.call_tool("fake", "fail")
        assert exc_info.value.code == -32000
        assert exc_info.value.remote_message == "tool failed"
        assert exc_info.value.data == {"tool": "fail"}
        assert running_manager.is_server_running("fake")


class TestTimeouts:
    """Tests for per-request timeouts."""

    def test_timeout_rejects_request(self, running_manager):
        started = time.monotonic()
        with pytest.raises(RequestTimeoutError) as exc_info:
            running_manager.call_tool("fake", "hang", timeout_s=0.3)
        assert time.monotonic() - started < 3
        assert exc_info.value.method == "tools/call"
        assert running_manager.pending_count("fake") == 0

    def test_timeout_is_a_timeout_error(self, running_manager):
        with pytest.raises(TimeoutError):
            running_manager.call_tool("fake", "hang", timeout_s=0.2)

    def test_late_response_is_ignored(self, running_manager, caplog):
        """A response after the timeout does not complete the request twice."""
        future = running_manager.send_request(
            "fake", "tools/call", {"name": "slow", "arguments": {"seconds": 0.5}}, timeout_s=0.1
        )
        with pytest.raises(RequestTimeoutError):
            future.result(timeout=5)
        with caplog.at_level(logging.WARNING, logger="webpilot.mcp.manager"):
            time.sleep(0.8)
        assert "unsolicited response" in caplog.text
        assert running_manager.is_server_running("fake")

    def test_server_survives_timeout(self, running_manager):
        with pytest.raises(RequestTimeoutError):
            running_manager.call_tool("fake", "hang", timeout_s=0.2)
        assert running_manager.call_tool("fake", "echo", {"ok": True})


class TestProcessExit:
    """Tests for unexpected child exits."""

    def test_crash_rejects_pending_and_unregisters(self, running_manager):
        hanging = running_manager.send_request(
            "fake", "tools/call", {"name": "hang", "arguments": {}}, timeout_s=30
        )
        crash = running_manager.send_request(
            "fake", "tools/call", {"name": "crash", "arguments": {}}, timeout_s=30
        )
        with pytest.raises(ProcessExitedError) as exc_info:
            crash.result(timeout=5)
        assert "code 3" in str(exc_info.value)
        with pytest.raises(ProcessExitedError):
            hanging.result(timeout=5)
        assert not running_manager.is_server_running("fake")
        with pytest.raises(ServerNotRunningError):
            running_manager.call_tool("fake", "echo")

    def test_can_restart_after_crash(self, running_manager):
        with pytest.raises(ProcessExitedError):
            running_manager.call_tool("fake", "crash")
        running_manager.start_server("fake")
        assert running_manager.call_tool("fake", "echo", {"back": True})


class TestProtocolNoise:
    """Tests for malformed lines, notifications and server requests."""

    def test_malformed_lines_are_skipped(self, running_manager, caplog):
        with caplog.at_level(logging.WARNING, logger="webpilot.mcp.manager"):
            result = running_manager.call_tool("fake", "garbage")
        assert result_text(result) == "after garbage"
        assert "invalid JSON" in caplog.text
        assert "not a JSON object" in caplog.text

    def test_object_id_is_skipped(self, running_manager, caplog):
        """A response with an unusable id is dropped and the reader keeps going."""
        with caplog.at_level(logging.WARNING, logger="webpilot.mcp.manager"):
            result = running_manager.call_tool("fake", "bad_id", timeout_s=5)
        assert result_text(result) == "after bad id"
        assert "invalid id" in caplog.text
        assert running_manager.is_server_running("fake")
        assert running_manager.call_tool("fake", "echo", {"still": "reading"}, timeout_s=5)

    def test_notifications_do_not_complete_requests(self, running_manager):
        result = running_manager.call_tool("fake", "notify")
        assert result_text(result) == "notified"

    def test_client_notification_expects_no_reply(self, running_manager):
        running_manager.send_notification("fake", "notifications/cancelled", {"requestId": 99})
        assert running_manager.pending_count("fake") == 0
        result = running_manager.call_tool("fake", "echo", {"after": "notification"})
        assert json.loads(result_text(result)) == {"after": "notification"}

    def test_notification_to_unknown_server(self, manager):
        with pytest.raises(ServerNotFoundError):
            manager.send_notification("nope", "notifications/initialized")

    def test_server_request_gets_method_not_found(self, running_manager):
        """Server-to-client requests are answered with -32601."""
        result = running_manager.call_tool("fake", "ask_client")
        assert result_text(result) == "-32601"

    def test_stderr_is_logged_at_debug(self, manager, caplog):
        with caplog.at_level(logging.DEBUG, logger="webpilot.mcp.manager"):
            manager.start_server("fake")
            manager.call_tool("fake", "echo")
            time.sleep(0.2)
        assert "[fake] fake tool server ready" in caplog.text
