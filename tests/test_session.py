"""
Tests for the session protocol state machine.

Sessions are driven through a fake transport that records every outbound
message, so ordering can be asserted exactly.
"""

import asyncio
import json
import threading
import time
from types import SimpleNamespace

import pytest

from devtools_mcp.assembly import build_registry
from devtools_mcp.dispatcher import ToolContext
from devtools_mcp.host import HostContext
from devtools_mcp.jsonrpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VIOLATION,
    LATEST_PROTOCOL_VERSION,
)
from devtools_mcp.server import DevToolsMCPServer
from devtools_mcp.session import SessionState
from devtools_mcp.tool_registry import (
    ToolDefinition,
    ToolParameter,
    ToolParameterType,
    ToolRegistry,
    extract_descriptors,
)


class FakeTransport:
    """Collects outbound messages in order."""

    def __init__(self):
        self.outbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message):
        await self.outbox.put(message)

    async def next(self, timeout: float = 5.0):
        return await asyncio.wait_for(self.outbox.get(), timeout)


class SampleTools:
    """Handlers used by the session tests."""

    def __init__(self):
        self.echo_calls = 0
        self.release = threading.Event()
        self.blocking_started = threading.Event()

    def ping(self):
        return "pong"

    def echo(self, text: str):
        self.echo_calls += 1
        return {"echo": text}

    def fail(self):
        raise RuntimeError("boom")

    def tuple_keyed(self):
        return {("a", "b"): 1}

    def blocking(self):
        self.blocking_started.set()
        self.release.wait(5)
        return "released"

    def chatty(self, context: ToolContext):
        for step in range(1, 4):
            context.log(f"step {step}", step=step)
        context.progress(3, total=3)
        return "done"

    async def chatty_async(self, context: ToolContext):
        context.log("async step")
        await asyncio.sleep(0)
        return "async done"

    def definitions(self):
        return [
            ToolDefinition(name="ping", description="Replies pong", handler=self.ping),
            ToolDefinition(
                name="echo",
                description="Echoes text",
                handler=self.echo,
                parameters=[ToolParameter(name="text", type=ToolParameterType.STRING, required=True)],
            ),
            ToolDefinition(name="fail", description="Always raises", handler=self.fail),
            ToolDefinition(
                name="tuple_keyed",
                description="Returns a tuple-keyed mapping",
                handler=self.tuple_keyed,
            ),
            ToolDefinition(name="blocking", description="Blocks a worker", handler=self.blocking),
            ToolDefinition(
                name="chatty", description="Emits events", handler=self.chatty, uses_context=True
            ),
            ToolDefinition(
                name="chatty_async",
                description="Emits an event from a coroutine",
                handler=self.chatty_async,
                uses_context=True,
            ),
        ]


@pytest.fixture
def tools():
    """Sample tool handlers."""
    sample = SampleTools()
    yield sample
    sample.release.set()


@pytest.fixture
def server(tools):
    """Server over the sample tools."""
    registry = ToolRegistry(extract_descriptors(tools.definitions(), "sample"))
    mcp_server = DevToolsMCPServer(registry)
    yield mcp_server
    mcp_server.shutdown()


async def open_session(server):
    transport = FakeTransport()
    session = server.new_session(transport.send)
    await session.open()
    return session, transport


async def request(session, transport, id, method, params=None):
    message = {"jsonrpc": "2.0", "id": id, "method": method}
    if params is not None:
        message["params"] = params
    await session.receive(json.dumps(message))
    return await transport.next()


async def initialize(session, transport, **params):
    params.setdefault("protocolVersion", LATEST_PROTOCOL_VERSION)
    params.setdefault("clientInfo", {"name": "pytest", "version": "1.0"})
    return await request(session, transport, "init", "initialize", params)


class TestNegotiation:
    """Test the negotiating state."""

    @pytest.mark.asyncio
    async def test_open_moves_to_negotiating(self, server):
        """Test that accepting a connection starts negotiation."""
        session, _ = await open_session(server)
        assert session.state == SessionState.NEGOTIATING
        await session.close()

    @pytest.mark.asyncio
    async def test_initialize_result(self, server):
        """Test that initialize returns identity, version and features."""
        session, transport = await open_session(server)

        response = await initialize(session, transport)
        result = response["result"]

        assert response["id"] == "init"
        assert result["serverInfo"] == {"name": "Python Devtools MCP Server", "version": "1.0.0"}
        assert result["protocolVersion"] == LATEST_PROTOCOL_VERSION
        assert result["features"] == ["notifications", "tools.call", "tools.list"]
        assert result["capabilities"]["tools"] == {"listChanged": False}
        assert session.state == SessionState.READY

        await session.close()

    @pytest.mark.asyncio
    async def test_initialize_intersects_features(self, server):
        """Test that a caller feature list narrows the negotiated set."""
        session, transport = await open_session(server)

        response = await initialize(session, transport, features=["tools.list", "streaming"])

        assert response["result"]["features"] == ["tools.list"]
        assert session.negotiated_capabilities == frozenset({"tools.list"})

        await session.close()

    @pytest.mark.asyncio
    async def test_older_protocol_version_is_honoured(self, server):
        """Test protocol version negotiation with an older caller."""
        session, transport = await open_session(server)

        response = await initialize(session, transport, protocolVersion="2024-11-05")

        assert response["result"]["protocolVersion"] == "2024-11-05"
        await session.close()

    @pytest.mark.asyncio
    async def test_ping_before_initialize(self, server):
        """Test that ping is accepted while negotiating."""
        session, transport = await open_session(server)

        response = await request(session, transport, 1, "ping")

        assert response["result"] == {}
        assert session.state == SessionState.NEGOTIATING
        await session.close()

    @pytest.mark.asyncio
    async def test_invalid_initialize_params(self, server):
        """Test that malformed initialize params leave the session negotiating."""
        session, transport = await open_session(server)

        response = await request(session, transport, 1, "initialize", {"features": "tools.list"})

        assert response["error"]["code"] == INVALID_PARAMS
        assert session.state == SessionState.NEGOTIATING
        await session.close()


class TestProtocolViolations:
    """Test messages received out of their valid state."""

    @pytest.mark.asyncio
    async def test_call_before_initialize(self, server):
        """Test that tools/call before negotiation is rejected without a state change."""
        session, transport = await open_session(server)

        response = await request(session, transport, 1, "tools/call", {"name": "ping"})

        assert response["id"] == 1
        assert response["error"]["code"] == PROTOCOL_VIOLATION
        assert response["error"]["data"] == {
            "errorKind": "ProtocolViolation",
            "state": "negotiating",
        }
        assert session.state == SessionState.NEGOTIATING

        # Negotiation still works afterwards
        response = await initialize(session, transport)
        assert "result" in response
        await session.close()

    @pytest.mark.asyncio
    async def test_second_initialize(self, server):
        """Test that initialize in the ready state is a protocol violation."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await initialize(session, transport)

        assert response["error"]["code"] == PROTOCOL_VIOLATION
        assert response["error"]["data"]["state"] == "ready"
        assert session.state == SessionState.READY
        await session.close()

    @pytest.mark.asyncio
    async def test_feature_not_negotiated(self, server):
        """Test that tools/call is rejected when only tools.list was negotiated."""
        session, transport = await open_session(server)
        await initialize(session, transport, features=["tools.list"])

        response = await request(session, transport, 2, "tools/call", {"name": "ping"})

        assert response["error"]["code"] == PROTOCOL_VIOLATION
        assert session.state == SessionState.READY
        await session.close()

    @pytest.mark.asyncio
    async def test_shutdown_before_initialize(self, server):
        """Test that shutdown is only accepted once ready."""
        session, transport = await open_session(server)

        response = await request(session, transport, 1, "shutdown")

        assert response["error"]["code"] == PROTOCOL_VIOLATION
        assert not session.is_closed
        await session.close()


class TestMalformedMessages:
    """Test JSON-RPC level errors."""

    @pytest.mark.asyncio
    async def test_parse_error(self, server):
        """Test that invalid JSON yields a parse error."""
        session, transport = await open_session(server)

        await session.receive("not json")
        response = await transport.next()

        assert response["id"] is None
        assert response["error"]["code"] == PARSE_ERROR
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_method(self, server):
        """Test that unknown methods yield method-not-found."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 5, "resources/list")

        assert response["id"] == 5
        assert response["error"]["code"] == METHOD_NOT_FOUND
        await session.close()

    @pytest.mark.asyncio
    async def test_batch_rejected(self, server):
        """Test that batches are rejected."""
        session, transport = await open_session(server)

        await session.receive(json.dumps([{"jsonrpc": "2.0", "id": 1, "method": "ping"}]))
        response = await transport.next()

        assert response["error"]["code"] == INVALID_REQUEST
        await session.close()

    @pytest.mark.asyncio
    async def test_decoded_messages_accepted(self, server):
        """Test that transports may pass already decoded objects."""
        session, transport = await open_session(server)

        await session.receive({"jsonrpc": "2.0", "id": 9, "method": "ping"})
        response = await transport.next()

        assert response == {"jsonrpc": "2.0", "id": 9, "result": {}}
        await session.close()


class TestToolCalls:
    """Test tools/list and tools/call in the ready state."""

    @pytest.mark.asyncio
    async def test_ping_scenario(self, server):
        """Test listing tools and calling ping."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        listing = await request(session, transport, 1, "tools/list")
        tools = {tool["name"]: tool for tool in listing["result"]["tools"]}
        assert tools["ping"]["parameters"] == []

        response = await request(session, transport, 2, "tools/call", {"name": "ping"})

        assert response["result"]["ok"] is True
        assert response["result"]["value"] == "pong"
        assert response["result"]["isError"] is False
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_tool_keeps_session_ready(self, server):
        """Test that an unknown tool is an error result, not a session error."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "tools/call", {"name": "missing"})

        assert response["result"]["ok"] is False
        assert response["result"]["errorKind"] == "UnknownTool"
        assert session.state == SessionState.READY

        response = await request(session, transport, 2, "tools/call", {"name": "ping"})
        assert response["result"]["value"] == "pong"
        await session.close()

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, server, tools):
        """Test that missing arguments never reach the handler."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(
            session, transport, 1, "tools/call", {"name": "echo", "arguments": {}}
        )

        assert response["result"]["errorKind"] == "InvalidArguments"
        assert tools.echo_calls == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_unencodable_value_is_error_result(self, server):
        """Test that a value JSON cannot encode still yields one call result."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "tools/call", {"name": "tuple_keyed"})

        assert "error" not in response
        assert response["result"]["ok"] is False
        assert response["result"]["errorKind"] == "ExecutionFailed"
        assert response["result"]["isError"] is True
        json.dumps(response)

        response = await request(session, transport, 2, "tools/call", {"name": "ping"})
        assert response["result"]["value"] == "pong"
        await session.close()

    @pytest.mark.asyncio
    async def test_failure_then_success(self, server):
        """Test that a failing tool leaves the session usable."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        failed = await request(session, transport, 1, "tools/call", {"name": "fail"})
        succeeded = await request(
            session, transport, 2, "tools/call", {"name": "echo", "arguments": {"text": "hi"}}
        )

        assert failed["id"] == 1
        assert failed["result"]["ok"] is False
        assert failed["result"]["errorKind"] == "ExecutionFailed"
        assert failed["result"]["message"] == "boom"
        assert succeeded["id"] == 2
        assert succeeded["result"] == {
            "ok": True,
            "value": {"echo": "hi"},
            "content": [{"type": "text", "text": '{"echo": "hi"}'}],
            "isError": False,
        }
        await session.close()

    @pytest.mark.asyncio
    async def test_invalid_call_params(self, server):
        """Test that tools/call without a name is an invalid-params error."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "tools/call", {"arguments": {}})

        assert response["error"]["code"] == INVALID_PARAMS
        await session.close()

    @pytest.mark.asyncio
    async def test_responses_in_request_order(self, server):
        """Test that pipelined requests are answered in arrival order."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        for request_id, name in ((1, "fail"), (2, "ping"), (3, "missing")):
            await session.receive(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "tools/call",
                        "params": {"name": name},
                    }
                )
            )

        responses = [await transport.next() for _ in range(3)]

        assert [response["id"] for response in responses] == [1, 2, 3]
        await session.close()


class TestNotifications:
    """Test notification events emitted by tools."""

    @pytest.mark.asyncio
    async def test_events_precede_response(self, server):
        """Test that events from a worker thread arrive in order before the result."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        await session.receive(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": 7,
                    "method": "tools/call",
                    "params": {"name": "chatty", "_meta": {"progressToken": "tok"}},
                }
            )
        )

        messages = [await transport.next() for _ in range(5)]

        logs = messages[:3]
        assert [m["method"] for m in logs] == ["notifications/message"] * 3
        assert [m["params"]["data"]["step"] for m in logs] == [1, 2, 3]
        assert logs[0]["params"]["logger"] == "chatty"

        progress = messages[3]
        assert progress["method"] == "notifications/progress"
        assert progress["params"] == {"progressToken": "tok", "progress": 3, "total": 3}

        assert messages[4]["id"] == 7
        assert messages[4]["result"]["value"] == "done"
        await session.close()

    @pytest.mark.asyncio
    async def test_events_from_coroutine_tool(self, server):
        """Test that async tools emit on the session loop directly."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        await session.receive(
            json.dumps(
                {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "chatty_async"}}
            )
        )

        event = await transport.next()
        response = await transport.next()

        assert event["params"]["data"] == {"message": "async step"}
        assert response["result"]["value"] == "async done"
        await session.close()

    @pytest.mark.asyncio
    async def test_events_dropped_without_notifications_feature(self, server):
        """Test that no events are sent unless notifications were negotiated."""
        session, transport = await open_session(server)
        await initialize(session, transport, features=["tools.list", "tools.call"])

        response = await request(session, transport, 1, "tools/call", {"name": "chatty"})

        assert response["id"] == 1
        assert response["result"]["value"] == "done"
        assert transport.outbox.empty()
        await session.close()

    @pytest.mark.asyncio
    async def test_set_level_filters_log_events(self, server):
        """Test that logging/setLevel suppresses lower-severity events."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "logging/setLevel", {"level": "warning"})
        assert response["result"] == {}

        await session.receive(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": 2,
                    "method": "tools/call",
                    "params": {"name": "chatty", "_meta": {"progressToken": 2}},
                }
            )
        )

        progress = await transport.next()
        result = await transport.next()

        assert progress["method"] == "notifications/progress"
        assert result["id"] == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_set_level_rejects_unknown_level(self, server):
        """Test that an unknown level is an invalid-params error."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "logging/setLevel", {"level": "loud"})

        assert response["error"]["code"] == INVALID_PARAMS
        assert session.log_level == "info"
        await session.close()


class TestShutdown:
    """Test orderly shutdown and transport close."""

    @pytest.mark.asyncio
    async def test_shutdown_request(self, server):
        """Test that shutdown is answered and then closes the session."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        response = await request(session, transport, 1, "shutdown")
        await asyncio.wait_for(session.wait_closed(), 5)

        assert response == {"jsonrpc": "2.0", "id": 1, "result": {}}
        assert session.state == SessionState.CLOSED

        # No further messages are accepted
        await session.receive(json.dumps({"jsonrpc": "2.0", "id": 2, "method": "ping"}))
        await asyncio.sleep(0.05)
        assert transport.outbox.empty()

    @pytest.mark.asyncio
    async def test_server_stop_notifies_ready_session(self, server):
        """Test that a server-side close sends a shutdown notification."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        await session.close("server_stopped", notify=True)

        notification = await transport.next()
        assert notification["method"] == "shutdown"
        assert notification["params"] == {"reason": "server_stopped"}
        assert session.is_closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server):
        """Test that closing twice is harmless."""
        session, _ = await open_session(server)

        await session.close()
        await session.close()

        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_call(self, server, tools):
        """Test that transport close during a blocking call drops its response."""
        session, transport = await open_session(server)
        await initialize(session, transport)

        await session.receive(
            json.dumps(
                {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "blocking"}}
            )
        )
        assert await asyncio.to_thread(tools.blocking_started.wait, 5)

        # The transport can still close the session while the worker is busy
        await asyncio.wait_for(session.close(), 5)
        tools.release.set()
        await asyncio.sleep(0.05)

        assert session.is_closed
        assert transport.outbox.empty()


class TestConcurrentSessions:
    """Test that sessions are independent."""

    @pytest.mark.asyncio
    async def test_slow_call_does_not_block_other_session(self, server, tools):
        """Test that one session's blocking call does not starve another."""
        first, first_transport = await open_session(server)
        second, second_transport = await open_session(server)
        await initialize(first, first_transport)
        await initialize(second, second_transport)

        await first.receive(
            json.dumps(
                {"jsonrpc": "2.0", "id": "slow", "method": "tools/call", "params": {"name": "blocking"}}
            )
        )
        assert await asyncio.to_thread(tools.blocking_started.wait, 5)

        started = time.perf_counter()
        listing = await request(second, second_transport, "list", "tools/list")
        pong = await request(second, second_transport, "ping", "tools/call", {"name": "ping"})

        assert time.perf_counter() - started < 2
        assert len(listing["result"]["tools"]) == len(server.registry)
        assert pong["result"]["value"] == "pong"
        assert first_transport.outbox.empty()

        tools.release.set()
        slow = await first_transport.next()
        assert slow["id"] == "slow"
        assert slow["result"]["value"] == "released"

        await first.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_sessions_see_identical_tool_lists(self, server):
        """Test that every session lists the same tools."""
        listings = []
        for _ in range(3):
            session, transport = await open_session(server)
            await initialize(session, transport)
            response = await request(session, transport, 1, "tools/list")
            listings.append([tool["name"] for tool in response["result"]["tools"]])
            await session.close()

        assert listings[0] == listings[1] == listings[2]
        assert set(listings[0]) == set(server.registry.names())


class TestGatedGroups:
    """Test that inactive provider groups are invisible to sessions."""

    @pytest.mark.asyncio
    async def test_wsgi_group_absent_without_wsgi_app(self):
        """Test that routing tools of an absent WSGI app are neither listed nor callable."""
        host = HostContext(name="no-wsgi", include_environment=False)
        mcp_server = DevToolsMCPServer(build_registry(host))

        try:
            session, transport = await open_session(mcp_server)
            await initialize(session, transport)

            listing = await request(session, transport, 1, "tools/list")
            names = [tool["name"] for tool in listing["result"]["tools"]]
            assert "get_active_profiles" in names
            assert "get_wsgi_routes" not in names

            response = await request(
                session, transport, 2, "tools/call", {"name": "get_wsgi_routes"}
            )
            assert response["result"]["ok"] is False
            assert response["result"]["errorKind"] == "UnknownTool"
            assert session.state == SessionState.READY

            await session.close()
        finally:
            mcp_server.shutdown()

    @pytest.mark.asyncio
    async def test_wsgi_group_present_with_wsgi_app(self):
        """Test that the same tool is served once a WSGI app is on the host."""
        wsgi_app = SimpleNamespace(
            url_map=SimpleNamespace(iter_rules=lambda: []), view_functions={}
        )
        host = HostContext(name="wsgi", wsgi_app=wsgi_app, include_environment=False)
        mcp_server = DevToolsMCPServer(build_registry(host))

        try:
            session, transport = await open_session(mcp_server)
            await initialize(session, transport)

            response = await request(
                session, transport, 1, "tools/call", {"name": "get_wsgi_routes"}
            )
            assert response["result"]["ok"] is True
            assert response["result"]["value"] == []

            await session.close()
        finally:
            mcp_server.shutdown()
