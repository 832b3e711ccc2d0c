"""
Tests for ServerConnection against real child processes
"""

import asyncio

import pytest

from mcp_relay.catalog import ToolDescriptor
from mcp_relay.config import TimeoutPolicy
from mcp_relay.connection import ConnectionState, ServerConnection, ToolResult
from mcp_relay.errors import (
    ConnectionClosed,
    ConnectionNotReady,
    HandshakeFailure,
    InvocationTimeout,
    SpawnFailure,
    ToolCallError,
)

from tests.conftest import dead_config, echo_config, misbehaving_config
from tests.fakes import FakeTransport, protocol_responder


class TestLifecycle:
    """State transitions and process cleanup"""

    @pytest.mark.asyncio
    async def test_open_reaches_ready(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        assert conn.state is ConnectionState.DISCONNECTED
        try:
            await conn.open()
            assert conn.state is ConnectionState.READY
            assert conn.server_info["serverInfo"]["name"] == "echo"
        finally:
            await conn.close()
        assert conn.state is ConnectionState.DISCONNECTED
        assert conn.transport.returncode is not None

    @pytest.mark.asyncio
    async def test_spawn_failure_marks_failed(self, timeouts):
        conn = ServerConnection(dead_config(), timeouts=timeouts)
        with pytest.raises(SpawnFailure):
            await conn.open()
        assert conn.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_handshake_that_never_completes_kills_process(self):
        conn = ServerConnection(misbehaving_config("silent"), timeouts=TimeoutPolicy(handshake=0.5))
        with pytest.raises(HandshakeFailure):
            await conn.open()
        assert conn.state is ConnectionState.FAILED
        assert not conn.transport.is_alive()
        assert conn.transport.returncode is not None

    @pytest.mark.asyncio
    async def test_rejected_handshake(self, timeouts):
        conn = ServerConnection(misbehaving_config("reject-init"), timeouts=timeouts)
        with pytest.raises(HandshakeFailure, match="unsupported client"):
            await conn.open()
        assert conn.state is ConnectionState.FAILED
        assert not conn.transport.is_alive()

    @pytest.mark.asyncio
    async def test_functional_calls_require_ready(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        with pytest.raises(ConnectionNotReady):
            await conn.discover_tools()
        with pytest.raises(ConnectionNotReady):
            await conn.call_tool("echo", {"text": "hi"})
        assert not conn.transport.is_alive()

    @pytest.mark.asyncio
    async def test_closed_connection_cannot_reopen(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        await conn.open()
        await conn.close()
        with pytest.raises(ConnectionNotReady):
            await conn.open()


class TestDiscovery:
    """tools/list"""

    @pytest.mark.asyncio
    async def test_discover_returns_tools_in_server_order(self, timeouts):
        conn = ServerConnection(misbehaving_config("strict", name="fake"), timeouts=timeouts)
        try:
            await conn.open()
            tools = await conn.discover_tools()
        finally:
            await conn.close()

        assert [t.tool_name for t in tools] == ["echo", "wait"]
        assert tools[0] == ToolDescriptor(
            server_name="fake",
            tool_name="echo",
            description="Echoes back the input text.",
            parameter_schema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        )
        assert conn.tools == tools

    @pytest.mark.asyncio
    async def test_discovery_timeout_returns_empty(self, timeouts):
        conn = ServerConnection(misbehaving_config("mute-after-init"), timeouts=timeouts)
        try:
            await conn.open()
            assert await conn.discover_tools(timeout=0.3) == []
            assert conn.state is ConnectionState.FAILED
            assert not conn.transport.is_alive()
        finally:
            await conn.close()

    @pytest.mark.asyncio
    async def test_noisy_output_does_not_break_discovery(self, timeouts):
        conn = ServerConnection(misbehaving_config("noisy"), timeouts=timeouts)
        try:
            await conn.open()
            tools = await conn.discover_tools()
            result = await conn.call_tool("echo", {"text": "through the noise"})
        finally:
            await conn.close()

        assert [t.tool_name for t in tools] == ["echo", "wait"]
        assert result.text == "through the noise"

    @pytest.mark.asyncio
    async def test_malformed_tool_entries_are_skipped(self):
        tools = [{"name": "ok", "parameters": {"type": "object"}}, {"description": "no name"}, "junk"]
        conn = ServerConnection(
            echo_config("fake"),
            transport_factory=lambda *a, **kw: FakeTransport(*a, responder=protocol_responder(tools), **kw),
        )
        await conn.open()
        found = await conn.discover_tools()
        await conn.close()

        assert [(t.tool_name, t.parameter_schema) for t in found] == [("ok", {"type": "object"})]


class TestInvocation:
    """tools/call"""

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        try:
            await conn.open()
            tools = await conn.discover_tools()
            result = await conn.call_tool("echo", {"text": "hi"})
        finally:
            await conn.close()

        assert [t.tool_name for t in tools] == ["echo"]
        assert result.content == [{"type": "text", "text": "hi"}]
        assert result.text == "hi"
        assert not result.is_error

    @pytest.mark.asyncio
    async def test_unknown_tool_is_tool_call_error(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        try:
            await conn.open()
            with pytest.raises(ToolCallError, match="Unknown tool"):
                await conn.call_tool("nope", {})
            # The connection survives a JSON-RPC error
            assert conn.is_ready
            assert (await conn.call_tool("echo", {"text": "still here"})).text == "still here"
        finally:
            await conn.close()

    @pytest.mark.asyncio
    async def test_content_only_response_is_normalized(self, timeouts):
        conn = ServerConnection(misbehaving_config("content-only"), timeouts=timeouts)
        try:
            await conn.open()
            result = await conn.call_tool("echo", {"text": "bare"})
        finally:
            await conn.close()
        assert result.text == "bare"

    @pytest.mark.asyncio
    async def test_concurrent_calls_on_one_connection(self, timeouts):
        conn = ServerConnection(echo_config(), timeouts=timeouts)
        try:
            await conn.open()
            results = await asyncio.gather(
                *(conn.call_tool("echo", {"text": f"msg-{i}"}) for i in range(5))
            )
        finally:
            await conn.close()
        assert [r.text for r in results] == [f"msg-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_invocation_timeout_fails_siblings(self, timeouts):
        conn = ServerConnection(misbehaving_config("normal"), timeouts=timeouts)
        await conn.open()
        try:
            sibling = asyncio.create_task(conn.call_tool("wait", {}, timeout=30))
            await asyncio.sleep(0.1)

            with pytest.raises(InvocationTimeout):
                await conn.call_tool("wait", {}, timeout=0.3)

            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(sibling, timeout=10)
            assert conn.state is ConnectionState.FAILED
            assert not conn.transport.is_alive()
        finally:
            await conn.close()

    @pytest.mark.asyncio
    async def test_process_exit_fails_pending_call(self, timeouts):
        conn = ServerConnection(misbehaving_config("exit-on-call"), timeouts=timeouts)
        await conn.open()
        try:
            with pytest.raises(ConnectionClosed):
                await conn.call_tool("echo", {"text": "bye"})
            assert conn.state is ConnectionState.FAILED
        finally:
            await conn.close()


class TestToolResult:
    """Result-shape normalization"""

    def test_standard_result(self):
        result = ToolResult.normalize({
            "content": [{"type": "text", "text": "a"}, {"type": "image", "data": "..."}, {"type": "text", "text": "b"}],
            "isError": True,
        })
        assert result.text == "a\nb"
        assert result.is_error

    def test_string_content(self):
        assert ToolResult.normalize({"content": "plain"}).content == [{"type": "text", "text": "plain"}]

    def test_plain_string(self):
        assert ToolResult.normalize("hello").text == "hello"

    def test_bare_content_list(self):
        items = [{"type": "text", "text": "x"}]
        assert ToolResult.normalize(items).content == items

    def test_arbitrary_object_is_structured(self):
        result = ToolResult.normalize({"echoed": "hi", "length": 2})
        assert result.structured == {"echoed": "hi", "length": 2}
        assert '"echoed": "hi"' in result.text

    def test_structured_content_kept(self):
        result = ToolResult.normalize({"content": [], "structuredContent": {"n": 1}})
        assert result.structured == {"n": 1}
        assert result.to_dict() == {"content": [], "isError": False, "structuredContent": {"n": 1}}

    def test_none(self):
        result = ToolResult.normalize(None)
        assert result.content == []
        assert result.text == ""
