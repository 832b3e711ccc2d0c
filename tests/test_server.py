"""
Tests for the stdio tool server, driven through in-memory streams
"""

import io
import json

from mcp_relay.server import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    NOT_INITIALIZED,
    PARSE_ERROR,
    StdioToolServer,
    ToolHandler,
)
from mcp_relay.servers.echo import EchoTool


class FailingTool(ToolHandler):
    name = "fail"
    description = "Always raises."

    def handle(self, params):
        raise RuntimeError("boom")


class StatsTool(ToolHandler):
    name = "stats"
    description = "Returns a dict."

    def handle(self, params):
        return {"count": len(params)}


INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}}
INITIALIZED = {"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}}


def _run(*messages):
    server = StdioToolServer("test-server")
    server.register(EchoTool())
    server.register(FailingTool())
    server.register(StatsTool())

    lines = [m if isinstance(m, str) else json.dumps(m) for m in messages]
    stdout = io.StringIO()
    server.run(stdin=io.StringIO("\n".join(lines) + "\n"), stdout=stdout)
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


def _call(request_id, name, arguments):
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }


def test_initialize_reports_server_info():
    (response,) = _run(INITIALIZE)
    assert response["id"] == 1
    assert response["result"]["serverInfo"] == {"name": "test-server", "version": "0.1.0"}
    assert response["result"]["capabilities"] == {"tools": {}}


def test_functional_requests_rejected_before_initialized():
    responses = _run(INITIALIZE, {"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    assert responses[1]["error"]["code"] == NOT_INITIALIZED


def test_full_session():
    responses = _run(
        INITIALIZE,
        INITIALIZED,
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
        _call(3, "echo", {"text": "hi"}),
    )

    # The notification gets no response
    assert [r["id"] for r in responses] == [1, 2, 3]
    names = [t["name"] for t in responses[1]["result"]["tools"]]
    assert names == ["echo", "fail", "stats"]
    assert responses[1]["result"]["tools"][0]["inputSchema"]["required"] == ["text"]
    assert responses[2]["result"] == {"content": [{"type": "text", "text": "hi"}]}


def test_handler_exception_is_tool_level_error():
    responses = _run(INITIALIZE, INITIALIZED, _call(2, "fail", {}))
    assert responses[1]["result"]["isError"] is True
    assert responses[1]["result"]["content"][0]["text"] == "boom"


def test_structured_output():
    responses = _run(INITIALIZE, INITIALIZED, _call(2, "stats", {"a": 1, "b": 2}))
    assert responses[1]["result"]["structuredContent"] == {"count": 2}


def test_unknown_tool_and_method():
    responses = _run(
        INITIALIZE,
        INITIALIZED,
        _call(2, "nope", {}),
        {"jsonrpc": "2.0", "id": 3, "method": "resources/list"},
    )
    assert responses[1]["error"]["code"] == INVALID_PARAMS
    assert "Unknown tool" in responses[1]["error"]["message"]
    assert responses[2]["error"]["code"] == METHOD_NOT_FOUND


def test_garbage_line_is_parse_error():
    responses = _run("not json", {"jsonrpc": "2.0", "id": 7, "method": "ping"})
    assert responses[0]["error"]["code"] == PARSE_ERROR
    assert responses[0]["id"] is None
    assert responses[1] == {"jsonrpc": "2.0", "id": 7, "result": {}}
