"""
Minimal tool server speaking the tool protocol over stdio.

A tool server is a standalone process that:
1. Reads JSON-RPC messages from stdin, one per line
2. Answers `initialize`, then waits for `notifications/initialized`
3. Serves `tools/list` and `tools/call` from registered ToolHandlers
4. Writes JSON-RPC responses to stdout

To create a tool server:

    from mcp_relay.server import StdioToolServer, ToolHandler

    class ShoutTool(ToolHandler):
        name = "shout"
        description = "Upper-cases its input"
        parameters = {
            "text": {"type": "string", "description": "The input"},
        }
        required = ["text"]

        def handle(self, params: dict) -> str:
            return params["text"].upper()

    if __name__ == "__main__":
        server = StdioToolServer("shout-server")
        server.register(ShoutTool())
        server.run()
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, TextIO

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NOT_INITIALIZED = -32002


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Args:
            params: Dict of parameter name → value

        Returns:
            A string (sent as one text item) or any JSON-serializable
            value (sent as text plus structuredContent).
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool schema for discovery."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Functional requests before the handshake completes are rejected
    - Supports methods:
        - "initialize"                → protocol version, capabilities
        - "notifications/initialized" → marks the session ready
        - "tools/list"                → registered tool schemas
        - "tools/call"                → calls a tool by name with arguments
        - "ping"                      → health check
    """

    def __init__(self, name: str = "mcp-relay-server", version: str = "0.1.0"):
        self.name = name
        self.version = version
        self._handlers: dict[str, ToolHandler] = {}
        self._initialized = False

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """
        Main loop: read messages from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        stdin = stdin or sys.stdin
        self._out = stdout or sys.stdout
        logger.info(f"Tool server starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        for line in stdin:
            line = line.strip()
            if not line:
                continue

            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
                continue
            if not isinstance(message, dict):
                self._write_error(None, INVALID_REQUEST, "Request must be a JSON object")
                continue

            request_id = message.get("id")
            method = message.get("method", "")
            params = message.get("params") or {}

            if request_id is None:
                self._on_notification(method)
                continue

            try:
                result = self._dispatch(method, params)
                self._write_result(request_id, result)
            except _RpcError as e:
                self._write_error(request_id, e.code, str(e))
            except Exception as e:
                self._write_error(request_id, INTERNAL_ERROR, str(e))

    def _on_notification(self, method: str) -> None:
        if method == "notifications/initialized":
            self._initialized = True
            logger.info("Client initialized")

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method in ("tools/list", "tools/call") and not self._initialized:
            raise _RpcError(NOT_INITIALIZED, "Server not initialized")

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            tool_params = params.get("arguments") or {}

            handler = self._handlers.get(tool_name)
            if not handler:
                raise _RpcError(
                    INVALID_PARAMS,
                    f"Unknown tool: '{tool_name}'. "
                    f"Available: {list(self._handlers.keys())}",
                )

            try:
                output = handler.handle(tool_params)
            except Exception as e:
                return {"content": [{"type": "text", "text": str(e)}], "isError": True}
            return _to_call_result(output)

        raise _RpcError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })

    def _write(self, message: dict) -> None:
        self._out.write(json.dumps(message) + "\n")
        self._out.flush()


class _RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


def _to_call_result(output: Any) -> dict:
    if isinstance(output, str):
        return {"content": [{"type": "text", "text": output}]}
    result = {"content": [{"type": "text", "text": json.dumps(output)}]}
    if isinstance(output, dict):
        result["structuredContent"] = output
    return result
