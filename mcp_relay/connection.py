"""
One live connection to one tool server.

State machine:

    DISCONNECTED -> CONNECTING -> HANDSHAKE_PENDING -> READY
          \\______________\\__________________\\________\\-> FAILED

Spawn failure, handshake failure, process exit, or any request timeout
moves the connection to FAILED and terminates the process. A FAILED
connection is never reused; the manager replaces it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from mcp_relay.catalog import ToolDescriptor
from mcp_relay.config import ServerConfig, TimeoutPolicy
from mcp_relay.correlator import Correlator
from mcp_relay.errors import (
    ConnectionClosed,
    ConnectionNotReady,
    InvocationTimeout,
    RequestTimeout,
    ToolServerError,
)
from mcp_relay.handshake import HandshakeSequencer
from mcp_relay.transport import StdioTransport, Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKE_PENDING = "handshake_pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ToolResult:
    """Normalized tools/call result."""
    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    structured: Any = None
    raw: Any = None

    @property
    def text(self) -> str:
        """All text content items joined by newlines."""
        return "\n".join(
            str(item.get("text", "")) for item in self.content if item.get("type") == "text"
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"content": self.content, "isError": self.is_error}
        if self.structured is not None:
            data["structuredContent"] = self.structured
        return data

    @classmethod
    def normalize(cls, payload: Any) -> "ToolResult":
        """
        Fold the shapes servers actually return into one.

        Handles the standard `{"content": [...], "isError": ...}`
        result, bare content lists, plain strings, and arbitrary
        JSON objects (kept as `structured` and rendered as text).
        """
        if payload is None:
            return cls(raw=payload)

        if isinstance(payload, dict) and "content" in payload:
            return cls(
                content=_content_items(payload["content"]),
                is_error=bool(payload.get("isError", False)),
                structured=payload.get("structuredContent"),
                raw=payload,
            )

        if isinstance(payload, list) and all(isinstance(i, dict) and "type" in i for i in payload):
            return cls(content=list(payload), raw=payload)

        if isinstance(payload, str):
            return cls(content=[_text_item(payload)], raw=payload)

        return cls(
            content=[_text_item(json.dumps(payload))],
            structured=payload,
            raw=payload,
        )


def _text_item(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _content_items(content: Any) -> list[dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, str):
        return [_text_item(content)]
    if not isinstance(content, list):
        content = [content]
    items = []
    for item in content:
        if isinstance(item, dict):
            items.append(item)
        elif isinstance(item, str):
            items.append(_text_item(item))
        else:
            items.append(_text_item(json.dumps(item)))
    return items


TransportFactory = Callable[..., Transport]


class ServerConnection:
    """
    Transport + Correlator + HandshakeSequencer for one tool server.

    Usage:
        conn = ServerConnection(config)
        await conn.open()                   # spawn + handshake
        tools = await conn.discover_tools()
        result = await conn.call_tool("echo", {"text": "hi"})
        await conn.close()
    """

    def __init__(
        self,
        config: ServerConfig,
        timeouts: TimeoutPolicy | None = None,
        transport_factory: TransportFactory = StdioTransport,
        client_name: str | None = None,
    ):
        self.config = config
        self.timeouts = timeouts or TimeoutPolicy()
        self.state = ConnectionState.DISCONNECTED
        self.tools: list[ToolDescriptor] = []
        self.failure: BaseException | None = None
        self._closed = False

        self.transport = transport_factory(
            config.command_line,
            env=config.env or None,
            on_message=self._on_message,
            on_close=self._on_transport_closed,
            name=config.name,
        )
        self.correlator = Correlator(self.transport, config.name, on_timeout=self._on_request_timeout)
        handshake_kwargs = {"client_name": client_name} if client_name else {}
        self.handshake = HandshakeSequencer(self.correlator, **handshake_kwargs)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def server_info(self) -> dict[str, Any]:
        return self.handshake.server_info

    def __repr__(self) -> str:
        return f"<ServerConnection {self.name} {self.state.value}>"

    async def open(self) -> None:
        """
        Spawn the process and complete the handshake.

        Raises:
            SpawnFailure / HandshakeFailure: the connection is FAILED
                and its process (if any) has been terminated.
        """
        if self.state is not ConnectionState.DISCONNECTED or self._closed:
            raise ConnectionNotReady(f"{self.name}: open() called in state {self.state.value}", self.name)

        self.state = ConnectionState.CONNECTING
        try:
            await self.transport.start()
            self.state = ConnectionState.HANDSHAKE_PENDING
            await self.handshake.run(self.timeouts.handshake)
        except ToolServerError as e:
            logger.error(f"{self.name} | ERROR: failed to connect - {e}")
            await self._fail(e)
            raise
        except BaseException as e:
            # Cancellation mid-open must not leak the process
            await self._fail(e)
            raise

        if self.state is ConnectionState.HANDSHAKE_PENDING:
            self.state = ConnectionState.READY
        else:
            # Process exited right after the handshake
            raise self.failure or ConnectionClosed(f"{self.name} closed during handshake", self.name)

    async def discover_tools(self, timeout: float | None = None) -> list[ToolDescriptor]:
        """
        List the server's tools.

        A server that does not answer in time is treated as having no
        tools: the result is [] and the connection is FAILED.
        """
        self._require_ready("tools/list")
        timeout = timeout if timeout is not None else self.timeouts.discovery
        try:
            result = await self.correlator.request("tools/list", {}, timeout)
        except RequestTimeout:
            logger.error(f"Tool discovery timeout for {self.name} - server unavailable")
            return []
        except ConnectionClosed as e:
            logger.error(f"{self.name} closed during tool discovery: {e}")
            return []

        raw_tools = result.get("tools", []) if isinstance(result, dict) else result
        tools = []
        for tool in raw_tools or []:
            if not isinstance(tool, dict) or not tool.get("name"):
                logger.debug(f"{self.name}: skipping malformed tool entry {tool!r}")
                continue
            tools.append(ToolDescriptor.from_tool(self.name, tool))

        self.tools = tools
        if tools:
            logger.info(f"{self.name} | {' '.join(t.tool_name for t in tools)}")
        else:
            logger.warning(f"{self.name} | no tools discovered")
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Invoke one tool.

        Raises:
            InvocationTimeout: no answer within the call timeout. The
                process is torn down, so sibling calls on this
                connection fail with ConnectionClosed.
            ToolCallError: the server answered with a JSON-RPC error.
        """
        self._require_ready("tools/call")
        timeout = timeout if timeout is not None else self.timeouts.call_timeout_for(self.config)
        logger.info(f"Executing {name} on {self.name} with parameters: {arguments}")
        payload = await self.correlator.request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout,
            timeout_error=InvocationTimeout,
        )
        result = ToolResult.normalize(payload)
        logger.debug(f"Tool result received from {self.name}/{name}: {result.text[:500]}")
        return result

    async def close(self) -> None:
        """Terminate the process and fail anything still pending."""
        self._closed = True
        if self.state is not ConnectionState.FAILED:
            self.state = ConnectionState.DISCONNECTED
        try:
            await self.transport.close()
        finally:
            self.correlator.fail_all(ConnectionClosed(f"{self.name} connection closed", self.name))

    def _require_ready(self, method: str) -> None:
        if self.state is not ConnectionState.READY:
            raise ConnectionNotReady(
                f"{self.name}: cannot send {method} in state {self.state.value}", self.name
            )

    async def _fail(self, exc: BaseException) -> None:
        if self.failure is None:
            self.failure = exc
        self.state = ConnectionState.FAILED
        await self.close()

    async def _on_request_timeout(self, exc: RequestTimeout) -> None:
        # One process backs one connection; a stuck request kills both
        await self._fail(exc)

    def _on_message(self, message: dict[str, Any]) -> None:
        if not self.correlator.on_message(message) and "method" in message:
            logger.debug(f"{self.name}: ignoring server message {message.get('method')}")

    def _on_transport_closed(self, returncode: int | None) -> None:
        if self._closed:
            # close() fails the pending requests itself
            return
        if self.state is not ConnectionState.FAILED:
            logger.warning(f"{self.name} process closed (code: {returncode})")
            self.state = ConnectionState.FAILED
        stderr = getattr(self.transport, "stderr_tail", "")
        exc = ConnectionClosed(
            f"{self.name} process exited (code: {returncode}). stderr: {stderr[-500:]}",
            self.name,
        )
        if self.failure is None:
            self.failure = exc
        self.correlator.fail_all(exc)
