"""
Failure taxonomy for tool-server connections.

Every exception raised by this package derives from ToolServerError,
so callers can catch one type at the routing boundary and still
branch on the specific failure when it matters (e.g. falling back to
a non-tool answer on InvocationTimeout).

Not everything that goes wrong is an exception:
  - a discovery timeout yields an empty tool list
  - an unparseable line from a child process is logged and dropped
"""

from __future__ import annotations

from typing import Any


class ToolServerError(Exception):
    """Base class for all tool-server failures."""

    def __init__(self, message: str, server_name: str | None = None):
        super().__init__(message)
        self.server_name = server_name


class ConfigError(ToolServerError):
    """Server configuration is missing or malformed."""


class UnknownServerError(ToolServerError, KeyError):
    """Server name is not present in the configuration."""

    def __str__(self) -> str:
        return self.args[0] if self.args else ""


class SpawnFailure(ToolServerError):
    """The server command could not be started."""


class HandshakeFailure(ToolServerError):
    """The server exited, rejected, or never answered `initialize`."""


class ConnectionClosed(ToolServerError):
    """The server process went away while requests were outstanding."""


class ConnectionNotReady(ToolServerError):
    """A functional call was attempted on a connection that is not Ready."""


class RequestTimeout(ToolServerError):
    """No response arrived for a request within its deadline."""

    def __init__(
        self,
        message: str,
        server_name: str | None = None,
        method: str | None = None,
        timeout: float | None = None,
    ):
        super().__init__(message, server_name)
        self.method = method
        self.timeout = timeout


class InvocationTimeout(RequestTimeout):
    """A tools/call request timed out (the tool was selected but is unreachable)."""


class ToolCallError(ToolServerError):
    """The server answered with a JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        server_name: str | None = None,
        code: int | None = None,
        data: Any = None,
    ):
        super().__init__(message, server_name)
        self.code = code
        self.data = data

    @classmethod
    def from_error(cls, error: Any, server_name: str | None = None) -> "ToolCallError":
        """Build from the `error` member of a JSON-RPC response."""
        if isinstance(error, dict):
            return cls(
                str(error.get("message", error)),
                server_name=server_name,
                code=error.get("code"),
                data=error.get("data"),
            )
        return cls(str(error), server_name=server_name)
