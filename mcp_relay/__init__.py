"""
mcp_relay — client side of stdio tool servers.

Architecture:
    ┌──────────────────┐     stdio      ┌──────────────┐
    │ ConnectionManager │ ──────────── │  Tool Server  │
    │  ServerConnection │  JSON-RPC    │  (subprocess) │
    └──────────────────┘     pipes     └──────────────┘

Each tool server is a standalone process that communicates via
stdin/stdout using newline-delimited JSON-RPC 2.0 messages.

A ServerConnection composes three pieces:
  - StdioTransport: owns the process, frames lines in and out
  - Correlator: matches responses to pending requests by id
  - HandshakeSequencer: initialize -> notifications/initialized

The ConnectionManager maps server names to connections, opens them
lazily, and never runs two connection attempts for one server at
once. The ToolCatalog flattens every discovered tool for a selection
authority (an LLM router or a LangChain agent).
"""

from mcp_relay.catalog import ToolCatalog, ToolDescriptor
from mcp_relay.config import ServerConfig, TimeoutPolicy, load_config
from mcp_relay.connection import ConnectionState, ServerConnection, ToolResult
from mcp_relay.errors import (
    ConfigError,
    ConnectionClosed,
    ConnectionNotReady,
    HandshakeFailure,
    InvocationTimeout,
    RequestTimeout,
    SpawnFailure,
    ToolCallError,
    ToolServerError,
    UnknownServerError,
)
from mcp_relay.manager import ConnectionManager

__version__ = "0.1.0"


# Bridge requires langchain; imported lazily so tool servers stay light
def to_langchain_tool(*args, **kwargs):
    from mcp_relay.bridge import to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def catalog_to_langchain_tools(*args, **kwargs):
    from mcp_relay.bridge import catalog_to_langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "ConfigError",
    "ConnectionClosed",
    "ConnectionManager",
    "ConnectionNotReady",
    "ConnectionState",
    "HandshakeFailure",
    "InvocationTimeout",
    "RequestTimeout",
    "ServerConfig",
    "ServerConnection",
    "SpawnFailure",
    "TimeoutPolicy",
    "ToolCallError",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolResult",
    "ToolServerError",
    "UnknownServerError",
    "catalog_to_langchain_tools",
    "load_config",
    "to_langchain_tool",
]
