"""
Tool catalog — a flat, read-only view of every discovered tool.

The selection authority (an LLM router, a CLI, a LangChain agent)
sees tools as (server, tool, description, schema) records and does
not care which process serves them. The catalog derives that view
from the manager's READY connections; it owns no connections itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_relay.manager import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """One callable tool. `parameter_schema` is passed through untouched."""
    server_name: str
    tool_name: str
    description: str = ""
    parameter_schema: dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def from_tool(cls, server_name: str, tool: dict[str, Any]) -> "ToolDescriptor":
        """Build from one entry of a tools/list result."""
        schema = tool.get("inputSchema") or tool.get("parameters") or {}
        return cls(
            server_name=server_name,
            tool_name=str(tool["name"]),
            description=tool.get("description") or "",
            parameter_schema=schema if isinstance(schema, dict) else {},
        )

    @property
    def qualified_name(self) -> str:
        return f"{self.server_name}__{self.tool_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_name": self.server_name,
            "tool_name": self.tool_name,
            "description": self.description,
            "parameters": self.parameter_schema,
        }


class ToolCatalog:
    """
    Aggregates discovered tools across servers.

    Order follows server registration order, then the order each
    server listed its tools.
    """

    def __init__(self, manager: "ConnectionManager"):
        self.manager = manager

    def list_all(self) -> list[ToolDescriptor]:
        """Every READY connection's last-known tools, flattened."""
        tools: list[ToolDescriptor] = []
        for server_name in self.manager.list_servers():
            tools.extend(self.for_server(server_name))
        return tools

    def for_server(self, server_name: str) -> list[ToolDescriptor]:
        connection = self.manager.connection(server_name)
        if connection is None or not connection.is_ready:
            return []
        return list(connection.tools)

    def find(self, server_name: str, tool_name: str) -> ToolDescriptor | None:
        return next(
            (t for t in self.for_server(server_name) if t.tool_name == tool_name),
            None,
        )

    async def refresh(self, server_name: str) -> list[ToolDescriptor]:
        """Re-run discovery for one server and return its new tool list."""
        connection = await self.manager.get_connection(server_name)
        tools = await connection.discover_tools()
        logger.info(f"Refreshed {server_name}: {len(tools)} tool(s)")
        return tools

    def __len__(self) -> int:
        return len(self.list_all())
