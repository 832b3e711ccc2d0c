"""
Bridge between tool servers and a tool-selection authority.

Converts catalog entries into LangChain tools (for agents that pick
tools themselves) and into plain-text instruction blocks (for routers
that put the tool list into a prompt).

Usage:
    from mcp_relay.bridge import catalog_to_langchain_tools, tool_prompt_instructions

    await manager.connect_all()
    lc_tools = catalog_to_langchain_tools(manager)
    prompt = "\\n\\n".join(tool_prompt_instructions(t) for t in manager.catalog.list_all())
"""

from __future__ import annotations

import json
import logging
from typing import Any

from langchain_core.tools import StructuredTool

from mcp_relay.catalog import ToolDescriptor
from mcp_relay.errors import ToolServerError
from mcp_relay.manager import ConnectionManager

logger = logging.getLogger(__name__)


def to_langchain_tool(
    manager: ConnectionManager,
    descriptor: ToolDescriptor,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps a tool-server call.

    The returned tool, when invoked by an agent, sends tools/call
    through the manager (reusing the server's connection) and returns
    the result text.

    Args:
        manager: The ConnectionManager owning the server
        descriptor: The tool to wrap, as listed by the catalog
        description_override: Optional override for the tool description

    Returns:
        An async LangChain StructuredTool that proxies to the server.
    """
    server_name = descriptor.server_name
    tool_name = descriptor.tool_name
    description = (
        description_override
        or descriptor.description
        or f"Tool server tool: {server_name}/{tool_name}"
    )

    async def _call_tool(**kwargs: Any) -> str:
        """Proxy call to the tool server."""
        try:
            result = await manager.execute_tool(server_name, tool_name, kwargs)
        except ToolServerError as e:
            logger.warning(f"Error calling {server_name}/{tool_name}: {e}")
            return f"Error calling {server_name}/{tool_name}: {e}"
        if result.text:
            return result.text
        return json.dumps(result.to_dict(), indent=2)

    return StructuredTool.from_function(
        coroutine=_call_tool,
        name=descriptor.qualified_name,
        description=description,
        args_schema=descriptor.parameter_schema or {"type": "object", "properties": {}},
    )


def catalog_to_langchain_tools(manager: ConnectionManager) -> list[StructuredTool]:
    """Wrap every tool currently in the manager's catalog."""
    return [to_langchain_tool(manager, d) for d in manager.catalog.list_all()]


def tool_prompt_instructions(descriptor: ToolDescriptor) -> str:
    """Render one tool as a text block for a selection prompt."""
    params = descriptor.parameter_schema.get("properties", {}) or {}
    required = set(descriptor.parameter_schema.get("required", []) or [])

    lines = [f"## Tool: {descriptor.tool_name} (server: {descriptor.server_name})"]
    if descriptor.description:
        lines.append(descriptor.description)
    if params:
        lines.append("")
        lines.append("Parameters:")
        for pname, pinfo in params.items():
            pinfo = pinfo if isinstance(pinfo, dict) else {}
            ptype = pinfo.get("type", "any")
            pdesc = pinfo.get("description", "")
            marker = ", required" if pname in required else ""
            line = f"  - {pname} ({ptype}{marker})"
            if pdesc:
                line += f": {pdesc}"
            lines.append(line)

    return "\n".join(lines)
