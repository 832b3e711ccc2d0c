"""
Run Tools — end-to-end: config → tool servers → discovery → call.

This is the script that exercises the whole client. It:
1. Loads the server configuration (JSON or YAML, `mcpServers` mapping)
2. Connects to the requested servers (spawn + handshake + tools/list)
3. Prints the discovered tools, or
4. Executes one tool and prints its result
5. Shuts every server down

Usage:
    # Summary of all configured servers and their tools
    python run_tools.py --config mcp_config.json --list

    # Tools of one server, as prompt text for a router
    python run_tools.py --list --servers weather --prompt

    # Call a tool
    python run_tools.py --server echo --tool echo --args '{"text": "hi"}'

    # No connection reuse (fresh process per discovery/call)
    python run_tools.py --server echo --tool echo --args '{"text": "hi"}' --per-call
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from mcp_relay.bridge import tool_prompt_instructions
from mcp_relay.catalog import ToolDescriptor
from mcp_relay.config import TimeoutPolicy, load_config
from mcp_relay.errors import ConfigError, InvocationTimeout, ToolServerError
from mcp_relay.manager import ConnectionManager

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


async def list_tools(manager: ConnectionManager, server_names: list[str], as_prompt: bool) -> int:
    """Connect to the servers and print what they offer."""
    discovered: dict[str, list[ToolDescriptor]] = {}
    failed: set[str] = set()
    for name in server_names:
        try:
            discovered[name] = await manager.get_tools_for_server(name)
        except ToolServerError as e:
            logger.error(f"{name} | ERROR: {e}")
            discovered[name] = []
            failed.add(name)

    if as_prompt:
        for tools in discovered.values():
            for descriptor in tools:
                print(tool_prompt_instructions(descriptor))
                print()
        return 0

    print(f"\nServers ({len(discovered)}):\n")
    for name, tools in discovered.items():
        status = "failed" if name in failed else "ok"
        print(f"  {name:<30} {status} ({len(tools)} tools)")
        for tool in tools:
            print(f"    {tool.tool_name:<28} {tool.description}")
    print()
    return 1 if failed else 0


async def call_tool(manager: ConnectionManager, server: str, tool: str, arguments: dict) -> int:
    """Execute one tool and print its result."""
    try:
        result = await manager.execute_tool(server, tool, arguments)
    except InvocationTimeout as e:
        print(f"Tool execution timeout: {e}")
        return 2
    except ToolServerError as e:
        print(f"Tool execution failed: {e}")
        return 1

    print("=" * 60)
    print(result.text or json.dumps(result.to_dict(), indent=2))
    print("=" * 60)
    return 1 if result.is_error else 0


async def run(args: argparse.Namespace) -> int:
    configs = load_config(args.config)
    timeouts = TimeoutPolicy()
    if args.timeout:
        timeouts = TimeoutPolicy(call=args.timeout, remote_call=args.timeout)
    manager = ConnectionManager(configs, timeouts=timeouts, persistent=not args.per_call)

    try:
        if args.list:
            names = args.servers or manager.list_servers()
            return await list_tools(manager, names, args.prompt)

        try:
            arguments = json.loads(args.args) if args.args else {}
        except json.JSONDecodeError as e:
            print(f"Error: --args is not valid JSON: {e}")
            return 1
        return await call_tool(manager, args.server, args.tool, arguments)
    finally:
        await manager.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Discover and call tools on stdio tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_tools.py --list
  python run_tools.py --list --servers echo --prompt
  python run_tools.py --server echo --tool echo --args '{"text": "hi"}'
        """,
    )
    parser.add_argument("--config", "-c", type=str, default=None, help="Config file (default: $MCP_CONFIG_PATH or ./mcp_config.json)")
    parser.add_argument("--list", action="store_true", help="Connect and list servers and their tools")
    parser.add_argument("--servers", type=str, nargs="*", default=None, help="Which servers to list (default: all)")
    parser.add_argument("--prompt", action="store_true", help="With --list, print tools as prompt instructions")
    parser.add_argument("--server", "-s", type=str, help="Server to call")
    parser.add_argument("--tool", "-t", type=str, help="Tool to call")
    parser.add_argument("--args", "-a", type=str, default=None, help="Tool arguments as a JSON object")
    parser.add_argument("--timeout", type=float, default=None, help="Call timeout override in seconds")
    parser.add_argument("--per-call", action="store_true", help="Open a fresh server process for every call")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.list and not (args.server and args.tool):
        parser.error("--server and --tool are required (or use --list)")

    try:
        sys.exit(asyncio.run(run(args)))
    except (FileNotFoundError, ConfigError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
