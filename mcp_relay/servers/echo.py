"""
Echo tool server — minimal reference implementation.

Use this as a template for building new tool servers.
It implements a single tool that echoes back its input,
useful for testing the client side end to end.

Launch:
    python -m mcp_relay.servers.echo

Test:
    printf '%s\\n' \\
      '{"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}' \\
      '{"jsonrpc":"2.0","method":"notifications/initialized","params":{}}' \\
      '{"jsonrpc":"2.0","id":2,"method":"tools/call","params":{"name":"echo","arguments":{"text":"hi"}}}' \\
      | python -m mcp_relay.servers.echo
"""

import logging
import sys

from mcp_relay.server import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input text. Useful for testing."
    parameters = {
        "text": {
            "type": "string",
            "description": "The text to echo back",
        },
    }
    required = ["text"]

    def handle(self, params: dict) -> str:
        return str(params.get("text", ""))


def main() -> None:
    # stdout carries protocol messages; logs go to stderr
    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s: %(message)s")
    server = StdioToolServer("echo")
    server.register(EchoTool())
    server.run()


if __name__ == "__main__":
    main()
