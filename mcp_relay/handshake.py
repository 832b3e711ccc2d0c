"""
Protocol handshake.

A tool server must see, strictly in order:

    1. initialize                 (request, answered)
    2. notifications/initialized  (notification, no answer)

before it will serve tools/list or tools/call. Each step is gated on
the previous one settling; there are no fixed delays.
"""

from __future__ import annotations

import logging
from typing import Any

from mcp_relay.correlator import Correlator
from mcp_relay.errors import ConnectionClosed, HandshakeFailure, RequestTimeout, ToolCallError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcp-relay"
CLIENT_VERSION = "0.1.0"


class HandshakeSequencer:
    """Drives initialize -> initialized for one connection."""

    def __init__(
        self,
        correlator: Correlator,
        client_name: str = CLIENT_NAME,
        client_version: str = CLIENT_VERSION,
        capabilities: dict[str, Any] | None = None,
        protocol_version: str = PROTOCOL_VERSION,
    ):
        self.correlator = correlator
        self.client_name = client_name
        self.client_version = client_version
        self.capabilities = capabilities if capabilities is not None else {"tools": {}}
        self.protocol_version = protocol_version
        self.server_info: dict[str, Any] = {}
        self.completed = False

    def initialize_params(self) -> dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "clientInfo": {
                "name": self.client_name,
                "version": self.client_version,
            },
        }

    async def run(self, timeout: float) -> dict[str, Any]:
        """
        Perform the handshake.

        Returns:
            The server's `initialize` result (protocol version,
            capabilities, serverInfo).

        Raises:
            HandshakeFailure: the server rejected initialize, never
                answered it, or exited during the exchange.
        """
        server = self.correlator.server_name
        try:
            result = await self.correlator.request("initialize", self.initialize_params(), timeout)
        except RequestTimeout as e:
            raise HandshakeFailure(f"{server}: initialize timed out after {timeout:g}s", server) from e
        except ToolCallError as e:
            raise HandshakeFailure(f"{server}: initialize rejected: {e}", server) from e
        except ConnectionClosed as e:
            raise HandshakeFailure(f"{server}: exited during initialize: {e}", server) from e

        try:
            await self.correlator.notify("notifications/initialized")
        except ConnectionClosed as e:
            raise HandshakeFailure(f"{server}: exited before initialized notification: {e}", server) from e

        self.server_info = result if isinstance(result, dict) else {}
        self.completed = True
        version = self.server_info.get("protocolVersion", "?")
        logger.info(f"Handshake complete with {server} (protocol {version})")
        return self.server_info
