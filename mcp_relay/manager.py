"""
Connection Manager — owns every tool-server connection.

The manager is the single source of truth mapping server name to a
live ServerConnection. Connections are opened lazily on first use,
and concurrent callers asking for the same server share one attempt:
no matter how many coroutines ask at once, one process is spawned.

Usage:
    manager = ConnectionManager.from_config_file("mcp_config.json")

    # Discover (connects on first use)
    tools = await manager.get_tools_for_server("weather")

    # Call a tool
    result = await manager.execute_tool("weather", "get_forecast", {"city": "Oslo"})
    print(result.text)

    # Stop everything
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Iterable

from mcp_relay.catalog import ToolCatalog, ToolDescriptor
from mcp_relay.config import ServerConfig, TimeoutPolicy, load_config
from mcp_relay.connection import ServerConnection, ToolResult, TransportFactory
from mcp_relay.errors import ConnectionNotReady, ToolServerError, UnknownServerError
from mcp_relay.transport import StdioTransport

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages the lifecycle of tool-server connections.

    Responsibilities:
    - Lazily spawn servers and run the handshake + discovery once
    - Deduplicate concurrent connection attempts per server
    - Route tool calls to the correct server
    - Evict failed connections so the next caller retries
    - Graceful shutdown

    With `persistent=False` nothing is cached: every discovery or call
    opens a fresh connection and closes it afterwards. Calls for the
    same server are serialized so that still at most one process per
    server exists at a time.
    """

    def __init__(
        self,
        configs: dict[str, ServerConfig] | Iterable[ServerConfig] | None = None,
        timeouts: TimeoutPolicy | None = None,
        persistent: bool = True,
        transport_factory: TransportFactory = StdioTransport,
        client_name: str | None = None,
    ):
        self.timeouts = timeouts or TimeoutPolicy()
        self.persistent = persistent
        self.transport_factory = transport_factory
        self.client_name = client_name
        self.catalog = ToolCatalog(self)

        self._configs: dict[str, ServerConfig] = {}
        self._connections: dict[str, ServerConnection] = {}
        self._connecting: dict[str, asyncio.Task] = {}
        self._per_call_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        if isinstance(configs, dict):
            configs = configs.values()
        for config in configs or []:
            self.add_server(config)

    @classmethod
    def from_config_file(cls, path: str | None = None, **kwargs: Any) -> "ConnectionManager":
        """Build a manager from a JSON/YAML `mcpServers` config file."""
        return cls(load_config(path), **kwargs)

    # ── Registration ─────────────────────────────────────

    def add_server(self, config: ServerConfig) -> None:
        """Register a server config (does not start it)."""
        if config.name in self._configs:
            logger.warning(f"Replacing configuration for server: {config.name}")
        self._configs[config.name] = config
        logger.info(f"Registered server: {config.name} ({' '.join(config.command_line)})")

    def register_server(
        self,
        name: str,
        command: str,
        argv: Iterable[str] = (),
        env: dict[str, str] | None = None,
        description: str = "",
    ) -> ServerConfig:
        """Register a server from its parts. Returns the stored config."""
        config = ServerConfig(
            name=name,
            command=command,
            argv=tuple(argv),
            env=dict(env or {}),
            description=description,
        )
        self.add_server(config)
        return config

    def config_for(self, server_name: str) -> ServerConfig:
        config = self._configs.get(server_name)
        if config is None:
            raise UnknownServerError(f"Server {server_name} not found in configuration", server_name)
        return config

    # ── Upstream interface ───────────────────────────────

    def list_servers(self) -> list[str]:
        """Configured server names, in registration order."""
        return list(self._configs)

    def describe_servers(self) -> list[dict[str, str]]:
        """Server names with short descriptions, for server-first selection."""
        return [
            {"server_name": name, "description": cfg.description or f"{name} services"}
            for name, cfg in self._configs.items()
        ]

    async def get_tools_for_server(self, server_name: str) -> list[ToolDescriptor]:
        """
        Tools offered by one server, connecting first if needed.

        A server that does not answer discovery in time reports no
        tools. Spawn and handshake failures propagate.
        """
        if not self.persistent:
            async with self._per_call_locks[server_name]:
                connection = await self._open(self.config_for(server_name))
                try:
                    return list(connection.tools)
                finally:
                    await connection.close()

        try:
            connection = await self.get_connection(server_name)
        except ConnectionNotReady:
            return []
        return list(connection.tools)

    async def execute_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Call a tool on a specific server.

        Args:
            server_name: Which server to call
            tool_name: Which tool on that server
            arguments: Tool parameters
            timeout: Override the per-server call timeout

        Returns:
            The normalized tool result.
        """
        if not self.persistent:
            async with self._per_call_locks[server_name]:
                connection = await self._open(self.config_for(server_name))
                try:
                    return await connection.call_tool(tool_name, arguments, timeout)
                finally:
                    await connection.close()

        connection = await self.get_connection(server_name)
        return await connection.call_tool(tool_name, arguments, timeout)

    # ── Connections ──────────────────────────────────────

    def connection(self, server_name: str) -> ServerConnection | None:
        """The established connection for a server, if any (no I/O)."""
        return self._connections.get(server_name)

    async def get_connection(self, server_name: str) -> ServerConnection:
        """
        Return a READY connection, reusing, joining, or starting an attempt.

        Raises:
            UnknownServerError: not configured.
            SpawnFailure / HandshakeFailure: this attempt failed; the
                next call starts a new one.
            ConnectionNotReady: the connection died during discovery.
        """
        config = self.config_for(server_name)

        # No await until the attempt is registered: the check-and-set
        # is atomic with respect to other coroutines on this loop.
        stale = None
        existing = self._connections.get(server_name)
        if existing is not None:
            if existing.is_ready:
                return existing
            logger.warning(f"Evicting {existing.state.value} connection to {server_name}")
            stale = self._connections.pop(server_name)

        task = self._connecting.get(server_name)
        if task is None:
            task = asyncio.create_task(self._connect(config, stale), name=f"connect:{server_name}")
            self._connecting[server_name] = task
            task.add_done_callback(lambda t, name=server_name: self._attempt_done(name, t))
        elif stale is not None:
            await self._close_quietly(stale)

        # shield: one caller giving up must not cancel the shared attempt
        connection = await asyncio.shield(task)
        if not connection.is_ready:
            raise ConnectionNotReady(
                f"{server_name} became unavailable during discovery", server_name
            )
        return connection

    async def connect_all(self) -> dict[str, list[ToolDescriptor]]:
        """
        Connect every configured server concurrently.

        Returns:
            {server_name: [ToolDescriptor]}; failed servers map to [].
        """
        names = self.list_servers()
        logger.info(f"Connecting to {len(names)} tool server(s)")
        results = await asyncio.gather(
            *(self.get_tools_for_server(name) for name in names),
            return_exceptions=True,
        )

        discovered: dict[str, list[ToolDescriptor]] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, ToolServerError):
                    logger.error(f"Failed to load server {name}", exc_info=result)
                logger.error(f"{name} | ERROR: Server failed to load: {result}")
                discovered[name] = []
            else:
                discovered[name] = result
        return discovered

    async def disconnect(self, server_name: str) -> None:
        """Close one server's connection, if open."""
        connection = self._connections.pop(server_name, None)
        if connection is not None:
            await connection.close()
            logger.info(f"Disconnected from {server_name}")

    async def shutdown(self) -> None:
        """
        Close every connection and cancel in-flight attempts.

        Failures are logged, never raised: one stuck server must not
        keep the others alive.
        """
        logger.info("Cleaning up tool-server connections...")

        attempts = list(self._connecting.values())
        for task in attempts:
            task.cancel()
        if attempts:
            await asyncio.gather(*attempts, return_exceptions=True)

        for server_name in list(self._connections):
            try:
                await self.disconnect(server_name)
            except Exception as e:
                logger.warning(f"Error disconnecting from {server_name}: {e}")

        self._connections.clear()
        self._connecting.clear()

    def summary(self) -> dict[str, Any]:
        """Snapshot of every configured server and its connection state."""
        servers = []
        for name in self._configs:
            connection = self._connections.get(name)
            tools = connection.tools if connection is not None and connection.is_ready else []
            servers.append({
                "name": name,
                "state": connection.state.value if connection is not None else "disconnected",
                "connected": connection is not None and connection.is_ready,
                "tool_count": len(tools),
                "tools": [{"name": t.tool_name, "description": t.description} for t in tools],
            })
        return {"total_servers": len(self._configs), "servers": servers}

    def is_running(self, server_name: str) -> bool:
        """Check if a specific server has a READY connection."""
        connection = self._connections.get(server_name)
        return connection is not None and connection.is_ready

    # ── Internals ────────────────────────────────────────

    async def _open(self, config: ServerConfig) -> ServerConnection:
        """Spawn, handshake, and discover. Never caches."""
        logger.info(f"Connecting to tool server: {config.name}...")
        connection = ServerConnection(
            config,
            timeouts=self.timeouts,
            transport_factory=self.transport_factory,
            client_name=self.client_name,
        )
        await connection.open()
        try:
            await connection.discover_tools()
        except BaseException:
            await connection.close()
            raise
        return connection

    async def _connect(
        self,
        config: ServerConfig,
        stale: ServerConnection | None = None,
    ) -> ServerConnection:
        try:
            if stale is not None:
                # The old process must be gone before a new one is spawned
                await self._close_quietly(stale)
            connection = await self._open(config)
            if connection.is_ready:
                self._connections[config.name] = connection
            else:
                await connection.close()
            return connection
        finally:
            # A finished attempt must never be joined by a later caller
            if self._connecting.get(config.name) is asyncio.current_task():
                del self._connecting[config.name]

    def _attempt_done(self, server_name: str, task: asyncio.Task) -> None:
        if self._connecting.get(server_name) is task:
            del self._connecting[server_name]
        if not task.cancelled():
            # Retrieve so an attempt nobody awaited does not warn
            task.exception()

    async def _close_quietly(self, connection: ServerConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing evicted connection to {connection.name}: {e}")
