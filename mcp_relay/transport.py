"""
Transport layer for tool-protocol communication.

Currently implements:
  - StdioTransport: newline-delimited JSON-RPC over a child process's
    stdin/stdout pipes, driven by asyncio

The transport only moves messages. It knows nothing about request
ids or the handshake; incoming messages are handed to an `on_message`
callback (normally Correlator.on_message) as soon as a complete line
has been parsed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_relay.errors import ConnectionClosed, SpawnFailure

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20
# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE = 5.0

# Diagnostic chatter from stdio-to-remote proxies; not worth logging
STDERR_NOISE = (
    "Debugger",
    "Using automatically selected callback port",
    "Using transport strategy",
    "[Local→Remote]",
    "[Remote→Local]",
    "Proxy established successfully",
    "Connected to remote server",
)

MessageHandler = Callable[[dict[str, Any]], Any]
CloseHandler = Callable[[int | None], Any]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (a request without an id)."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, parsed: dict[str, Any]) -> "JsonRpcResponse":
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_dict(json.loads(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None


def is_protocol_message(parsed: Any) -> bool:
    """True if a decoded line looks like a JSON-RPC message worth dispatching."""
    if not isinstance(parsed, dict):
        return False
    return any(key in parsed for key in ("id", "method", "result", "error", "content"))


class LineBuffer:
    """
    Incremental newline framing.

    Bytes arrive in arbitrary chunks; a message may be split across
    reads or several messages may share one. `feed` returns every
    complete, relevant message and keeps the trailing fragment for
    the next call. Lines that are not JSON, or not shaped like a
    JSON-RPC message, are dropped.
    """

    def __init__(self, source: str = ""):
        self.source = source
        self._pending = b""

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        return [msg for msg in (self._parse(line) for line in lines) if msg is not None]

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        rest, self._pending = self._pending, b""
        msg = self._parse(rest)
        return [msg] if msg is not None else []

    def _parse(self, line: bytes) -> dict[str, Any] | None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.debug(f"{self.source} stdout (not JSON): {text[:200]}")
            return None
        if not is_protocol_message(parsed):
            logger.debug(f"{self.source} stdout (ignored): {text[:200]}")
            return None
        return parsed


class Transport(ABC):
    """Abstract transport layer for tool-protocol communication."""

    @abstractmethod
    async def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    async def write(self, message: JsonRpcRequest | JsonRpcNotification) -> None:
        """Send one message. No acknowledgment is implied."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop the transport (e.g., terminate subprocess). Idempotent."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is the protocol's native local transport. The tool server runs
    as a child process. We write JSON-RPC messages to its stdin and
    parse messages from its stdout. One line = one message.

    stderr is drained in the background so the child can never block
    on a full pipe; its last lines are kept for error messages.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        on_message: MessageHandler | None = None,
        on_close: CloseHandler | None = None,
        name: str = "",
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["python", "-m", "mcp_relay.servers.echo"]
            env: Extra environment variables, merged over os.environ.
            on_message: Called with each parsed message from stdout.
            on_close: Called once, with the exit code, when stdout ends.
            name: Server name used in log lines.
        """
        self.command = command
        self.env = env
        self.name = name or command[0]
        self.on_message = on_message
        self.on_close = on_close
        self._process: asyncio.subprocess.Process | None = None
        self._buffer = LineBuffer(self.name)
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def start(self) -> None:
        """Launch the tool server subprocess."""
        if self.is_alive():
            logger.warning(f"Transport for {self.name} already running, stopping first")
            await self.close()

        env = None
        if self.env:
            env = dict(os.environ)
            env.update(self.env)

        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SpawnFailure(
                f"Could not start {self.name} ({self.command[0]}): {e}", self.name
            ) from e

        self._close_task = None
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.returncode is None

    async def write(self, message: JsonRpcRequest | JsonRpcNotification) -> None:
        """Serialize one message as a single line on the child's stdin."""
        if not self.is_alive() or self._process.stdin is None:
            raise ConnectionClosed(f"{self.name} is not running", self.name)

        line = message.to_json() + "\n"
        try:
            self._process.stdin.write(line.encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionClosed(
                f"{self.name} closed its input: {e}. stderr: {self.stderr_tail[-500:]}",
                self.name,
            ) from e
        logger.debug(f"{self.name} <- {line.strip()[:500]}")

    async def close(self) -> None:
        """
        Terminate the tool server subprocess.

        Concurrent callers share one shutdown; every caller returns
        only once the process has exited.
        """
        if self._process is None:
            return
        if self._close_task is None:
            self._close_task = asyncio.create_task(
                self._shutdown(self._process), name=f"close:{self.name}"
            )
        # shield: a cancelled caller must not abandon a half-dead process
        await asyncio.shield(self._close_task)

    async def _shutdown(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} ignored SIGTERM for {TERMINATE_GRACE:g}s, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        # The reader task delivers on_close
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                try:
                    await asyncio.wait_for(task, timeout=1)
                except asyncio.TimeoutError:
                    task.cancel()
        logger.info(f"Stdio transport for {self.name} stopped (code {process.returncode})")

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                chunk = await stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for message in self._buffer.feed(chunk):
                    self._dispatch(message)
            for message in self._buffer.flush():
                self._dispatch(message)
        finally:
            returncode = None
            if self._process.returncode is None and self._close_task is None:
                # stdout closed but the process lingers; it is unusable
                try:
                    self._process.terminate()
                except ProcessLookupError:
                    pass
            try:
                returncode = await asyncio.wait_for(self._process.wait(), timeout=TERMINATE_GRACE)
            except asyncio.TimeoutError:
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
            if self.on_close is not None:
                self.on_close(returncode)

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            try:
                raw = await self._process.stderr.readline()
            except ValueError:
                # Line exceeded the stream limit; the reader already discarded it
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self._stderr_tail.append(text)
            if not any(marker in text for marker in STDERR_NOISE):
                logger.debug(f"{self.name} stderr: {text}")

    def _dispatch(self, message: dict[str, Any]) -> None:
        logger.debug(f"{self.name} -> {json.dumps(message)[:500]}")
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception:
            logger.exception(f"Message handler for {self.name} failed")
