"""
Request/response correlation for one connection.

Responses from a tool server may arrive in any order. Each outgoing
request gets a fresh integer id and a future; the transport's reader
hands every incoming message to `on_message`, which settles the future
whose id matches. A request that is not answered within its timeout is
failed with RequestTimeout and the `on_timeout` hook runs; the
connection uses that hook to tear the process down.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mcp_relay.errors import RequestTimeout, ToolCallError
from mcp_relay.transport import JsonRpcNotification, JsonRpcRequest, Transport

logger = logging.getLogger(__name__)

TimeoutHook = Callable[[RequestTimeout], Awaitable[None]]


@dataclass
class PendingRequest:
    id: int
    method: str
    deadline: float
    future: asyncio.Future


class Correlator:
    """Maps outstanding request ids to the callers waiting on them."""

    def __init__(
        self,
        transport: Transport,
        server_name: str = "",
        on_timeout: TimeoutHook | None = None,
    ):
        self._transport = transport
        self.server_name = server_name
        self.on_timeout = on_timeout
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_id(self) -> int:
        """Generate the next request ID."""
        return next(self._ids)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None,
        timeout: float,
        timeout_error: type[RequestTimeout] = RequestTimeout,
    ) -> Any:
        """Build a request with a fresh id and wait for its result."""
        request = JsonRpcRequest(method=method, params=params or {}, id=self.next_id())
        return await self.send(request, timeout, timeout_error)

    async def send(
        self,
        request: JsonRpcRequest,
        timeout: float,
        timeout_error: type[RequestTimeout] = RequestTimeout,
    ) -> Any:
        """
        Register `request`, write it, and suspend until it settles.

        Returns:
            The `result` payload of the matching response.

        Raises:
            ToolCallError: the server answered with an error object.
            RequestTimeout (or `timeout_error`): no answer within `timeout`.
            ConnectionClosed: the process went away first.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending[request.id] = PendingRequest(
            id=request.id,
            method=request.method,
            deadline=loop.time() + timeout,
            future=future,
        )

        try:
            await self._transport.write(request)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            exc = timeout_error(
                f"{self.server_name}: no response to {request.method} "
                f"(id={request.id}) within {timeout:g}s",
                server_name=self.server_name,
                method=request.method,
                timeout=timeout,
            )
            logger.warning(str(exc))
            if self.on_timeout is not None:
                await self.on_timeout(exc)
            raise exc from None
        finally:
            self._pending.pop(request.id, None)
            if future.done() and not future.cancelled():
                future.exception()  # mark retrieved if the write failed first
            else:
                future.cancel()

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification. Nothing is registered; nothing comes back."""
        await self._transport.write(JsonRpcNotification(method=method, params=params or {}))

    def on_message(self, message: dict[str, Any]) -> bool:
        """
        Settle the pending request this message answers, if any.

        Returns:
            True if a pending request was settled.
        """
        msg_id = message.get("id")
        if msg_id is None:
            # Server-initiated notification
            return False
        if isinstance(msg_id, bool):
            # true == 1 in Python; a boolean is never a request id
            logger.debug(f"{self.server_name}: discarding message with boolean id {msg_id!r}")
            return False

        key = _normalize_id(msg_id)
        pending = self._pending.get(key)
        if pending is None:
            logger.debug(f"{self.server_name}: discarding message with unknown id {msg_id!r}")
            return False
        if pending.future.done():
            # Already settled (timed out or failed); later arrivals are no-ops
            return False

        if "error" in message and message["error"] is not None:
            self._pending.pop(key, None)
            pending.future.set_exception(ToolCallError.from_error(message["error"], self.server_name))
        elif "result" in message:
            self._pending.pop(key, None)
            pending.future.set_result(message["result"])
        elif "content" in message:
            # Some servers put the tool payload at the top level
            self._pending.pop(key, None)
            pending.future.set_result({"content": message["content"]})
        else:
            logger.debug(f"{self.server_name}: id {msg_id!r} carries no result or error, ignored")
            return False
        return True

    def fail_all(self, exc: BaseException) -> int:
        """Fail every outstanding request with `exc`. Returns how many were failed."""
        failed = 0
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(exc)
                failed += 1
        self._pending.clear()
        if failed:
            logger.warning(f"{self.server_name}: failed {failed} pending request(s): {exc}")
        return failed


def _normalize_id(msg_id: Any) -> Any:
    if isinstance(msg_id, str) and msg_id.isdigit():
        return int(msg_id)
    return msg_id
