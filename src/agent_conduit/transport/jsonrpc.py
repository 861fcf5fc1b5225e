"""Newline-delimited JSON-RPC 2.0 over a pair of byte streams.

``JsonRpcConnection`` does the framing and id correlation; it does not know
where the streams come from (a child process, a socket, an in-memory pipe
in tests). Inbound frames are routed by shape:

- ``id`` without ``method``: response to one of our requests
- ``method`` without ``id``: notification (dispatched inline, in order)
- ``method`` with ``id``: backend-initiated request; the registered handler
  runs in its own task and its return value is written back under the
  same ``id``
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from agent_conduit.errors import JsonRpcError, TransportClosedError

logger = logging.getLogger("agent_conduit.transport.jsonrpc")

NotificationHandler = Callable[[str, Any], Awaitable[None] | None]
"""(method, params) → None"""

RequestHandler = Callable[[Any, "int | str"], Awaitable[Any]]
"""(params, request_id) → result"""

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class FrameWriter(Protocol):
    """The subset of ``asyncio.StreamWriter`` the connection writes through."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    def is_closing(self) -> bool: ...


def encode_frame(message: dict[str, Any]) -> bytes:
    """Serialize one frame as a single JSON line."""
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def _error_from_frame(error: Any) -> JsonRpcError:
    if not isinstance(error, dict):
        return JsonRpcError(INTERNAL_ERROR, str(error))
    code = error.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        code = INTERNAL_ERROR
    return JsonRpcError(code, str(error.get("message", "Error")), error.get("data"))


class JsonRpcConnection:
    """JSON-RPC peer over a reader/writer pair.

    Args:
        reader: Stream of inbound newline-delimited frames.
        writer: Sink for outbound frames.
        name: Label used in log messages.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: FrameWriter, *, name: str = "jsonrpc") -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._next_id = 0
        self._pending: dict[int | str, asyncio.Future[Any]] = {}
        self._notification_handler: NotificationHandler | None = None
        self._request_handlers: dict[str, RequestHandler] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._receive_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._close_reason = "Connection closed"

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def on_notification(self, handler: NotificationHandler | None) -> None:
        self._notification_handler = handler

    def register_request_handler(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    def start(self) -> None:
        """Start the receive loop."""
        if self._receive_task is None:
            self._receive_task = asyncio.create_task(self._receive_loop(), name=f"{self._name}.receive")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        """Reserve the next request id (for callers that must know it up front)."""
        self._next_id += 1
        return self._next_id

    async def send_request(self, method: str, params: Any = None, *, request_id: int | None = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            JsonRpcError: The peer answered with an error frame.
            TransportClosedError: The connection closed first.
        """
        if self._closed:
            raise TransportClosedError(self._close_reason)
        rid = request_id if request_id is not None else self.allocate_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[rid] = future
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": rid, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(message)
            return await future
        finally:
            # Removes the entry on cancellation/timeout so a late reply is dropped.
            if self._pending.get(rid) is future:
                del self._pending[rid]

    async def send_notification(self, method: str, params: Any = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: dict[str, Any]) -> None:
        if self._closed or self._writer.is_closing():
            raise TransportClosedError(self._close_reason)
        logger.debug("[%s] → %s", self._name, message.get("method") or f"response {message.get('id')}")
        try:
            async with self._write_lock:
                self._writer.write(encode_frame(message))
                await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise TransportClosedError(f"{self._name}: write failed: {e}") from e

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError:
                    logger.warning("[%s] Dropping oversized frame", self._name)
                    continue
                if not line:
                    break
                try:
                    self._handle_line(line)
                except Exception:
                    logger.exception("[%s] Dropping frame that failed to dispatch", self._name)
                # Let handlers woken by this frame run before the next one is read.
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("[%s] Receive loop failed", self._name)
        self._fail_pending(TransportClosedError(f"{self._name}: stream closed by peer"))
        self._closed = True
        self._close_reason = f"{self._name}: stream closed by peer"

    def _handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("[%s] Dropping malformed line: %.200s", self._name, text)
            return
        if not isinstance(message, dict):
            logger.debug("[%s] Dropping non-object frame: %.200s", self._name, text)
            return

        method = message.get("method")
        has_id = message.get("id") is not None
        if isinstance(method, str) and has_id:
            task = asyncio.create_task(self._run_request_handler(message))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        elif isinstance(method, str):
            self._dispatch_notification(method, message.get("params"))
        elif has_id:
            self._handle_response(message)
        else:
            logger.debug("[%s] Dropping frame without id or method", self._name)

    def _dispatch_notification(self, method: str, params: Any) -> None:
        handler = self._notification_handler
        if handler is None:
            return
        try:
            result = handler(method, params)
        except Exception:
            logger.exception("[%s] Notification handler failed for %s", self._name, method)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    def _handle_response(self, message: dict[str, Any]) -> None:
        rid = message["id"]
        if isinstance(rid, bool) or not isinstance(rid, (int, str)):
            logger.debug("[%s] Dropping response with invalid id %r", self._name, rid)
            return
        future = self._pending.pop(rid, None)
        if future is None or future.done():
            logger.debug("[%s] Dropping response for unknown id %r", self._name, rid)
            return
        if message.get("error") is not None:
            future.set_exception(_error_from_frame(message["error"]))
        else:
            future.set_result(message.get("result"))

    async def _run_request_handler(self, message: dict[str, Any]) -> None:
        rid = message["id"]
        method = message["method"]
        handler = self._request_handlers.get(method)
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": rid}
        if handler is None:
            logger.debug("[%s] No handler for backend request %s", self._name, method)
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        else:
            try:
                reply["result"] = await handler(message.get("params"), rid)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("[%s] Request handler failed for %s", self._name, method)
                reply["error"] = {"code": INTERNAL_ERROR, "message": str(e)}
        try:
            await self._write(reply)
        except TransportClosedError:
            logger.debug("[%s] Connection closed before replying to %s", self._name, method)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def close(self, reason: str = "Connection closed") -> None:
        """Close the write side, stop reading and reject pending requests. Idempotent."""
        if self._closed and self._receive_task is None and not self._handler_tasks:
            return
        self._closed = True
        self._close_reason = reason
        self._fail_pending(TransportClosedError(reason))
        with contextlib.suppress(Exception):
            if not self._writer.is_closing():
                self._writer.close()
        current = asyncio.current_task()
        tasks = [t for t in self._handler_tasks if t is not current]
        if self._receive_task is not None and self._receive_task is not current:
            tasks.append(self._receive_task)
            self._receive_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._handler_tasks.clear()
