"""Framed JSON-RPC transport over a child process's standard streams.

stdout carries newline-delimited JSON-RPC frames, stdin takes ours, and
stderr is a diagnostic side channel only (logged, and the tail kept for
error messages). The child process is a scoped resource: ``close()``
(or leaving ``async with``) always terminates and reaps it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import deque
from typing import Any

from agent_conduit.config import DEFAULT_CLOSE_TIMEOUT_S
from agent_conduit.errors import TransportClosedError, TransportError
from agent_conduit.transport.jsonrpc import JsonRpcConnection, NotificationHandler, RequestHandler

logger = logging.getLogger("agent_conduit.transport.stdio")

_STREAM_LIMIT = 16 * 1024 * 1024  # single frames can carry whole files
_STDERR_TAIL = 20


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class FramedStdioTransport:
    """JSON-RPC over a child process's stdin/stdout.

    Handlers registered before ``start()`` are wired before any traffic is
    exchanged, so a backend-initiated request can't race the handshake.

    Args:
        command: Executable to spawn.
        args: Command-line arguments.
        env: Environment for the child (None inherits ours).
        cwd: Working directory for the child.
        close_timeout: Seconds to wait for a natural exit (and again after
            SIGTERM) before escalating.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | tuple[str, ...] = (),
        env: dict[str, str] | None = None,
        *,
        cwd: str | None = None,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_S,
    ) -> None:
        self.command = command
        self.args = list(args)
        self._env = env
        self._cwd = cwd
        self._close_timeout = close_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._connection: JsonRpcConnection | None = None
        self._notification_handler: NotificationHandler | None = None
        self._request_handlers: dict[str, RequestHandler] = {}
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL)
        self._closed = False

    @property
    def name(self) -> str:
        return os.path.basename(self.command)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def on_notification(self, handler: NotificationHandler) -> None:
        self._notification_handler = handler
        if self._connection is not None:
            self._connection.on_notification(handler)

    def register_request_handler(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler
        if self._connection is not None:
            self._connection.register_request_handler(method, handler)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the child process and start decoding its output.

        Raises:
            TransportError: If the process could not be spawned.
        """
        if self._process is not None:
            return
        if self._closed:
            raise TransportClosedError(f"{self.name}: transport already closed")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=self._cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            self._closed = True
            raise TransportError(f"Failed to spawn {self.command}: {e}") from e

        logger.info("Spawned %s %s (pid %s)", self.command, " ".join(self.args), self._process.pid)
        assert self._process.stdout is not None and self._process.stdin is not None
        self._connection = JsonRpcConnection(self._process.stdout, self._process.stdin, name=self.name)
        self._connection.on_notification(self._notification_handler)
        for method, handler in self._request_handlers.items():
            self._connection.register_request_handler(method, handler)
        self._connection.start()
        self._stderr_task = asyncio.create_task(self._drain_stderr(), name=f"{self.name}.stderr")

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        try:
            while True:
                try:
                    line = await stream.readline()
                except ValueError:
                    continue
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._stderr_tail.append(text)
                    logger.debug("[%s stderr] %s", self.name, text)
        except asyncio.CancelledError:
            return

    async def __aenter__(self) -> FramedStdioTransport:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Process state
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def closed(self) -> bool:
        return self._closed

    def is_alive(self) -> bool:
        """True while the child runs and its output stream is still open."""
        if self._closed or self._process is None or self._process.returncode is not None:
            return False
        if self._connection is None or self._connection.closed:
            return False
        return pid_alive(self._process.pid)

    def recent_stderr(self) -> str:
        """Last lines the child wrote to stderr."""
        return "\n".join(self._stderr_tail)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def _require_connection(self) -> JsonRpcConnection:
        if self._connection is None or self._closed:
            raise TransportClosedError(f"{self.name}: transport not running")
        return self._connection

    def allocate_id(self) -> int:
        return self._require_connection().allocate_id()

    async def send_request(self, method: str, params: Any = None, *, request_id: int | None = None) -> Any:
        return await self._require_connection().send_request(method, params, request_id=request_id)

    async def send_notification(self, method: str, params: Any = None) -> None:
        await self._require_connection().send_notification(method, params)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close stdin, wait for exit, then SIGTERM and SIGKILL. Idempotent."""
        if self._closed and self._connection is None:
            return
        self._closed = True
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close(f"{self.name}: transport closed")

        proc = self._process
        if proc is not None and proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                logger.debug("%s (pid %s) did not exit, sending SIGTERM", self.name, proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._close_timeout)
                except asyncio.TimeoutError:
                    logger.warning("%s (pid %s) ignored SIGTERM, killing", self.name, proc.pid)
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None
        if proc is not None:
            logger.info("%s (pid %s) exited with code %s", self.name, proc.pid, proc.returncode)
