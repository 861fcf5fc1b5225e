"""Shared plumbing for backends that run as a child process speaking JSON-RPC.

Adds launch-argument fallbacks and lazy reconnection to
``BackendBase``: a transport whose process died is replaced on the next
operation, and sessions created on the dead process expire.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import Callable
from typing import Any, Protocol

from agent_conduit.backends.base import BackendBase
from agent_conduit.config import BackendConfig
from agent_conduit.errors import InitializationError
from agent_conduit.timeouts import with_timeout
from agent_conduit.transport.jsonrpc import NotificationHandler, RequestHandler
from agent_conduit.transport.stdio import FramedStdioTransport

logger = logging.getLogger("agent_conduit.backends.stdio")


class StdioTransport(Protocol):
    """What a stdio backend needs from its transport (tests substitute fakes)."""

    pid: int | None

    def on_notification(self, handler: NotificationHandler) -> None: ...

    def register_request_handler(self, method: str, handler: RequestHandler) -> None: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    def is_alive(self) -> bool: ...

    def recent_stderr(self) -> str: ...

    def allocate_id(self) -> int: ...

    async def send_request(self, method: str, params: Any = None, *, request_id: int | None = None) -> Any: ...

    async def send_notification(self, method: str, params: Any = None) -> None: ...


TransportFactory = Callable[[list[str]], StdioTransport]
"""(args) → unstarted transport for one launch candidate."""


class StdioBackendBase(BackendBase):
    """Base class for stdio JSON-RPC backends.

    Args:
        config: Launch settings (command, args, fallback_args, env, timeouts).
        transport_factory: Builds a transport for a candidate argument list.
            Defaults to spawning ``config.command`` with ``FramedStdioTransport``.
    """

    default_command: str = ""

    def __init__(self, config: BackendConfig | None = None, *, transport_factory: TransportFactory | None = None):
        super().__init__(config)
        self._transport_factory = transport_factory or self._spawn_transport
        self._transport: StdioTransport | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def command(self) -> str:
        return self.config.command or self.default_command

    @property
    def transport(self) -> StdioTransport | None:
        return self._transport

    def _spawn_transport(self, args: list[str]) -> StdioTransport:
        return FramedStdioTransport(
            self.command,
            args,
            self._launch_env(),
            cwd=self.config.cwd,
            close_timeout=self.config.close_timeout_s,
        )

    def _launch_env(self) -> dict[str, str]:
        return self.config.process_env()

    def _arg_candidates(self) -> list[list[str]]:
        return self.config.arg_candidates()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _wire(self, transport: StdioTransport) -> None:
        """Register notification and request handlers on a fresh transport."""

    @abstractmethod
    async def _handshake(self, transport: StdioTransport) -> None:
        """Perform the protocol handshake; raise on an invalid response."""

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        async with self._connect_lock:
            if self._initialized and self._transport is not None:
                return
            await self._connect()
            self._initialized = True

    async def _connect(self) -> None:
        """Try each argument candidate until one completes the handshake."""
        candidates = self._arg_candidates()
        last_error: Exception | None = None
        stderr = ""

        for args in candidates:
            transport = self._transport_factory(args)
            self._wire(transport)
            try:
                await transport.start()
                await with_timeout(
                    self._handshake(transport),
                    self.config.init_timeout_ms,
                    f"{self.backend_type} initialize timed out after {self.config.init_timeout_ms:g}ms",
                )
            except Exception as e:
                last_error = e
                stderr = transport.recent_stderr()
                logger.debug("[%s] Initialize failed with args %s: %s", self.backend_type, args, e)
                await self._close_quietly(transport)
                continue
            except BaseException:
                await self._close_quietly(transport)
                raise

            self._transport = transport
            self._generation += 1
            logger.info(
                "[%s] Initialized %s %s (pid %s)", self.backend_type, self.command, " ".join(args), transport.pid
            )
            return

        message = f"Failed to initialize {self.backend_type} backend ({self.command})"
        if last_error is not None:
            message += f": {last_error}"
        if stderr:
            message += f"\n{stderr}"
        raise InitializationError(message) from last_error

    async def _close_quietly(self, transport: StdioTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.debug("[%s] Error closing transport", self.backend_type, exc_info=True)

    async def _ensure_ready(self) -> None:
        await super()._ensure_ready()
        if self._transport is not None and self._transport.is_alive():
            return
        async with self._connect_lock:
            if self._transport is not None and self._transport.is_alive():
                return
            logger.warning("[%s] Backend process is not running; reconnecting", self.backend_type)
            await self._relaunch("Backend process exited")

    async def _relaunch(self, reason: str) -> None:
        """Replace the transport; sessions of the old one expire."""
        old, self._transport = self._transport, None
        if old is not None:
            await self._close_quietly(old)
        self._expire_sessions(reason)
        await self._connect()

    def _require_transport(self) -> StdioTransport:
        if self._transport is None:
            raise InitializationError(f"{self.backend_type} backend has no running transport")
        return self._transport

    async def _backend_disconnect(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
