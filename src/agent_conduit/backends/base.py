"""Abstract base class for agent backend adapters.

Provides the session table, the prompt state machine, permission
correlation and ordered teardown. Subclasses implement the ``_backend_*``
hooks to speak their wire protocol.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from agent_conduit.config import BackendConfig
from agent_conduit.errors import (
    BackendNotInitializedError,
    PromptInProgressError,
    SessionExpiredError,
    SessionNotFoundError,
)
from agent_conduit.models import (
    PermissionHandler,
    PermissionResponse,
    PromptContent,
    SessionConfig,
    UnifiedMessage,
    as_prompt_content,
)
from agent_conduit.permissions import PermissionCorrelator
from agent_conduit.stream import PromptStream
from agent_conduit.backends.session import Session, SessionState

logger = logging.getLogger("agent_conduit.backends.base")

PERMISSION_REPLY_TIMEOUT = 2.0


class BackendBase(ABC):
    """Base class for backend adapters.

    Handles session bookkeeping shared by all backends:
    - Local session ids mapped to backend-assigned ids
    - One in-flight prompt per session, driven in its own task
    - Permission prompts correlated with the consumer's decisions
    - Disconnect: settle prompts, cancel permissions, then close the transport

    Args:
        config: Launch and connection settings.
    """

    backend_type: str = "backend"

    def __init__(self, config: BackendConfig | None = None) -> None:
        self.config = config or BackendConfig()
        self.permissions = PermissionCorrelator(self.backend_type)
        self._sessions: dict[str, Session] = {}
        self._expired: set[str] = set()
        self._initialized = False
        self._generation = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the backend and perform the handshake."""

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def _ensure_ready(self) -> None:
        """Called before every operation that talks to the backend."""
        if not self._initialized:
            raise BackendNotInitializedError(f"{self.backend_type} backend is not initialized")

    async def disconnect(self) -> None:
        """Settle everything in flight, dispose sessions, then close the transport."""
        tasks = []
        for session in list(self._sessions.values()):
            if session.task is not None and not session.task.done():
                tasks.append(session.task)
            session.dispose("cancelled")
        self._sessions.clear()
        waiters = self.permissions.waiters()
        cancelled = self.permissions.cancel_all("Backend disconnected")
        if cancelled:
            logger.debug("[%s] Cancelled %d pending permission request(s)", self.backend_type, cancelled)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if waiters:
            # Cancelled answers go out before the transport closes.
            _, late = await asyncio.wait(waiters, timeout=PERMISSION_REPLY_TIMEOUT)
            if late:
                logger.warning(
                    "[%s] %d permission answer(s) still in flight at disconnect", self.backend_type, len(late)
                )

        try:
            await self._backend_disconnect()
        except Exception:
            logger.warning("[%s] Error during disconnect", self.backend_type, exc_info=True)
        self._initialized = False
        logger.info("[%s] Disconnected", self.backend_type)

    @abstractmethod
    async def _backend_disconnect(self) -> None:
        """Close the transport."""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def new_session(self, config: SessionConfig) -> str:
        await self._ensure_ready()
        session = Session(
            cwd=config.cwd,
            model=config.model or self.config.model,
            variant=self.config.variant,
            mcp_servers=list(config.mcp_servers),
            generation=self._generation,
        )
        session.remote_id = await self._backend_new_session(session)
        self._sessions[session.local_id] = session
        logger.info(
            "[%s] Created session %s (remote=%s)", self.backend_type, session.local_id, session.remote_id
        )
        return session.local_id

    @abstractmethod
    async def _backend_new_session(self, session: Session) -> str | None:
        """Create the conversation on the backend and return its id."""

    def _get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is not None and session.state is not SessionState.DISPOSED:
            return session
        if session_id in self._expired:
            raise SessionExpiredError(
                f"Session {session_id} belonged to a backend process that is no longer running; "
                "create a new session"
            )
        raise SessionNotFoundError(f"Session {session_id} not found")

    def _session_by_remote(self, remote_id: Any) -> Session | None:
        if not isinstance(remote_id, str):
            return None
        for session in self._sessions.values():
            if session.remote_id == remote_id:
                return session
        return None

    def _expire_sessions(self, reason: str) -> None:
        """Dispose every session; later use raises ``SessionExpiredError``."""
        for local_id, session in list(self._sessions.items()):
            session.dispose("cancelled")
            self.permissions.cancel_session(local_id, reason)
            self._expired.add(local_id)
        if self._sessions:
            logger.info("[%s] Expired %d session(s): %s", self.backend_type, len(self._sessions), reason)
        self._sessions.clear()

    @property
    def sessions(self) -> list[str]:
        """Local ids of live sessions."""
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    async def prompt(self, session_id: str, content: str | list[PromptContent]) -> PromptStream:
        await self._ensure_ready()
        session = self._get_session(session_id)
        if session.prompting:
            raise PromptInProgressError(f"Session {session_id} already has a prompt in flight")

        blocks = as_prompt_content(content)
        stream = PromptStream(session_id)
        session.begin_prompt(stream, self._new_normalizer())
        session.task = asyncio.create_task(
            self._drive(session, stream, blocks), name=f"{self.backend_type}.prompt.{session_id}"
        )
        return stream

    async def _drive(self, session: Session, stream: PromptStream, blocks: list[PromptContent]) -> None:
        try:
            stop_reason = await self._backend_prompt(session, blocks)
        except asyncio.CancelledError:
            stream.finish("cancelled")
        except Exception as e:
            if not stream.done:
                logger.warning("[%s] Prompt failed for session %s: %s", self.backend_type, session.local_id, e)
            stream.fail(e)
        else:
            stream.finish(stop_reason or "end_turn")
        finally:
            if session.stream is stream:
                session.end_prompt()

    @abstractmethod
    async def _backend_prompt(self, session: Session, blocks: list[PromptContent]) -> str | None:
        """Run one turn; return the stop reason (None means ``end_turn``)."""

    @abstractmethod
    def _new_normalizer(self) -> Any:
        """Fresh normalizer for one prompt."""

    def _emit(self, session: Session, messages: list[UnifiedMessage]) -> None:
        stream = session.stream
        if stream is None:
            return
        for message in messages:
            stream.push(message)

    async def cancel_prompt(self, session_id: str) -> None:
        session = self._get_session(session_id)
        stream = session.stream
        if stream is None or stream.done:
            return
        stream.finish("cancelled")
        self.permissions.cancel_session(session_id, "Prompt cancelled")
        logger.info("[%s] Cancelled prompt for session %s", self.backend_type, session_id)
        await self._backend_cancel(session)

    @abstractmethod
    async def _backend_cancel(self, session: Session) -> None:
        """Tell the backend to stop the current turn."""

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def on_permission_request(self, handler: PermissionHandler | None) -> None:
        self.permissions.set_handler(handler)

    async def respond_to_permission(self, session_id: str, request_id: str, response: PermissionResponse) -> None:
        pending = self.permissions.get(request_id)
        if pending is not None and pending.session_id != session_id:
            logger.warning(
                "[%s] Permission %s belongs to session %s, not %s; ignoring",
                self.backend_type,
                request_id,
                pending.session_id,
                session_id,
            )
            return
        self.permissions.resolve(request_id, response)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def get_model(self, session_id: str) -> str | None:
        return self._get_session(session_id).model

    async def set_model(self, session_id: str, model: str) -> None:
        raise NotImplementedError(f"{self.backend_type} backend does not support switching models")
