"""OpenCode driven through its HTTP server (``opencode serve``).

Control calls are REST; everything the server pushes (streamed parts,
idle/error signals, permission prompts) arrives on one ``GET /event``
stream shared by all sessions and routed here by ``sessionID``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from agent_conduit.backends.base import BackendBase
from agent_conduit.backends.acp import is_auth_failure
from agent_conduit.backends.opencode_acp import OPENCODE_PERMISSION_OPTIONS
from agent_conduit.backends.session import Session
from agent_conduit.config import BackendConfig
from agent_conduit.errors import (
    AgentBackendError,
    AuthenticationError,
    BackendError,
    HttpTransportError,
    OperationTimeoutError,
    SessionCreationError,
    TransportClosedError,
)
from agent_conduit.models import PermissionRequest, PromptContent
from agent_conduit.normalizer import OpenCodePartNormalizer, summarize
from agent_conduit.transport.sse import EventKind, HttpSseTransport, ServerEvent, parse_server_event
from agent_conduit.timeouts import with_timeout

logger = logging.getLogger("agent_conduit.backends.opencode_http")

DEFAULT_BASE_URL = "http://127.0.0.1:4096"
PERMISSION_ANSWERS = frozenset(option.option_id for option in OPENCODE_PERMISSION_OPTIONS)


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        if isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error.get("name"), str):
            return error["name"]
    if isinstance(error, str) and error:
        return error
    return "Backend reported an error"


def model_ref(model: str | None) -> dict[str, str] | None:
    """Split ``provider/model`` into OpenCode's ``{providerID, modelID}``."""
    if not model or "/" not in model:
        return None
    provider, _, model_id = model.partition("/")
    return {"providerID": provider, "modelID": model_id}


class OpenCodeHttpBackend(BackendBase):
    """OpenCode over REST + server-sent events.

    Args:
        config: ``base_url`` and ``directory`` select the server and project.
        client: Pre-built httpx client (tests inject ``httpx.MockTransport``).
    """

    backend_type = "opencode-http"
    abort_settle_timeout_ms: float = 2000

    def __init__(self, config: BackendConfig | None = None, *, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._client = client
        self._transport: HttpSseTransport | None = None
        self._event_task: asyncio.Task | None = None
        self._permission_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._transport = HttpSseTransport(
            self.config.base_url or DEFAULT_BASE_URL,
            directory=self.config.directory,
            client=self._client,
        )
        self._start_events()
        self._initialized = True
        logger.info("[%s] Connected to %s", self.backend_type, self._transport.base_url)

    def _start_events(self) -> None:
        self._event_task = asyncio.create_task(self._consume_events(), name=f"{self.backend_type}.events")

    async def _ensure_ready(self) -> None:
        await super()._ensure_ready()
        if self._event_task is None or self._event_task.done():
            logger.warning("[%s] Event stream is down; reconnecting", self.backend_type)
            self._start_events()

    def _require_transport(self) -> HttpSseTransport:
        if self._transport is None:
            raise TransportClosedError(f"{self.backend_type} backend is not connected")
        return self._transport

    async def _backend_disconnect(self) -> None:
        tasks = [t for t in (self._event_task, *self._permission_tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._event_task = None
        self._permission_tasks.clear()
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _backend_new_session(self, session: Session) -> str:
        transport = self._require_transport()
        try:
            result = await transport.post("/session", json={})
        except HttpTransportError as e:
            if is_auth_failure(e.body, e.status_code):
                text = f"Authentication failed: {e}"
                if self.config.auth_hint:
                    text += f". {self.config.auth_hint}"
                raise AuthenticationError(text) from e
            raise SessionCreationError(f"{self.backend_type} session creation failed: {e}") from e

        remote_id = result.get("id") if isinstance(result, dict) else None
        if not isinstance(remote_id, str) or not remote_id:
            raise SessionCreationError(f"Invalid POST /session response from {self.backend_type}: {summarize(result)}")
        return remote_id

    async def set_model(self, session_id: str, model: str) -> None:
        """Models are chosen per message, so switching only affects later prompts."""
        session = self._get_session(session_id)
        logger.info("[%s] Session %s model %s -> %s", self.backend_type, session_id, session.model, model)
        session.model = model

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    def _new_normalizer(self) -> OpenCodePartNormalizer:
        return OpenCodePartNormalizer()

    async def _backend_prompt(self, session: Session, blocks: list[PromptContent]) -> str | None:
        transport = self._require_transport()
        await self._await_abort_settled(session)
        idle = asyncio.Event()
        session.extra["idle"] = idle
        body: dict[str, Any] = {"parts": [block.model_dump() for block in blocks]}
        ref = model_ref(session.model)
        if ref is not None:
            body["model"] = ref
        try:
            await transport.post(f"/session/{session.remote_id}/message", json=body)
            # The turn ends on session.idle, which may arrive before or after the POST returns.
            await idle.wait()
        finally:
            if session.extra.get("idle") is idle:
                del session.extra["idle"]
        return "end_turn"

    async def _backend_cancel(self, session: Session) -> None:
        if session.task is not None and not session.task.done():
            session.task.cancel()
        if "idle" in session.extra:
            # session.idle carries no turn id; the next idle belongs to the aborted turn.
            session.extra["aborted"] = asyncio.Event()
        try:
            await self._require_transport().post(f"/session/{session.remote_id}/abort")
        except AgentBackendError:
            self._clear_abort(session)
            raise

    async def _await_abort_settled(self, session: Session) -> None:
        aborted = session.extra.get("aborted")
        if aborted is None:
            return
        try:
            await with_timeout(aborted.wait(), self.abort_settle_timeout_ms, "no session.idle after abort")
        except OperationTimeoutError:
            logger.warning(
                "[%s] Session %s did not go idle after abort; prompting anyway", self.backend_type, session.local_id
            )
            self._clear_abort(session)

    def _clear_abort(self, session: Session) -> None:
        aborted = session.extra.pop("aborted", None)
        if aborted is not None:
            aborted.set()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _consume_events(self) -> None:
        transport = self._require_transport()
        error: Exception = TransportClosedError(f"{self.backend_type}: event stream closed by server")
        try:
            async for data in transport.events():
                self._dispatch(parse_server_event(data))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[%s] Event stream failed: %s", self.backend_type, e)
            error = e
        # Without the stream no prompt can ever settle.
        for session in self._sessions.values():
            self._fail_turn(session, error)

    def _fail_turn(self, session: Session, error: Exception) -> None:
        if session.stream is not None:
            session.stream.fail(error)
        idle = session.extra.get("idle")
        if idle is not None:
            idle.set()
        self._clear_abort(session)

    def _dispatch(self, event: ServerEvent) -> None:
        if event.kind is EventKind.UNRECOGNIZED:
            logger.debug("[%s] Ignoring event %s", self.backend_type, event.type)
            return

        if event.kind is EventKind.SESSION_ERROR and event.session_id is None:
            self._fail_all(BackendError(_error_text(event.properties.get("error"))))
            return

        session = self._session_by_remote(event.session_id)
        if session is None:
            logger.debug("[%s] Event %s for unknown session %s", self.backend_type, event.type, event.session_id)
            return

        if "aborted" in session.extra and self._settle_abort(session, event):
            return

        if event.kind is EventKind.MESSAGE_UPDATED:
            if session.normalizer is not None:
                session.normalizer.note_message(event.properties.get("info"))
        elif event.kind is EventKind.PART_UPDATED:
            if session.normalizer is not None:
                self._emit(
                    session, session.normalizer.normalize(event.properties.get("part"), event.properties.get("delta"))
                )
        elif event.kind is EventKind.SESSION_IDLE:
            idle = session.extra.get("idle")
            if idle is not None:
                idle.set()
        elif event.kind is EventKind.SESSION_ERROR:
            self._fail_turn(session, BackendError(_error_text(event.properties.get("error"))))
        elif event.kind is EventKind.PERMISSION_UPDATED:
            task = asyncio.create_task(self._handle_permission(session, event.properties))
            self._permission_tasks.add(task)
            task.add_done_callback(self._permission_tasks.discard)
        elif event.kind is EventKind.PERMISSION_REPLIED:
            pid = event.properties.get("permissionID")
            if isinstance(pid, str):
                self.permissions.dismiss(pid)

    def _settle_abort(self, session: Session, event: ServerEvent) -> bool:
        """Swallow output of an aborted turn; True if ``event`` was consumed."""
        if event.kind is EventKind.SESSION_IDLE:
            self._clear_abort(session)
            return True
        if event.kind in (EventKind.MESSAGE_UPDATED, EventKind.PART_UPDATED, EventKind.SESSION_ERROR):
            logger.debug("[%s] Dropping %s from aborted turn", self.backend_type, event.type)
            return True
        return False

    def _fail_all(self, error: Exception) -> None:
        logger.warning("[%s] Backend error without a session: %s", self.backend_type, error)
        for session in self._sessions.values():
            self._fail_turn(session, error)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def _handle_permission(self, session: Session, props: dict[str, Any]) -> None:
        pid = props.get("id")
        if not isinstance(pid, str) or not pid:
            logger.debug("[%s] Permission event without id: %s", self.backend_type, summarize(props))
            return
        call_id = props.get("callID")
        request = PermissionRequest(
            id=pid,
            session_id=session.local_id,
            tool_call_id=call_id if isinstance(call_id, str) and call_id else pid,
            title=props.get("title") if isinstance(props.get("title"), str) else "Permission Request",
            kind=props.get("type") if isinstance(props.get("type"), str) else "unknown",
            raw_input=props.get("metadata") or {},
            options=list(OPENCODE_PERMISSION_OPTIONS),
        )
        response = await self.permissions.request(request)
        if response is None:
            return
        if response.outcome == "selected" and response.option_id in PERMISSION_ANSWERS:
            answer = response.option_id
        else:
            answer = "reject"
        try:
            await self._require_transport().post(
                f"/session/{session.remote_id}/permissions/{pid}", json={"response": answer}
            )
        except AgentBackendError as e:
            logger.warning("[%s] Failed to answer permission %s: %s", self.backend_type, pid, e)
