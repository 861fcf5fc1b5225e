"""Agent Client Protocol (ACP) backend over stdio.

Works with any agent that speaks ACP on stdin/stdout (Gemini CLI, Claude
Code ACP, OpenCode ``acp``...). Streaming output arrives as
``session/update`` notifications; tool approvals as
``session/request_permission`` requests answered once the consumer
decides.
"""

from __future__ import annotations

import logging
import time
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from agent_conduit.backends.session import Session
from agent_conduit.backends.stdio import StdioBackendBase, StdioTransport
from agent_conduit.errors import (
    AuthenticationError,
    InitializationError,
    JsonRpcError,
    SessionCreationError,
    TransportClosedError,
)
from agent_conduit.models import PermissionOption, PermissionRequest, PromptContent
from agent_conduit.normalizer import AcpUpdateNormalizer, summarize
from agent_conduit.timeouts import with_timeout

logger = logging.getLogger("agent_conduit.backends.acp")

ACP_PROTOCOL_VERSION = 1
CLIENT_NAME = "agent-conduit"

_AUTH_NEEDLES = ("auth", "api key", "credentials")


def _client_version() -> str:
    try:
        return version(CLIENT_NAME)
    except PackageNotFoundError:
        return "0.0.0"


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def is_auth_failure(message: str, code: Any = None) -> bool:
    """Heuristic used to tell "not logged in" apart from other creation failures."""
    lowered = message.lower()
    return code == 401 or any(needle in lowered for needle in _AUTH_NEEDLES)


class AcpBackend(StdioBackendBase):
    """Generic ACP agent.

    Configure ``command``/``args`` (or ``fallback_args`` when the ACP entry
    point differs across agent versions) in the ``BackendConfig``.
    """

    backend_type = "acp"

    def __init__(self, config=None, *, transport_factory=None):
        super().__init__(config, transport_factory=transport_factory)
        self.agent_info: dict[str, Any] = {}
        self.agent_capabilities: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _wire(self, transport: StdioTransport) -> None:
        transport.on_notification(self._on_notification)
        transport.register_request_handler("session/request_permission", self._on_permission_request)

    async def _handshake(self, transport: StdioTransport) -> None:
        result = await transport.send_request(
            "initialize",
            {
                "protocolVersion": ACP_PROTOCOL_VERSION,
                "clientCapabilities": {
                    "fs": {"readTextFile": False, "writeTextFile": False},
                    "terminal": False,
                },
                "clientInfo": {"name": CLIENT_NAME, "version": _client_version()},
            },
        )
        protocol_version = result.get("protocolVersion") if isinstance(result, dict) else None
        if not isinstance(protocol_version, int) or isinstance(protocol_version, bool):
            raise InitializationError(f"Invalid initialize response from ACP agent: {summarize(result)}")
        self.agent_info = result.get("agentInfo") or {}
        self.agent_capabilities = result.get("agentCapabilities") or {}
        logger.debug("[%s] Initialized with protocol version %s", self.backend_type, protocol_version)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session_params(self, session: Session) -> dict[str, Any]:
        params: dict[str, Any] = {"cwd": session.cwd, "mcpServers": session.mcp_servers}
        if session.model:
            params["model"] = session.model
        return params

    async def _backend_new_session(self, session: Session) -> str:
        transport = self._require_transport()
        try:
            result = await with_timeout(
                transport.send_request("session/new", self._session_params(session)),
                self.config.init_timeout_ms,
                f"{self.backend_type} session/new timed out after {self.config.init_timeout_ms:g}ms",
            )
        except JsonRpcError as e:
            raise self._session_error(e.message, e.code) from e

        if isinstance(result, dict) and isinstance(result.get("error"), dict):
            error = result["error"]
            raise self._session_error(str(error.get("message") or "Unknown error"), error.get("code"))

        remote_id = result.get("sessionId") if isinstance(result, dict) else None
        if not isinstance(remote_id, str) or not remote_id:
            raise SessionCreationError(f"Invalid session/new response from {self.backend_type}: {summarize(result)}")
        return remote_id

    def _session_error(self, message: str, code: Any) -> SessionCreationError:
        if is_auth_failure(message, code):
            text = f"Authentication failed: {message}"
            if self.config.auth_hint:
                text += f". {self.config.auth_hint}"
            return AuthenticationError(text)
        return SessionCreationError(f"{self.backend_type} session creation failed: {message}")

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    def _new_normalizer(self) -> AcpUpdateNormalizer:
        return AcpUpdateNormalizer()

    async def _backend_prompt(self, session: Session, blocks: list[PromptContent]) -> str | None:
        transport = self._require_transport()
        result = await transport.send_request(
            "session/prompt",
            {"sessionId": session.remote_id, "prompt": [block.model_dump() for block in blocks]},
        )
        stop_reason = result.get("stopReason") if isinstance(result, dict) else None
        return stop_reason if isinstance(stop_reason, str) and stop_reason else None

    async def _backend_cancel(self, session: Session) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.send_notification("session/cancel", {"sessionId": session.remote_id})
        except TransportClosedError:
            logger.debug("[%s] Transport closed before session/cancel", self.backend_type)

    def _on_notification(self, method: str, params: Any) -> None:
        if method != "session/update" or not isinstance(params, dict):
            logger.debug("[%s] Ignoring notification %s", self.backend_type, method)
            return
        session = self._session_by_remote(params.get("sessionId"))
        if session is None or session.stream is None or session.normalizer is None:
            return
        update = params.get("update")
        self._emit(session, session.normalizer.normalize(update))

        stop_reason = params.get("stopReason")
        if stop_reason is None and isinstance(update, dict):
            stop_reason = update.get("stopReason")
        if isinstance(stop_reason, str) and stop_reason:
            session.stream.finish(stop_reason)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def _on_permission_request(self, params: Any, request_id: int | str) -> dict[str, Any]:
        if not isinstance(params, dict):
            return {"outcome": {"outcome": "cancelled"}}

        session = self._session_by_remote(params.get("sessionId"))
        tool_call = params.get("toolCall") if isinstance(params.get("toolCall"), dict) else {}
        tool_call_id = tool_call.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            tool_call_id = f"tool-{int(time.time() * 1000)}"

        options = [
            PermissionOption(
                option_id=_as_str(option.get("optionId")) or f"option-{index}",
                name=_as_str(option.get("name")) or f"Option {index}",
                kind=_as_str(option.get("kind")) or "allow_once",
            )
            for index, option in enumerate(
                (o for o in params.get("options") or [] if isinstance(o, dict)), start=1
            )
        ]
        request = PermissionRequest(
            id=tool_call_id,
            session_id=session.local_id if session else str(params.get("sessionId") or "unknown"),
            tool_call_id=tool_call_id,
            title=_as_str(tool_call.get("title")),
            kind=_as_str(tool_call.get("kind")),
            raw_input=tool_call.get("rawInput"),
            raw_output=tool_call.get("rawOutput"),
            options=options,
        )
        logger.debug("[%s] Permission requested for %s (%s)", self.backend_type, tool_call_id, request.title)

        response = await self.permissions.request(request)
        if response is None:
            return {"outcome": {"outcome": "cancelled"}}
        return response.to_acp()
