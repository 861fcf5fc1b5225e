"""Codex driven as an MCP server over stdio (``codex mcp-server``).

A turn is a ``tools/call`` of the ``codex`` tool (first prompt) or
``codex-reply`` (follow-ups); progress streams back as ``codex/event``
notifications while the call is open, and the call's response ends the
turn. Command approvals arrive as MCP ``elicitation/create`` requests
whose answer must fit a schema the server declares.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from agent_conduit.backends.session import Session
from agent_conduit.backends.stdio import StdioBackendBase, StdioTransport
from agent_conduit.config import BackendConfig
from agent_conduit.elicitation import (
    build_elicitation_result,
    extract_command,
    extract_cwd,
    extract_prompt,
    extract_requested_schema,
    extract_tool_call_id,
)
from agent_conduit.errors import BackendError, InitializationError, TransportClosedError
from agent_conduit.models import DECISIONS, PermissionOption, PermissionRequest, PromptContent
from agent_conduit.normalizer import CodexEventNormalizer, summarize

logger = logging.getLogger("agent_conduit.backends.codex")

MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "agent-conduit-codex-client", "version": "1.0.0"}
DEFAULT_FALLBACK_ARGS = [["mcp-server"], ["mcp"]]
TOOL_NAME = "CodexBash"

CODEX_PERMISSION_OPTIONS = (
    PermissionOption(option_id="approved", name="Approve", kind="allow_once"),
    PermissionOption(option_id="approved_for_session", name="Approve for Session", kind="allow_always"),
    PermissionOption(option_id="denied", name="Deny", kind="reject_once"),
    PermissionOption(option_id="abort", name="Abort", kind="reject_always"),
)


def _first_str(record: Any, *keys: str) -> str | None:
    if not isinstance(record, dict):
        return None
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class CodexMcpBackend(StdioBackendBase):
    """Codex over MCP.

    ``new_session`` is local only: Codex assigns its session id during the
    first turn, and follow-up turns continue it with ``codex-reply``.
    """

    backend_type = "codex"
    default_command = "codex"

    def __init__(self, config: BackendConfig | None = None, *, transport_factory=None):
        config = config or BackendConfig()
        if not config.args and not config.fallback_args:
            config = config.model_copy(update={"fallback_args": [list(a) for a in DEFAULT_FALLBACK_ARGS]})
        super().__init__(config, transport_factory=transport_factory)
        self.server_info: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _wire(self, transport: StdioTransport) -> None:
        transport.on_notification(self._on_notification)
        transport.register_request_handler("elicitation/create", self._on_elicitation)

    async def _handshake(self, transport: StdioTransport) -> None:
        result = await transport.send_request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {"elicitation": {}},
                "clientInfo": CLIENT_INFO,
            },
        )
        if not isinstance(result, dict) or "protocolVersion" not in result:
            raise InitializationError(f"Invalid initialize response from Codex MCP server: {summarize(result)}")
        self.server_info = result.get("serverInfo") or {}
        await transport.send_notification("notifications/initialized")
        logger.debug("[%s] Connected (server %s)", self.backend_type, self.server_info.get("name", "?"))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _backend_new_session(self, session: Session) -> str | None:
        return None

    def _new_normalizer(self) -> CodexEventNormalizer:
        return CodexEventNormalizer()

    def _tool_arguments(self, session: Session, text: str) -> tuple[str, dict[str, Any]]:
        if session.remote_id is None:
            arguments: dict[str, Any] = {"prompt": text, "cwd": session.cwd}
            if session.model:
                arguments["model"] = session.model
            return "codex", arguments
        conversation_id = session.extra.get("conversation_id")
        if not conversation_id:
            conversation_id = session.remote_id
            logger.debug("[%s] conversationId missing, defaulting to sessionId %s", self.backend_type, conversation_id)
        return "codex-reply", {
            "sessionId": session.remote_id,
            "conversationId": conversation_id,
            "prompt": text,
        }

    async def _backend_prompt(self, session: Session, blocks: list[PromptContent]) -> str | None:
        transport = self._require_transport()
        text = "\n\n".join(block.text for block in blocks)
        tool, arguments = self._tool_arguments(session, text)
        request_id = transport.allocate_id()
        session.extra["request_id"] = request_id
        logger.debug("[%s] Calling %s (request %s)", self.backend_type, tool, request_id)
        try:
            result = await transport.send_request(
                "tools/call", {"name": tool, "arguments": arguments}, request_id=request_id
            )
        finally:
            session.extra.pop("request_id", None)

        self._update_identifiers(session, result)
        if isinstance(result, dict) and result.get("isError"):
            raise BackendError(f"Codex {tool} failed: {self._result_text(result) or summarize(result)}")
        return "end_turn"

    @staticmethod
    def _result_text(result: dict[str, Any]) -> str:
        content = result.get("content")
        if not isinstance(content, list):
            return ""
        return "".join(item.get("text", "") for item in content if isinstance(item, dict))

    async def _backend_cancel(self, session: Session) -> None:
        request_id = session.extra.get("request_id")
        if request_id is not None and self._transport is not None:
            try:
                await self._transport.send_notification(
                    "notifications/cancelled", {"requestId": request_id, "reason": "Cancelled by user"}
                )
            except TransportClosedError:
                logger.debug("[%s] Transport closed before cancel notification", self.backend_type)
        if session.task is not None and not session.task.done():
            session.task.cancel()

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def _update_identifiers(self, session: Session, source: Any) -> None:
        if not isinstance(source, dict):
            return
        records = [source]
        for key in ("meta", "_meta", "structuredContent", "data", "payload"):
            if isinstance(source.get(key), dict):
                records.append(source[key])
        if isinstance(source.get("content"), list):
            records.extend(item for item in source["content"] if isinstance(item, dict))

        for record in records:
            session_id = _first_str(record, "session_id", "sessionId")
            if session_id is None and source.get("type") == "session_meta" and record is source:
                session_id = _first_str(record, "id")
            if session_id and session_id != session.remote_id:
                session.remote_id = session_id
                logger.debug("[%s] Session id %s for %s", self.backend_type, session_id, session.local_id)
            conversation_id = _first_str(record, "conversation_id", "conversationId")
            if conversation_id:
                session.extra["conversation_id"] = conversation_id

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _prompting_session(self, params: Any) -> Session | None:
        """Session whose open ``tools/call`` an event or elicitation belongs to."""
        meta = params.get("_meta") if isinstance(params, dict) else None
        request_id = meta.get("requestId") if isinstance(meta, dict) else None
        prompting = [s for s in self._sessions.values() if s.prompting]
        if request_id is not None:
            for session in prompting:
                if session.extra.get("request_id") == request_id:
                    return session
        if len(prompting) == 1:
            return prompting[0]
        return None

    def _on_notification(self, method: str, params: Any) -> None:
        if method != "codex/event" or not isinstance(params, dict):
            logger.debug("[%s] Ignoring notification %s", self.backend_type, method)
            return
        msg = params.get("msg")
        session = self._prompting_session(params)
        if session is None:
            logger.debug("[%s] Dropping event %s with no prompting session", self.backend_type, summarize(msg, 80))
            return
        self._update_identifiers(session, msg)
        if session.normalizer is not None:
            self._emit(session, session.normalizer.normalize(msg))

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def _on_elicitation(self, params: Any, request_id: int | str) -> dict[str, Any]:
        params = params if isinstance(params, dict) else {}
        schema = extract_requested_schema(params)
        if not self.permissions.has_handler:
            logger.debug("[%s] No permission handler set, denying by default", self.backend_type)
            return build_elicitation_result("denied", schema, "Permission handler not configured")

        tool_call_id = extract_tool_call_id(params) or uuid.uuid4().hex
        command = extract_command(params)
        cwd = extract_cwd(params)
        prompt, description = extract_prompt(params)
        tool_input: dict[str, Any] = {"command": command or ([prompt] if prompt else []), "cwd": cwd or ""}
        if prompt:
            tool_input["prompt"] = prompt
        if description:
            tool_input["description"] = description

        session = self._prompting_session(params)
        request = PermissionRequest(
            id=tool_call_id,
            session_id=session.local_id if session else "unknown",
            tool_call_id=tool_call_id,
            title=description or TOOL_NAME,
            kind=TOOL_NAME,
            raw_input=tool_input,
            options=list(CODEX_PERMISSION_OPTIONS),
        )
        try:
            response = await self.permissions.request(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("[%s] Permission request failed: %s", self.backend_type, e)
            return build_elicitation_result("denied", schema, str(e) or "Permission request failed")

        if response is None or response.outcome == "cancelled":
            reason = response.reason if response is not None else None
            return build_elicitation_result("abort", schema, reason)
        decision = response.option_id if response.option_id in DECISIONS else "denied"
        logger.debug("[%s] Permission %s: %s", self.backend_type, tool_call_id, decision)
        return build_elicitation_result(decision, schema, response.reason)
