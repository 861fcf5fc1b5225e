"""OpenCode driven through ``opencode acp``.

OpenCode reads its model from ``OPENCODE_CONFIG_CONTENT`` at launch, so the
model is a property of the process: switching it relaunches the agent and
every session of this instance is disposed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agent_conduit.backends.acp import AcpBackend
from agent_conduit.backends.session import Session
from agent_conduit.config import BackendConfig
from agent_conduit.models import PermissionOption, PermissionRequest

logger = logging.getLogger("agent_conduit.backends.opencode_acp")

DEFAULT_MODEL = "anthropic.claude-sonnet-4-20250514"
DEFAULT_INIT_TIMEOUT_MS = 30_000

OPENCODE_PERMISSION_OPTIONS = (
    PermissionOption(option_id="once", name="Allow Once", kind="allow_once"),
    PermissionOption(option_id="always", name="Allow Always", kind="allow_always"),
    PermissionOption(option_id="reject", name="Reject", kind="reject_once"),
)


class OpenCodeAcpBackend(AcpBackend):
    backend_type = "opencode"
    default_command = "opencode"

    def __init__(self, config: BackendConfig | None = None, *, transport_factory=None):
        config = config or BackendConfig()
        updates: dict[str, Any] = {}
        if "init_timeout_ms" not in config.model_fields_set:
            updates["init_timeout_ms"] = DEFAULT_INIT_TIMEOUT_MS
        if not config.args and not config.fallback_args:
            updates["args"] = ["acp"]
        if updates:
            config = config.model_copy(update=updates)
        super().__init__(config, transport_factory=transport_factory)
        self.model = config.model or DEFAULT_MODEL
        self.variant = config.variant

    def config_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"model": self.model}
        if self.variant:
            content["reasoningEffort"] = self.variant
        return content

    def _launch_env(self) -> dict[str, str]:
        content = json.dumps(self.config_content())
        logger.debug("[%s] Launching with config %s", self.backend_type, content)
        return self.config.process_env(OPENCODE_CONFIG_CONTENT=content)

    def _session_params(self, session: Session) -> dict[str, Any]:
        params: dict[str, Any] = {"cwd": session.cwd, "mcpServers": session.mcp_servers, "model": self.model}
        if self.variant:
            params["variant"] = self.variant
        return params

    async def new_session(self, config) -> str:
        if config.model and config.model != self.model:
            logger.warning(
                "[%s] Per-session model %s ignored; the process runs %s (use set_model)",
                self.backend_type,
                config.model,
                self.model,
            )
            config = config.model_copy(update={"model": None})
        return await super().new_session(config)

    def get_model(self, session_id: str) -> str | None:
        self._get_session(session_id)
        return self.model

    async def set_model(self, session_id: str, model: str) -> None:
        """Relaunch OpenCode on ``model``. All sessions of this backend are disposed."""
        self._get_session(session_id)
        if model == self.model:
            return
        logger.info("[%s] Changing model from %s to %s", self.backend_type, self.model, model)
        self.model = model
        async with self._connect_lock:
            await self._relaunch(f"Model changed to {model}")

    async def _on_permission_request(self, params: Any, request_id: int | str) -> dict[str, Any]:
        permission = params.get("permission") if isinstance(params, dict) else None
        if not isinstance(permission, dict):
            return await super()._on_permission_request(params, request_id)

        session = self._session_by_remote(params.get("sessionId"))
        if session is None:
            return {"outcome": {"outcome": "cancelled"}}
        pid = permission.get("id") if isinstance(permission.get("id"), str) else str(request_id)
        call_id = permission.get("callId")
        request = PermissionRequest(
            id=pid,
            session_id=session.local_id,
            tool_call_id=call_id if isinstance(call_id, str) and call_id else pid,
            title=permission.get("title") if isinstance(permission.get("title"), str) else "Permission Request",
            kind=permission.get("type") if isinstance(permission.get("type"), str) else "unknown",
            raw_input=permission.get("metadata") or {},
            options=list(OPENCODE_PERMISSION_OPTIONS),
        )
        response = await self.permissions.request(request)
        if response is None:
            return {"outcome": {"outcome": "cancelled"}}
        return response.to_acp()
