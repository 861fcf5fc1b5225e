"""OpenAI-compatible ``/chat/completions`` APIs (OpenRouter, xAI Grok, NVIDIA NIM).

These backends keep no state on the server: every prompt POSTs the whole
conversation with ``stream: true`` and reads the reply from the streamed
response body. The conversation history lives here, per session, and only
records completed exchanges.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import httpx

from agent_conduit.backends.acp import is_auth_failure
from agent_conduit.backends.base import BackendBase
from agent_conduit.backends.session import Session
from agent_conduit.config import BackendConfig
from agent_conduit.errors import (
    AuthenticationError,
    HttpTransportError,
    InitializationError,
    SessionCreationError,
    TransportClosedError,
)
from agent_conduit.models import HistoryMessage, PromptContent
from agent_conduit.normalizer import ChatChunkNormalizer
from agent_conduit.transport.sse import HttpSseTransport

logger = logging.getLogger("agent_conduit.backends.chat_completions")

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI coding assistant. Current working directory: {cwd}"

CHAT_PRESETS: dict[str, dict[str, Any]] = {
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "request_options": {"max_tokens": 8192, "temperature": 0.7},
    },
    "grok": {
        "base_url": "https://api.x.ai/v1",
        "api_key_env": "GROK_API_KEY",
        "model": "grok-code-fast-1",
        "request_options": {"max_tokens": 8192, "temperature": 0.7},
    },
    "nim": {
        "base_url": "https://integrate.api.nvidia.com/v1",
        "api_key_env": "NVIDIA_API_KEY",
        "request_options": {"max_tokens": 4096, "temperature": 0.7, "top_p": 0.95},
    },
}
"""Connection defaults per provider; fields set in the caller's config win."""


class ChatCompletionsBackend(BackendBase):
    """Streaming chat-completions client driven through the backend contract.

    There are no tool calls and no permission prompts; a registered
    permission handler is simply never called.

    Args:
        config: ``base_url``, ``model`` and ``api_key`` / ``api_key_env`` are
            required unless a preset supplies them.
        preset: Name in ``CHAT_PRESETS`` whose defaults sit under ``config``.
        client: Pre-built httpx client (tests inject ``httpx.MockTransport``).
    """

    backend_type = "chat-completions"

    def __init__(
        self,
        config: BackendConfig | None = None,
        *,
        preset: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if preset is not None:
            if preset not in CHAT_PRESETS:
                raise KeyError(f"Unknown chat-completions preset '{preset}'")
            overrides = config.model_dump(exclude_unset=True) if config is not None else {}
            config = BackendConfig.model_validate({**CHAT_PRESETS[preset], **overrides})
            self.backend_type = preset
        super().__init__(config)
        self._client = client
        self._transport: HttpSseTransport | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self.config.base_url:
            raise InitializationError(f"{self.backend_type} backend needs a base_url")
        headers = dict(self.config.headers)
        api_key = self.config.resolve_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        elif self.config.api_key_env:
            raise InitializationError(
                f"{self.backend_type} API key not configured. Set {self.config.api_key_env} or pass api_key"
            )
        self._transport = HttpSseTransport(self.config.base_url, client=self._client, headers=headers)
        self._initialized = True
        logger.info("[%s] Ready (model=%s)", self.backend_type, self.config.model)

    def _require_transport(self) -> HttpSseTransport:
        if self._transport is None:
            raise TransportClosedError(f"{self.backend_type} backend is not connected")
        return self._transport

    async def _backend_disconnect(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _backend_new_session(self, session: Session) -> str:
        if not session.model:
            raise SessionCreationError(f"{self.backend_type} backend needs a model (config or SessionConfig.model)")
        prompt = self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        history: list[dict[str, str]] = [{"role": "system", "content": prompt.replace("{cwd}", session.cwd)}]
        session.extra["history"] = history
        return uuid.uuid4().hex

    def history(self, session_id: str) -> list[dict[str, str]]:
        """Messages sent ahead of the next prompt, system message first."""
        return list(self._get_session(session_id).extra["history"])

    def restore_history(self, session_id: str, messages: list[HistoryMessage] | list[dict[str, Any]]) -> None:
        """Replay earlier turns (e.g. after a restart) into a fresh session."""
        session = self._get_session(session_id)
        restored = [
            m if isinstance(m, HistoryMessage) else HistoryMessage.model_validate(m) for m in messages
        ]
        session.extra["history"].extend(m.model_dump() for m in restored)
        logger.debug("[%s] Restored %d history message(s) for %s", self.backend_type, len(restored), session_id)

    async def set_model(self, session_id: str, model: str) -> None:
        session = self._get_session(session_id)
        logger.info("[%s] Session %s model %s -> %s", self.backend_type, session_id, session.model, model)
        session.model = model

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    def _new_normalizer(self) -> ChatChunkNormalizer:
        return ChatChunkNormalizer()

    async def _backend_prompt(self, session: Session, blocks: list[PromptContent]) -> str | None:
        transport = self._require_transport()
        normalizer: ChatChunkNormalizer = session.normalizer
        history: list[dict[str, str]] = session.extra["history"]
        user_message = {"role": "user", "content": "\n".join(block.text for block in blocks)}
        body: dict[str, Any] = {
            **self.config.request_options,
            "model": session.model,
            "messages": [*history, user_message],
            "stream": True,
        }
        try:
            async for chunk in transport.stream_post("/chat/completions", json=body):
                self._emit(session, normalizer.normalize(chunk))
        except HttpTransportError as e:
            if is_auth_failure(e.body, e.status_code) or e.status_code == 403:
                text = f"Authentication failed: {e}"
                if self.config.auth_hint:
                    text += f". {self.config.auth_hint}"
                raise AuthenticationError(text) from e
            raise

        history.append(user_message)
        if normalizer.reply:
            history.append({"role": "assistant", "content": normalizer.reply})
        return normalizer.stop_reason

    async def _backend_cancel(self, session: Session) -> None:
        # Closing the streamed response is the abort.
        if session.task is not None and not session.task.done():
            session.task.cancel()
            await asyncio.gather(session.task, return_exceptions=True)
