"""Protocol definition for agent backends.

This protocol defines the contract between a coordinator and the coding
agents it drives (any ACP agent, OpenCode over ACP or HTTP, Codex over
MCP). Each adapter owns exactly one transport; the adapter's lifetime
bounds the transport's lifetime.
"""

from __future__ import annotations

from typing import Protocol

from agent_conduit.models import PermissionHandler, PermissionResponse, PromptContent, SessionConfig
from agent_conduit.stream import PromptStream


class AgentBackend(Protocol):
    """Adapter interface for agent backends.

    The coordinator calls these methods to drive sessions; output comes
    back through the ``PromptStream`` returned by ``prompt``, and tool-use
    approvals through the handler registered with ``on_permission_request``.
    """

    backend_type: str
    """Identifier for the backend (e.g. "acp", "opencode-http", "codex")."""

    async def initialize(self) -> None:
        """Connect and perform the handshake.

        Raises:
            InitializationError: Handshake failed or timed out on every
                argument candidate.
        """
        ...

    async def new_session(self, config: SessionConfig) -> str:
        """Create a conversation.

        Args:
            config: Working directory, MCP servers and optional model.

        Returns:
            Local session id, used for every other call.

        Raises:
            AuthenticationError: The backend is not logged in.
            SessionCreationError: Any other creation failure.
        """
        ...

    async def prompt(self, session_id: str, content: str | list[PromptContent]) -> PromptStream:
        """Send a prompt and return the stream of its output.

        Args:
            session_id: Local session id.
            content: Prompt text or content blocks.

        Raises:
            SessionNotFoundError: Unknown (or expired) session.
            PromptInProgressError: The previous prompt has not settled.
        """
        ...

    async def cancel_prompt(self, session_id: str) -> None:
        """Cancel the in-flight prompt; its stream ends with ``cancelled``."""
        ...

    async def respond_to_permission(self, session_id: str, request_id: str, response: PermissionResponse) -> None:
        """Answer a pending permission prompt. Unknown ids are ignored."""
        ...

    def on_permission_request(self, handler: PermissionHandler | None) -> None:
        """Register the callback invoked when the backend asks for approval."""
        ...

    async def disconnect(self) -> None:
        """Cancel everything in flight, dispose all sessions and close the transport."""
        ...

    def get_model(self, session_id: str) -> str | None:
        """Model the session runs on, if known."""
        ...

    async def set_model(self, session_id: str, model: str) -> None:
        """Switch the session's model (not every backend supports it)."""
        ...
