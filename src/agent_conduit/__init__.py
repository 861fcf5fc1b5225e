"""agent-conduit: drive coding-agent backends through one asyncio contract."""

from agent_conduit.config import BackendConfig, load_config
from agent_conduit.errors import (
    AgentBackendError,
    AuthenticationError,
    BackendError,
    BackendNotInitializedError,
    InitializationError,
    PromptInProgressError,
    SessionCreationError,
    SessionExpiredError,
    SessionNotFoundError,
    TransportError,
)
from agent_conduit.models import (
    HistoryMessage,
    PermissionOption,
    PermissionRequest,
    PermissionResponse,
    PromptContent,
    SessionConfig,
    UnifiedMessage,
)
from agent_conduit.stream import PromptStream

__all__ = [
    # Core models
    "BackendConfig",
    "HistoryMessage",
    "PermissionOption",
    "PermissionRequest",
    "PermissionResponse",
    "PromptContent",
    "PromptStream",
    "SessionConfig",
    "UnifiedMessage",
    "load_config",
    # Errors
    "AgentBackendError",
    "AuthenticationError",
    "BackendError",
    "BackendNotInitializedError",
    "InitializationError",
    "PromptInProgressError",
    "SessionCreationError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "TransportError",
    # Backends (lazy loaded)
    "AcpBackend",
    "ChatCompletionsBackend",
    "CodexMcpBackend",
    "OpenCodeAcpBackend",
    "OpenCodeHttpBackend",
    "BackendRegistry",
    "default_registry",
]

_LAZY_BACKENDS = {
    "AcpBackend",
    "ChatCompletionsBackend",
    "CodexMcpBackend",
    "OpenCodeAcpBackend",
    "OpenCodeHttpBackend",
    "BackendRegistry",
    "default_registry",
}


def __getattr__(name: str):
    """Lazy imports for the backends package (it pulls in httpx and asyncio subprocess plumbing)."""
    if name in _LAZY_BACKENDS:
        from agent_conduit import backends

        return getattr(backends, name)
    raise AttributeError(f"module 'agent_conduit' has no attribute {name!r}")
