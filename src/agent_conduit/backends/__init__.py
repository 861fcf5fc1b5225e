"""Backend adapters and the registry that builds them."""

from .acp import AcpBackend
from .base import BackendBase
from .chat_completions import CHAT_PRESETS, ChatCompletionsBackend
from .codex import CodexMcpBackend
from .opencode_acp import OpenCodeAcpBackend
from .opencode_http import OpenCodeHttpBackend
from .protocol import AgentBackend
from .registry import BackendFactory, BackendRegistry, default_registry
from .session import Session, SessionState

__all__ = [
    # Protocol
    "AgentBackend",
    "BackendBase",
    "Session",
    "SessionState",
    # Adapters
    "AcpBackend",
    "ChatCompletionsBackend",
    "CHAT_PRESETS",
    "CodexMcpBackend",
    "OpenCodeAcpBackend",
    "OpenCodeHttpBackend",
    # Registry
    "BackendFactory",
    "BackendRegistry",
    "default_registry",
]
