"""Tests for the backend registry."""

import pytest

from agent_conduit.backends import (
    AcpBackend,
    BackendRegistry,
    ChatCompletionsBackend,
    CodexMcpBackend,
    OpenCodeAcpBackend,
    OpenCodeHttpBackend,
    default_registry,
)
from agent_conduit.config import BackendConfig


class MockBackend:
    """Minimal stand-in satisfying the registry's factory contract."""

    backend_type = "mock"

    def __init__(self, config: BackendConfig):
        self.config = config


def test_registry_basic():
    """Test basic registry operations."""
    registry = BackendRegistry()

    # Empty registry
    assert registry.list() == []
    assert not registry.has("mock")

    registry.register("mock", MockBackend)
    assert registry.list() == ["mock"]
    assert registry.has("mock")

    registry.unregister("mock")
    assert registry.list() == []
    assert not registry.has("mock")


def test_registry_create_with_overrides():
    registry = BackendRegistry()
    registry.register("mock", MockBackend)

    backend = registry.create("mock", {"command": "gemini", "initTimeoutMs": 500}, model="gemini-2.5-pro")
    assert isinstance(backend, MockBackend)
    assert backend.config.command == "gemini"
    assert backend.config.init_timeout_ms == 500
    assert backend.config.model == "gemini-2.5-pro"

    # Unknown backend
    with pytest.raises(KeyError, match="not registered"):
        registry.create("unknown")


def test_registry_create_keeps_config_defaults():
    registry = BackendRegistry()
    registry.register("mock", MockBackend)

    config = BackendConfig(command="agent")
    assert registry.create("mock", config).config is config
    assert registry.create("mock").config == BackendConfig()


def test_registry_overwrite():
    """Test overwriting a registered backend."""
    registry = BackendRegistry()

    class Other(MockBackend):
        backend_type = "other"

    registry.register("mock", MockBackend)
    registry.register("mock", Other)  # Overwrites

    assert registry.create("mock").backend_type == "other"


def test_default_registry():
    registry = default_registry()
    assert sorted(registry.list()) == [
        "acp",
        "chat-completions",
        "codex",
        "grok",
        "nim",
        "opencode",
        "opencode-http",
        "openrouter",
    ]

    assert isinstance(registry.create("acp", command="gemini"), AcpBackend)
    assert isinstance(registry.create("codex"), CodexMcpBackend)
    assert isinstance(registry.create("opencode"), OpenCodeAcpBackend)
    assert isinstance(registry.create("opencode-http", base_url="http://127.0.0.1:4096"), OpenCodeHttpBackend)

    grok = registry.create("grok", model="grok-4")
    assert isinstance(grok, ChatCompletionsBackend)
    assert grok.backend_type == "grok"
    assert grok.config.base_url == "https://api.x.ai/v1"
    assert grok.config.api_key_env == "GROK_API_KEY"
    assert grok.config.model == "grok-4"

    nim = registry.create("nim", {"model": "minimaxai/minimax-m2", "requestOptions": {"max_tokens": 1024}})
    assert nim.config.request_options == {"max_tokens": 1024}
    assert registry.create("openrouter").config.base_url == "https://openrouter.ai/api/v1"


def test_backend_types():
    assert AcpBackend.backend_type == "acp"
    assert CodexMcpBackend.backend_type == "codex"
    assert OpenCodeAcpBackend.backend_type == "opencode"
    assert OpenCodeHttpBackend.backend_type == "opencode-http"
    assert ChatCompletionsBackend.backend_type == "chat-completions"
