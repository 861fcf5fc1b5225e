"""Backend registry for discovering and creating backend instances."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable

from agent_conduit.backends.protocol import AgentBackend
from agent_conduit.config import BackendConfig

logger = logging.getLogger("agent_conduit.backends.registry")


BackendFactory = Callable[[BackendConfig], AgentBackend]
"""Factory function that creates a backend instance from its config."""


class BackendRegistry:
    """Registry for backend adapters."""

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, name: str, factory: BackendFactory) -> None:
        """Register a backend factory.

        Args:
            name: Backend name (e.g., "acp", "opencode-http").
            factory: Factory function that takes a BackendConfig and returns a backend.
        """
        if name in self._factories:
            logger.warning("Overwriting existing backend factory: %s", name)
        self._factories[name] = factory
        logger.debug("Registered backend: %s", name)

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def create(self, name: str, config: BackendConfig | dict[str, Any] | None = None, **overrides: Any) -> AgentBackend:
        """Create a backend instance.

        Args:
            name: Backend name (must be registered).
            config: Backend config, or a mapping validated into one.
            **overrides: Config fields set on top of ``config``.

        Returns:
            Backend instance (not yet initialized).

        Raises:
            KeyError: If backend name is not registered.
        """
        if name not in self._factories:
            available = ", ".join(self._factories.keys()) or "(none)"
            raise KeyError(f"Backend '{name}' not registered. Available backends: {available}")

        if config is None:
            config = BackendConfig()
        elif not isinstance(config, BackendConfig):
            config = BackendConfig.model_validate(config)
        if overrides:
            config = BackendConfig.model_validate({**config.model_dump(exclude_unset=True), **overrides})
        logger.debug("Creating backend: %s", name)
        return self._factories[name](config)

    def list(self) -> list[str]:
        """Get list of registered backend names."""
        return list(self._factories.keys())

    def has(self, name: str) -> bool:
        return name in self._factories


def default_registry() -> BackendRegistry:
    """Registry with every built-in backend."""
    from agent_conduit.backends.acp import AcpBackend
    from agent_conduit.backends.chat_completions import CHAT_PRESETS, ChatCompletionsBackend
    from agent_conduit.backends.codex import CodexMcpBackend
    from agent_conduit.backends.opencode_acp import OpenCodeAcpBackend
    from agent_conduit.backends.opencode_http import OpenCodeHttpBackend

    registry = BackendRegistry()
    registry.register("acp", AcpBackend)
    registry.register("opencode", OpenCodeAcpBackend)
    registry.register("opencode-http", OpenCodeHttpBackend)
    registry.register("codex", CodexMcpBackend)
    registry.register("chat-completions", ChatCompletionsBackend)
    for preset in CHAT_PRESETS:
        registry.register(preset, functools.partial(ChatCompletionsBackend, preset=preset))
    return registry
