"""Backend configuration.

A configuration loader (CLI flags, settings file, daemon) hands each
backend a ``BackendConfig``. Keys are accepted in snake_case or camelCase
so settings written for other tooling (``initTimeoutMs``, ``fallbackArgs``)
validate unchanged.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from agent_conduit.errors import ConfigError

logger = logging.getLogger("agent_conduit.config")

DEFAULT_INIT_TIMEOUT_MS = 10_000
DEFAULT_CLOSE_TIMEOUT_S = 2.0


class BackendConfig(BaseModel):
    """Launch and connection settings for one backend instance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    command: str | None = None
    args: list[str] = Field(default_factory=list)
    fallback_args: list[list[str]] = Field(default_factory=list)
    """Ordered argument sets tried in turn when the invocation form differs across versions."""

    env: dict[str, str] = Field(default_factory=dict)
    model: str | None = None
    variant: str | None = None
    """Model variant / reasoning effort (e.g. "high")."""

    init_timeout_ms: float = DEFAULT_INIT_TIMEOUT_MS
    close_timeout_s: float = DEFAULT_CLOSE_TIMEOUT_S
    cwd: str | None = None
    """Working directory for the child process."""

    base_url: str | None = None
    directory: str | None = None
    """Project directory passed to HTTP backends."""

    auth_hint: str | None = None
    """Extra hint appended to authentication failures (e.g. which env var to set)."""

    api_key: str | None = None
    api_key_env: str | None = None
    """Environment variable read when ``api_key`` is unset."""

    headers: dict[str, str] = Field(default_factory=dict)
    system_prompt: str | None = None
    """System message for chat-completions sessions; ``{cwd}`` becomes the session directory."""

    request_options: dict[str, Any] = Field(default_factory=dict)
    """Extra chat-completions body fields (``max_tokens``, ``temperature``, ...)."""

    def resolve_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None

    def arg_candidates(self) -> list[list[str]]:
        """Argument sets to try in order: ``fallback_args`` or just ``args``."""
        if self.fallback_args:
            return [list(candidate) for candidate in self.fallback_args]
        return [list(self.args)]

    def process_env(self, **extra: str) -> dict[str, str]:
        """Environment for a child process: ``os.environ`` overlaid with ``env``."""
        env = dict(os.environ)
        env.update(self.env)
        env.update(extra)
        return env


def load_config(path: str | Path) -> dict[str, BackendConfig]:
    """Load backend configs from a JSON file.

    The file holds ``{"backends": {name: {...}}}``; a bare ``{name: {...}}``
    mapping is accepted too.

    Raises:
        ConfigError: If the file cannot be read or an entry is invalid.
    """
    p = Path(path)
    try:
        raw = json.loads(p.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read backend config {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Backend config {p} must be a JSON object")
    entries: Any = raw.get("backends", raw)
    if not isinstance(entries, dict):
        raise ConfigError(f"'backends' in {p} must be an object")

    configs: dict[str, BackendConfig] = {}
    for name, entry in entries.items():
        try:
            configs[str(name)] = BackendConfig.model_validate(entry)
        except ValidationError as e:
            raise ConfigError(f"Invalid config for backend '{name}': {e}") from e
    logger.debug("Loaded %d backend config(s) from %s", len(configs), p)
    return configs
