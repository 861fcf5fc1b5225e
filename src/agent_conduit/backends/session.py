"""Per-session bookkeeping shared by every adapter."""

from __future__ import annotations

import asyncio
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any

from agent_conduit.stream import PromptStream


class SessionState(enum.Enum):
    CREATED = "created"
    PROMPTING = "prompting"
    IDLE = "idle"
    DISPOSED = "disposed"


@dataclass
class Session:
    """One conversation with a backend.

    ``local_id`` is what callers see; ``remote_id`` is whatever the backend
    assigned (Codex only assigns one on the first prompt). ``generation``
    ties the session to the transport that created it.
    """

    cwd: str
    remote_id: str | None = None
    model: str | None = None
    variant: str | None = None
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    generation: int = 0
    local_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.CREATED
    stream: PromptStream | None = None
    task: asyncio.Task | None = None
    normalizer: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def prompting(self) -> bool:
        return self.stream is not None and not self.stream.done

    def begin_prompt(self, stream: PromptStream, normalizer: Any) -> None:
        self.stream = stream
        self.normalizer = normalizer
        self.state = SessionState.PROMPTING

    def end_prompt(self) -> None:
        if self.state is SessionState.PROMPTING:
            self.state = SessionState.IDLE
        self.task = None

    def dispose(self, reason: str = "cancelled") -> None:
        """Settle any in-flight prompt and mark the session unusable."""
        if self.stream is not None:
            self.stream.finish(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.state = SessionState.DISPOSED
