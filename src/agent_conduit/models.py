"""Core data models for agent-conduit."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Unified message vocabulary
# ---------------------------------------------------------------------------

ToolCallStatus = Literal["pending", "in_progress", "completed", "failed"]


class TextMessage(BaseModel):
    """Assistant text delta."""

    type: Literal["text"] = "text"
    text: str


class ReasoningMessage(BaseModel):
    """Reasoning / thinking delta."""

    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallMessage(BaseModel):
    """A tool call entered a new state."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: Any = None
    status: ToolCallStatus = "pending"


class ToolResultMessage(BaseModel):
    """Output of a finished tool call."""

    type: Literal["tool_result"] = "tool_result"
    id: str
    output: Any = None
    status: ToolCallStatus = "completed"


class TurnCompleteMessage(BaseModel):
    """The prompt's streaming output has finished."""

    type: Literal["turn_complete"] = "turn_complete"
    stop_reason: str


class ErrorMessage(BaseModel):
    """The turn failed."""

    type: Literal["error"] = "error"
    message: str


UnifiedMessage = Annotated[
    Union[
        TextMessage,
        ReasoningMessage,
        ToolCallMessage,
        ToolResultMessage,
        TurnCompleteMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]
"""The only message vocabulary consumers are allowed to depend on."""


# ---------------------------------------------------------------------------
# Sessions and prompts
# ---------------------------------------------------------------------------


class SessionConfig(BaseModel):
    """Parameters for ``new_session``."""

    cwd: str
    mcp_servers: list[dict[str, Any]] = Field(default_factory=list)
    model: str | None = None


class PromptContent(BaseModel):
    """One block of prompt content sent to the backend."""

    type: Literal["text"] = "text"
    text: str


def as_prompt_content(content: str | PromptContent | list[PromptContent] | list[str]) -> list[PromptContent]:
    """Accept a plain string or a list of blocks and return a list of blocks."""
    if isinstance(content, str):
        return [PromptContent(text=content)]
    if isinstance(content, PromptContent):
        return [content]
    return [c if isinstance(c, PromptContent) else PromptContent(text=str(c)) for c in content]


class HistoryMessage(BaseModel):
    """One prior turn replayed into a chat-completions session."""

    role: Literal["user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

Decision = Literal["approved", "approved_for_session", "denied", "abort"]
"""Abstract decision vocabulary used for elicitation-style backends."""

DECISIONS: tuple[str, ...] = ("approved", "approved_for_session", "denied", "abort")


class PermissionOption(BaseModel):
    """One answer the backend offers for a permission prompt."""

    option_id: str
    name: str
    kind: str = "allow_once"


class PermissionRequest(BaseModel):
    """A backend asking for approval before running a tool."""

    id: str
    session_id: str
    tool_call_id: str
    title: str | None = None
    kind: str | None = None
    raw_input: Any = None
    raw_output: Any = None
    options: list[PermissionOption] = Field(default_factory=list)


class PermissionResponse(BaseModel):
    """A decision supplied by the consumer for a pending permission prompt.

    ``outcome="selected"`` carries the chosen ``option_id``;
    ``outcome="cancelled"`` means the prompt was dismissed without a choice.
    """

    outcome: Literal["selected", "cancelled"]
    option_id: str | None = None
    reason: str | None = None

    @classmethod
    def select(cls, option_id: str, reason: str | None = None) -> PermissionResponse:
        return cls(outcome="selected", option_id=option_id, reason=reason)

    @classmethod
    def cancelled(cls, reason: str | None = None) -> PermissionResponse:
        return cls(outcome="cancelled", reason=reason)

    def to_acp(self) -> dict[str, Any]:
        """Encode as an ACP ``session/request_permission`` result."""
        if self.outcome == "cancelled" or not self.option_id:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": self.option_id}}


PermissionHandler = Callable[[PermissionRequest], Union[Awaitable[None], None]]
"""(request) → None. Called when a backend asks for approval."""
