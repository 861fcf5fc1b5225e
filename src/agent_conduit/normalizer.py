"""Normalization of backend streaming payloads into unified messages.

Each backend family streams its own update shapes: ACP ``session/update``
notifications, OpenCode ``message.part.updated`` push events, Codex
``codex/event`` notifications, chat-completions stream chunks. The normalizers here turn them into the
closed ``UnifiedMessage`` set. A normalizer instance lives for one prompt
and tracks tool-call state so every status change is reported once.

Unknown payload kinds are dropped rather than raising: forward
compatibility with backend wire formats takes priority over strictness.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agent_conduit.models import (
    ReasoningMessage,
    TextMessage,
    ToolCallMessage,
    ToolCallStatus,
    ToolResultMessage,
    UnifiedMessage,
)

logger = logging.getLogger("agent_conduit.normalizer")

GENERIC_TOOL_FAILURE = "Tool call failed"

_STATUS_MAP: dict[str, ToolCallStatus] = {
    "pending": "pending",
    "running": "in_progress",
    "in_progress": "in_progress",
    "completed": "completed",
    "error": "failed",
    "failed": "failed",
}


def map_tool_status(status: Any) -> ToolCallStatus:
    """Map backend tool status vocabulary onto the unified one."""
    if isinstance(status, str):
        mapped = _STATUS_MAP.get(status.lower())
        if mapped:
            return mapped
        logger.debug("Unknown tool status %r, treating as pending", status)
    return "pending"


def _text_of(value: Any) -> str:
    """Flatten ACP content blocks (or plain strings) to text."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if value.get("type") == "content" and "content" in value:
            return _text_of(value["content"])
        text = value.get("text")
        return text if isinstance(text, str) else ""
    if isinstance(value, list):
        return "".join(_text_of(item) for item in value)
    return ""


@dataclass
class _ToolState:
    name: str
    input: Any = None
    status: ToolCallStatus | None = None
    resulted: bool = False


@dataclass
class ToolCallTracker:
    """Emits tool_call / tool_result messages as a call moves through its states."""

    tools: dict[str, _ToolState] = field(default_factory=dict)

    def update(
        self,
        call_id: str,
        *,
        name: str | None = None,
        input: Any = None,
        status: Any = None,
        output: Any = None,
        error: Any = None,
    ) -> list[UnifiedMessage]:
        state = self.tools.get(call_id)
        if state is None:
            state = _ToolState(name=name or "tool", input=input)
            self.tools[call_id] = state
        else:
            if name:
                state.name = name
            if input is not None:
                state.input = input

        new_status = map_tool_status(status) if status is not None else (state.status or "pending")
        out: list[UnifiedMessage] = []
        if new_status != state.status:
            state.status = new_status
            out.append(ToolCallMessage(id=call_id, name=state.name, input=state.input, status=new_status))

        if not state.resulted and new_status == "completed":
            state.resulted = True
            out.append(ToolResultMessage(id=call_id, output=output, status="completed"))
        elif not state.resulted and new_status == "failed":
            state.resulted = True
            message = error if error not in (None, "") else output
            if message in (None, ""):
                message = GENERIC_TOOL_FAILURE
            out.append(ToolResultMessage(id=call_id, output=message, status="failed"))
        return out


# ---------------------------------------------------------------------------
# ACP
# ---------------------------------------------------------------------------


class AcpUpdateNormalizer:
    """Normalizes ACP ``session/update`` payloads (the ``update`` object)."""

    def __init__(self) -> None:
        self._tools = ToolCallTracker()

    def normalize(self, update: Any) -> list[UnifiedMessage]:
        if not isinstance(update, dict):
            return []
        kind = update.get("sessionUpdate")

        if kind == "agent_message_chunk":
            text = _text_of(update.get("content"))
            return [TextMessage(text=text)] if text else []

        if kind == "agent_thought_chunk":
            text = _text_of(update.get("content"))
            return [ReasoningMessage(text=text)] if text else []

        if kind in ("tool_call", "tool_call_update"):
            call_id = update.get("toolCallId")
            if not isinstance(call_id, str) or not call_id:
                return []
            raw_output = update.get("rawOutput")
            output = raw_output if raw_output is not None else (_text_of(update.get("content")) or None)
            error = None
            if isinstance(raw_output, dict):
                error = raw_output.get("error")
            return self._tools.update(
                call_id,
                name=update.get("title") or update.get("kind"),
                input=update.get("rawInput"),
                status=update.get("status"),
                output=output,
                error=error,
            )

        logger.debug("Dropping ACP update kind %r", kind)
        return []


# ---------------------------------------------------------------------------
# OpenCode
# ---------------------------------------------------------------------------


class OpenCodePartNormalizer:
    """Normalizes OpenCode ``message.part.updated`` events.

    OpenCode re-sends the whole part on every update (with an optional
    ``delta``); text deltas are derived from the last text seen per part.
    Parts belonging to user messages are skipped.
    """

    def __init__(self) -> None:
        self._tools = ToolCallTracker()
        self._texts: dict[str, str] = {}
        self._user_messages: set[str] = set()

    def note_message(self, info: Any) -> None:
        """Record message metadata from ``message.updated`` (to filter user echoes)."""
        if isinstance(info, dict) and info.get("role") == "user" and isinstance(info.get("id"), str):
            self._user_messages.add(info["id"])

    def normalize(self, part: Any, delta: Any = None) -> list[UnifiedMessage]:
        if not isinstance(part, dict):
            return []
        if part.get("messageID") in self._user_messages:
            return []
        part_type = part.get("type")

        if part_type in ("text", "reasoning"):
            if part.get("synthetic"):
                return []
            text = self._delta(part, delta)
            if not text:
                return []
            return [TextMessage(text=text) if part_type == "text" else ReasoningMessage(text=text)]

        if part_type == "tool":
            call_id = part.get("callID") or part.get("id")
            if not isinstance(call_id, str) or not call_id:
                return []
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            return self._tools.update(
                call_id,
                name=part.get("tool"),
                input=state.get("input"),
                status=state.get("status"),
                output=state.get("output"),
                error=state.get("error"),
            )

        logger.debug("Dropping OpenCode part type %r", part_type)
        return []

    def _delta(self, part: dict, delta: Any) -> str:
        part_id = str(part.get("id") or "")
        full = part.get("text") if isinstance(part.get("text"), str) else None
        previous = self._texts.get(part_id, "")
        if isinstance(delta, str):
            self._texts[part_id] = full if full is not None else previous + delta
            return delta
        if full is None:
            return ""
        self._texts[part_id] = full
        if full.startswith(previous):
            return full[len(previous):]
        return full


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------


class CodexEventNormalizer:
    """Normalizes Codex ``codex/event`` messages (the ``msg`` object)."""

    TOOL_NAME = "CodexBash"

    def __init__(self) -> None:
        self._tools = ToolCallTracker()
        self._saw_delta = False

    def normalize(self, event: Any) -> list[UnifiedMessage]:
        if not isinstance(event, dict):
            return []
        kind = event.get("type")

        if kind == "agent_message_delta":
            self._saw_delta = True
            delta = event.get("delta")
            return [TextMessage(text=delta)] if isinstance(delta, str) and delta else []
        if kind == "agent_message":
            # Full message repeats the streamed deltas.
            if self._saw_delta:
                return []
            message = event.get("message")
            return [TextMessage(text=message)] if isinstance(message, str) and message else []

        if kind in ("agent_reasoning", "agent_reasoning_delta"):
            text = event.get("text") if kind == "agent_reasoning" else event.get("delta")
            return [ReasoningMessage(text=text)] if isinstance(text, str) and text else []

        if kind == "exec_command_begin":
            call_id = event.get("call_id")
            if not isinstance(call_id, str):
                return []
            return self._tools.update(
                call_id,
                name=self.TOOL_NAME,
                input={"command": event.get("command"), "cwd": event.get("cwd")},
                status="running",
            )
        if kind == "exec_command_end":
            call_id = event.get("call_id")
            if not isinstance(call_id, str):
                return []
            exit_code = event.get("exit_code")
            output = event.get("aggregated_output") or event.get("stdout") or ""
            failed = isinstance(exit_code, int) and exit_code != 0
            return self._tools.update(
                call_id,
                name=self.TOOL_NAME,
                status="error" if failed else "completed",
                output=output,
                error=(event.get("stderr") or output) if failed else None,
            )

        if kind == "patch_apply_begin":
            call_id = event.get("call_id")
            if not isinstance(call_id, str):
                return []
            return self._tools.update(
                call_id, name="CodexPatch", input={"changes": event.get("changes")}, status="running"
            )
        if kind == "patch_apply_end":
            call_id = event.get("call_id")
            if not isinstance(call_id, str):
                return []
            success = event.get("success", True)
            return self._tools.update(
                call_id,
                name="CodexPatch",
                status="completed" if success else "error",
                output=event.get("stdout") or "",
                error=event.get("stderr") if not success else None,
            )

        logger.debug("Dropping Codex event type %r", kind)
        return []


# ---------------------------------------------------------------------------
# Chat completions
# ---------------------------------------------------------------------------


class ChatChunkNormalizer:
    """Normalizes ``chat.completion.chunk`` payloads.

    Keeps the assistant text (and reasoning) of the turn so the caller can
    append it to the conversation history.
    """

    def __init__(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.finish_reason: str | None = None

    def normalize(self, chunk: Any) -> list[UnifiedMessage]:
        choices = chunk.get("choices") if isinstance(chunk, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return []
        choice = choices[0]
        if isinstance(choice.get("finish_reason"), str):
            self.finish_reason = choice["finish_reason"]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            return []

        out: list[UnifiedMessage] = []
        reasoning = delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            self.reasoning += reasoning
            out.append(ReasoningMessage(text=reasoning))
        content = delta.get("content")
        if isinstance(content, str) and content:
            self.content += content
            out.append(TextMessage(text=content))
        return out

    @property
    def reply(self) -> str:
        """What the assistant said, falling back to its reasoning."""
        return self.content or self.reasoning

    @property
    def stop_reason(self) -> str:
        return "max_tokens" if self.finish_reason == "length" else "end_turn"


def summarize(value: Any, limit: int = 200) -> str:
    """Short JSON rendering of ``value`` for error messages and logs."""
    try:
        text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    return text[:limit]
