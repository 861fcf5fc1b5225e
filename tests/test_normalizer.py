"""Tests for streaming update normalization."""

import pytest

from agent_conduit.normalizer import (
    GENERIC_TOOL_FAILURE,
    AcpUpdateNormalizer,
    ChatChunkNormalizer,
    CodexEventNormalizer,
    OpenCodePartNormalizer,
    ToolCallTracker,
    map_tool_status,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("pending", "pending"),
        ("running", "in_progress"),
        ("in_progress", "in_progress"),
        ("completed", "completed"),
        ("error", "failed"),
        ("failed", "failed"),
        ("mystery", "pending"),
        (None, "pending"),
    ],
)
def test_map_tool_status(raw, expected):
    assert map_tool_status(raw) == expected


def test_acp_tool_call_running_then_completed():
    normalizer = AcpUpdateNormalizer()
    out = normalizer.normalize(
        {"sessionUpdate": "tool_call", "toolCallId": "t1", "title": "calc", "status": "running", "rawInput": {"x": 1}}
    )
    out += normalizer.normalize(
        {"sessionUpdate": "tool_call_update", "toolCallId": "t1", "status": "completed", "rawOutput": "42"}
    )

    assert [(m.type, m.status) for m in out] == [
        ("tool_call", "in_progress"),
        ("tool_call", "completed"),
        ("tool_result", "completed"),
    ]
    assert out[0].name == "calc"
    assert out[0].input == {"x": 1}
    assert out[2].output == "42"


def test_acp_repeated_status_not_reemitted():
    normalizer = AcpUpdateNormalizer()
    first = normalizer.normalize({"sessionUpdate": "tool_call", "toolCallId": "t1", "status": "pending"})
    again = normalizer.normalize({"sessionUpdate": "tool_call_update", "toolCallId": "t1", "status": "pending"})
    assert len(first) == 1
    assert again == []


def test_acp_text_and_thought_chunks():
    normalizer = AcpUpdateNormalizer()
    text = normalizer.normalize({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Hi"}})
    thought = normalizer.normalize({"sessionUpdate": "agent_thought_chunk", "content": {"type": "text", "text": "hmm"}})
    assert text[0].type == "text" and text[0].text == "Hi"
    assert thought[0].type == "reasoning" and thought[0].text == "hmm"
    assert normalizer.normalize({"sessionUpdate": "plan", "entries": []}) == []
    assert normalizer.normalize("garbage") == []


def test_acp_tool_output_from_content_blocks():
    normalizer = AcpUpdateNormalizer()
    out = normalizer.normalize(
        {
            "sessionUpdate": "tool_call",
            "toolCallId": "t2",
            "kind": "read",
            "status": "completed",
            "content": [{"type": "content", "content": {"type": "text", "text": "file body"}}],
        }
    )
    assert out[0].name == "read"
    assert out[-1].output == "file body"


def test_failed_tool_without_detail_uses_generic_message():
    tracker = ToolCallTracker()
    out = tracker.update("t1", name="bash", status="error")
    assert out[-1].type == "tool_result"
    assert out[-1].status == "failed"
    assert out[-1].output == GENERIC_TOOL_FAILURE


def test_failed_tool_prefers_error_text():
    tracker = ToolCallTracker()
    out = tracker.update("t1", name="bash", status="failed", output="partial", error="exit 2")
    assert out[-1].output == "exit 2"


def test_opencode_text_deltas_and_user_echo_filtered():
    normalizer = OpenCodePartNormalizer()
    normalizer.note_message({"id": "msg_user", "role": "user"})

    assert normalizer.normalize({"id": "p0", "messageID": "msg_user", "type": "text", "text": "my prompt"}) == []

    first = normalizer.normalize({"id": "p1", "messageID": "msg_a", "type": "text", "text": "Hel"})
    second = normalizer.normalize({"id": "p1", "messageID": "msg_a", "type": "text", "text": "Hello"})
    third = normalizer.normalize({"id": "p1", "messageID": "msg_a", "type": "text", "text": "Hello!"}, delta="!")
    assert [m.text for m in first + second + third] == ["Hel", "lo", "!"]


def test_opencode_tool_part_lifecycle():
    normalizer = OpenCodePartNormalizer()
    running = normalizer.normalize(
        {"type": "tool", "callID": "c1", "tool": "bash", "state": {"status": "running", "input": {"command": "ls"}}}
    )
    done = normalizer.normalize(
        {"type": "tool", "callID": "c1", "tool": "bash", "state": {"status": "completed", "output": "a\nb"}}
    )
    assert [(m.type, m.status) for m in running + done] == [
        ("tool_call", "in_progress"),
        ("tool_call", "completed"),
        ("tool_result", "completed"),
    ]
    assert running[0].input == {"command": "ls"}
    assert done[-1].output == "a\nb"


def test_opencode_synthetic_and_unknown_parts_dropped():
    normalizer = OpenCodePartNormalizer()
    assert normalizer.normalize({"id": "p", "type": "text", "text": "x", "synthetic": True}) == []
    assert normalizer.normalize({"id": "p", "type": "step-start"}) == []


def test_codex_events():
    normalizer = CodexEventNormalizer()
    out = normalizer.normalize({"type": "agent_message_delta", "delta": "Work"})
    out += normalizer.normalize({"type": "agent_message", "message": "Work"})
    out += normalizer.normalize({"type": "agent_reasoning", "text": "thinking"})
    out += normalizer.normalize({"type": "exec_command_begin", "call_id": "e1", "command": ["ls"], "cwd": "/r"})
    out += normalizer.normalize({"type": "exec_command_end", "call_id": "e1", "exit_code": 0, "stdout": "a"})
    out += normalizer.normalize({"type": "task_started"})

    assert [m.type for m in out] == ["text", "reasoning", "tool_call", "tool_call", "tool_result"]
    assert out[2].name == "CodexBash"
    assert out[2].input == {"command": ["ls"], "cwd": "/r"}
    assert out[4].output == "a"


def test_codex_failed_command():
    normalizer = CodexEventNormalizer()
    normalizer.normalize({"type": "exec_command_begin", "call_id": "e1", "command": ["false"]})
    out = normalizer.normalize({"type": "exec_command_end", "call_id": "e1", "exit_code": 1, "stderr": "nope"})
    assert out[-1].status == "failed"
    assert out[-1].output == "nope"


def test_codex_full_message_without_deltas():
    normalizer = CodexEventNormalizer()
    out = normalizer.normalize({"type": "agent_message", "message": "Done."})
    assert out[0].text == "Done."


def _chunk(finish_reason=None, **delta):
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def test_chat_chunks():
    normalizer = ChatChunkNormalizer()
    out = normalizer.normalize(_chunk(role="assistant", content=""))
    out += normalizer.normalize(_chunk(reasoning_content="hmm"))
    out += normalizer.normalize(_chunk(content="Hel"))
    out += normalizer.normalize(_chunk(content="lo"))
    out += normalizer.normalize({"choices": []})
    out += normalizer.normalize({"usage": {"total_tokens": 9}})
    out += normalizer.normalize(_chunk(finish_reason="stop"))

    assert [(m.type, m.text) for m in out] == [("reasoning", "hmm"), ("text", "Hel"), ("text", "lo")]
    assert normalizer.reply == "Hello"
    assert normalizer.stop_reason == "end_turn"


def test_chat_reply_falls_back_to_reasoning():
    normalizer = ChatChunkNormalizer()
    normalizer.normalize(_chunk(reasoning_content="only thoughts"))
    normalizer.normalize(_chunk(finish_reason="length"))
    assert normalizer.reply == "only thoughts"
    assert normalizer.stop_reason == "max_tokens"
