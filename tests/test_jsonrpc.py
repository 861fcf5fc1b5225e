"""Tests for JSON-RPC framing and id correlation."""

import asyncio
import json

import pytest

from agent_conduit.errors import JsonRpcError, TransportClosedError
from agent_conduit.transport.jsonrpc import INTERNAL_ERROR, METHOD_NOT_FOUND, JsonRpcConnection, encode_frame

from fakes import MemoryWriter, wait_until


def _feed(reader: asyncio.StreamReader, message) -> None:
    if isinstance(message, (bytes, str)):
        data = message.encode() if isinstance(message, str) else message
    else:
        data = (json.dumps(message) + "\n").encode()
    reader.feed_data(data)


def _connection():
    reader = asyncio.StreamReader()
    writer = MemoryWriter()
    conn = JsonRpcConnection(reader, writer, name="test")
    conn.start()
    return conn, reader, writer


def test_encode_frame_is_single_line():
    frame = encode_frame({"jsonrpc": "2.0", "method": "x", "params": {"text": "a\nb"}})
    assert frame.endswith(b"\n")
    assert frame.count(b"\n") == 1


@pytest.mark.asyncio
async def test_responses_matched_by_id_out_of_order():
    conn, reader, writer = _connection()

    first = asyncio.create_task(conn.send_request("a", {"n": 1}))
    second = asyncio.create_task(conn.send_request("b", {"n": 2}))
    third = asyncio.create_task(conn.send_request("c"))
    await wait_until(lambda: len(writer.frames) == 3)

    ids = {frame["method"]: frame["id"] for frame in writer.frames}
    assert sorted(ids.values()) == [1, 2, 3]
    assert all(frame["jsonrpc"] == "2.0" for frame in writer.frames)
    assert "params" not in writer.frames[2]

    _feed(reader, {"jsonrpc": "2.0", "id": ids["c"], "result": "C"})
    _feed(reader, {"jsonrpc": "2.0", "id": ids["a"], "result": "A"})
    _feed(reader, {"jsonrpc": "2.0", "id": ids["b"], "result": "B"})

    assert await first == "A"
    assert await second == "B"
    assert await third == "C"
    assert conn.pending_count == 0
    await conn.close()


@pytest.mark.asyncio
async def test_error_frame_raises_jsonrpc_error():
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("session/new"))
    await wait_until(lambda: writer.frames)

    _feed(reader, {"jsonrpc": "2.0", "id": 1, "error": {"code": 401, "message": "Unauthorized", "data": {"x": 1}}})

    with pytest.raises(JsonRpcError) as exc_info:
        await task
    assert exc_info.value.code == 401
    assert exc_info.value.data == {"x": 1}
    assert "Unauthorized" in str(exc_info.value)
    await conn.close()


@pytest.mark.asyncio
async def test_malformed_and_unknown_frames_are_dropped():
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("ping"))
    await wait_until(lambda: writer.frames)

    _feed(reader, "this is not json\n")
    _feed(reader, "[1, 2, 3]\n")
    _feed(reader, {"jsonrpc": "2.0", "id": 99, "result": "stray"})
    _feed(reader, {"jsonrpc": "2.0"})
    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "pong"})

    assert await task == "pong"
    assert not conn.closed
    await conn.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "frame",
    [
        {"jsonrpc": "2.0", "id": [9], "result": "unhashable id"},
        {"jsonrpc": "2.0", "id": {"n": 1}, "error": {"code": 1, "message": "object id"}},
        {"jsonrpc": "2.0", "id": True, "result": "boolean id"},
    ],
)
async def test_response_with_invalid_id_is_dropped(frame):
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("ping"))
    await wait_until(lambda: writer.frames)

    _feed(reader, frame)
    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "pong"})

    assert await task == "pong"
    assert not conn.closed
    await conn.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [{"code": "BAD", "message": "odd"}, {"code": True, "message": "odd"}, "odd"])
async def test_error_frame_with_bad_code_still_settles_request(error):
    conn, reader, writer = _connection()
    first = asyncio.create_task(conn.send_request("session/prompt"))
    second = asyncio.create_task(conn.send_request("ping"))
    await wait_until(lambda: len(writer.frames) == 2)

    _feed(reader, {"jsonrpc": "2.0", "id": 1, "error": error})
    _feed(reader, {"jsonrpc": "2.0", "id": 2, "result": "ok"})

    with pytest.raises(JsonRpcError, match="odd") as exc_info:
        await first
    assert exc_info.value.code == INTERNAL_ERROR
    assert await second == "ok"
    assert not conn.closed
    await conn.close()


@pytest.mark.asyncio
async def test_failing_notification_handler_does_not_stop_reading():
    conn, reader, writer = _connection()

    def handler(method, params):
        raise RuntimeError("bad handler")

    conn.on_notification(handler)
    task = asyncio.create_task(conn.send_request("ping"))
    await wait_until(lambda: writer.frames)

    _feed(reader, {"jsonrpc": "2.0", "method": "session/update", "params": {}})
    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "pong"})

    assert await task == "pong"
    assert not conn.closed
    await conn.close()


@pytest.mark.asyncio
async def test_duplicate_response_delivered_once():
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("ping"))
    await wait_until(lambda: writer.frames)

    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "first"})
    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "second"})

    assert await task == "first"
    await conn.close()


@pytest.mark.asyncio
async def test_notifications_dispatched_in_order():
    conn, reader, _writer = _connection()
    seen = []
    conn.on_notification(lambda method, params: seen.append((method, params["n"])))

    for n in range(5):
        _feed(reader, {"jsonrpc": "2.0", "method": "session/update", "params": {"n": n}})

    await wait_until(lambda: len(seen) == 5)
    assert seen == [("session/update", n) for n in range(5)]
    await conn.close()


@pytest.mark.asyncio
async def test_backend_request_answered_with_same_id():
    conn, reader, writer = _connection()

    async def handler(params, request_id):
        return {"echo": params["value"], "request_id": request_id}

    conn.register_request_handler("session/request_permission", handler)
    _feed(reader, {"jsonrpc": "2.0", "id": "agent-7", "method": "session/request_permission", "params": {"value": 3}})

    await wait_until(lambda: writer.frames)
    assert writer.frames[0] == {"jsonrpc": "2.0", "id": "agent-7", "result": {"echo": 3, "request_id": "agent-7"}}
    await conn.close()


@pytest.mark.asyncio
async def test_unknown_backend_request_gets_method_not_found():
    conn, reader, writer = _connection()
    _feed(reader, {"jsonrpc": "2.0", "id": 5, "method": "fs/read_text_file", "params": {}})

    await wait_until(lambda: writer.frames)
    assert writer.frames[0]["id"] == 5
    assert writer.frames[0]["error"]["code"] == METHOD_NOT_FOUND
    await conn.close()


@pytest.mark.asyncio
async def test_failing_request_handler_gets_internal_error():
    conn, reader, writer = _connection()

    async def handler(params, request_id):
        raise ValueError("boom")

    conn.register_request_handler("explode", handler)
    _feed(reader, {"jsonrpc": "2.0", "id": 1, "method": "explode"})

    await wait_until(lambda: writer.frames)
    assert writer.frames[0]["error"]["message"] == "boom"
    await conn.close()


@pytest.mark.asyncio
async def test_eof_rejects_pending_requests():
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("initialize"))
    await wait_until(lambda: writer.frames)

    reader.feed_eof()

    with pytest.raises(TransportClosedError):
        await task
    await wait_until(lambda: conn.closed)
    with pytest.raises(TransportClosedError):
        await conn.send_request("again")
    await conn.close()


@pytest.mark.asyncio
async def test_cancelled_request_drops_late_response():
    conn, reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("slow"))
    await wait_until(lambda: writer.frames)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert conn.pending_count == 0

    _feed(reader, {"jsonrpc": "2.0", "id": 1, "result": "late"})
    follow_up = asyncio.create_task(conn.send_request("next"))
    await wait_until(lambda: len(writer.frames) == 2)
    _feed(reader, {"jsonrpc": "2.0", "id": 2, "result": "ok"})
    assert await follow_up == "ok"
    await conn.close()


@pytest.mark.asyncio
async def test_close_rejects_pending_and_is_idempotent():
    conn, _reader, writer = _connection()
    task = asyncio.create_task(conn.send_request("hang"))
    await wait_until(lambda: writer.frames)

    await conn.close("bye")
    await conn.close()

    with pytest.raises(TransportClosedError, match="bye"):
        await task
    assert writer.is_closing()
