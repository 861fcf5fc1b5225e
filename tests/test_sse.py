"""Tests for SSE decoding, event classification and the HTTP transport."""

import json

import httpx
import pytest

from agent_conduit.errors import HttpTransportError, TransportError
from agent_conduit.transport.sse import EventKind, HttpSseTransport, SseDecoder, parse_server_event


def test_decoder_carries_partial_lines():
    decoder = SseDecoder()
    assert decoder.feed(b'data: {"type":"sess') == []
    assert decoder.feed(b'ion.idle","properties":{"sessionID":"s1"}}\n') == [
        {"type": "session.idle", "properties": {"sessionID": "s1"}}
    ]


def test_decoder_split_multibyte_character():
    payload = 'data: {"text":"café"}\n'.encode("utf-8")
    split = payload.index(b"\xc3") + 1
    decoder = SseDecoder()
    assert decoder.feed(payload[:split]) == []
    assert decoder.feed(payload[split:]) == [{"text": "café"}]


def test_decoder_skips_noise():
    decoder = SseDecoder()
    chunk = b": keepalive\r\nevent: message\r\ndata: [DONE]\r\ndata: {broken\r\ndata: {\"ok\":1}\r\n\r\n"
    assert decoder.feed(chunk) == [{"ok": 1}]


def test_parse_server_event_routing():
    idle = parse_server_event({"type": "session.idle", "properties": {"sessionID": "s1"}})
    assert idle.kind is EventKind.SESSION_IDLE
    assert idle.session_id == "s1"

    part = parse_server_event({"type": "message.part.updated", "properties": {"part": {"sessionID": "s2"}}})
    assert part.kind is EventKind.PART_UPDATED
    assert part.session_id == "s2"

    info = parse_server_event({"type": "message.updated", "properties": {"info": {"sessionID": "s3"}}})
    assert info.session_id == "s3"

    unknown = parse_server_event({"type": "lsp.diagnostics", "properties": {}})
    assert unknown.kind is EventKind.UNRECOGNIZED
    assert unknown.type == "lsp.diagnostics"

    assert parse_server_event({}).kind is EventKind.UNRECOGNIZED


@pytest.mark.asyncio
async def test_post_sends_directory_and_decodes_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "ses_1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("http://opencode.test/", directory="/repo", client=client)
        assert await transport.post("/session", json={}) == {"id": "ses_1"}
        await transport.close()
        assert not client.is_closed

    assert seen[0].url.host == "opencode.test"
    assert seen[0].url.path == "/session"
    assert seen[0].url.params["directory"] == "/repo"


@pytest.mark.asyncio
async def test_post_non_2xx_raises_http_error():
    def handler(request):
        return httpx.Response(401, text="missing API key")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("http://opencode.test", client=client)
        with pytest.raises(HttpTransportError) as exc_info:
            await transport.post("/session")
    assert exc_info.value.status_code == 401
    assert "missing API key" in exc_info.value.body


@pytest.mark.asyncio
async def test_post_connection_error_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("http://opencode.test", client=client)
        with pytest.raises(TransportError):
            await transport.post("/session")


@pytest.mark.asyncio
async def test_events_stream_yields_decoded_payloads():
    async def body():
        yield b'data: {"type":"session.idle",'
        yield b'"properties":{"sessionID":"s1"}}\n\n'
        yield b"data: " + json.dumps({"type": "session.error", "properties": {}}).encode() + b"\n\n"

    def handler(request):
        assert request.url.path == "/event"
        return httpx.Response(200, content=body())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("http://opencode.test", client=client)
        events = [event async for event in transport.events()]

    assert [e["type"] for e in events] == ["session.idle", "session.error"]


@pytest.mark.asyncio
async def test_stream_post_sends_headers_and_yields_chunks():
    seen = []

    async def body():
        yield b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
        yield b"data: [DONE]\n\n"

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=body())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("https://api.test/v1", client=client, headers={"Authorization": "Bearer k"})
        chunks = [c async for c in transport.stream_post("/chat/completions", json={"stream": True})]

    assert chunks == [{"choices": [{"delta": {"content": "Hi"}}]}]
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer k"
    assert request.headers["accept"] == "text/event-stream"
    assert json.loads(request.content) == {"stream": True}


@pytest.mark.asyncio
async def test_stream_post_non_2xx_raises_http_error():
    def handler(request):
        return httpx.Response(429, text="rate limited")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = HttpSseTransport("https://api.test/v1", client=client)
        with pytest.raises(HttpTransportError, match="429") as exc_info:
            async for _ in transport.stream_post("/chat/completions", json={}):
                pass
    assert exc_info.value.status_code == 429
    assert exc_info.value.body == "rate limited"
