"""HTTP control calls plus a server-sent-events push stream.

Used by backends that run as a local HTTP server (``opencode serve``):
session and prompt operations are plain POSTs, while streaming output,
idle signals and permission prompts arrive on one long-lived ``GET /event``
stream shared by every session of the server. Chat-completions APIs use
the same framing on the response body of the POST itself.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from agent_conduit.errors import HttpTransportError, TransportError

logger = logging.getLogger("agent_conduit.transport.sse")

DEFAULT_TIMEOUT = httpx.Timeout(30.0, read=None)


class SseDecoder:
    """Incremental decoder for ``data: <json>`` frames.

    Chunks may split lines (and multi-byte characters) anywhere; the
    incomplete tail is carried over to the next ``feed()``.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        events: list[dict[str, Any]] = []
        for line in lines:
            event = self._decode_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _decode_line(line: str) -> dict[str, Any] | None:
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Dropping undecodable SSE frame: %.200s", payload)
            return None
        return data if isinstance(data, dict) else None


class EventKind(enum.Enum):
    MESSAGE_UPDATED = "message.updated"
    PART_UPDATED = "message.part.updated"
    SESSION_IDLE = "session.idle"
    SESSION_ERROR = "session.error"
    PERMISSION_UPDATED = "permission.updated"
    PERMISSION_REPLIED = "permission.replied"
    UNRECOGNIZED = "unrecognized"


_KINDS = {kind.value: kind for kind in EventKind if kind is not EventKind.UNRECOGNIZED}


@dataclass
class ServerEvent:
    """One push event, classified by ``type``."""

    kind: EventKind
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


def _event_session_id(kind: EventKind, props: dict[str, Any]) -> str | None:
    if isinstance(props.get("sessionID"), str):
        return props["sessionID"]
    nested = None
    if kind is EventKind.MESSAGE_UPDATED:
        nested = props.get("info")
    elif kind is EventKind.PART_UPDATED:
        nested = props.get("part")
    if isinstance(nested, dict) and isinstance(nested.get("sessionID"), str):
        return nested["sessionID"]
    return None


def parse_server_event(data: dict[str, Any]) -> ServerEvent:
    """Classify a decoded SSE payload ``{type, properties}``."""
    event_type = data.get("type") if isinstance(data.get("type"), str) else ""
    props = data.get("properties") if isinstance(data.get("properties"), dict) else {}
    kind = _KINDS.get(event_type, EventKind.UNRECOGNIZED)
    return ServerEvent(kind=kind, type=event_type, properties=props, session_id=_event_session_id(kind, props))


class HttpSseTransport:
    """httpx client bound to one server base URL and project directory.

    Args:
        base_url: Server root, e.g. ``http://127.0.0.1:4096``.
        directory: Project directory sent as ``?directory=`` on every call.
        client: Pre-built client (tests pass one with ``httpx.MockTransport``).
            A client passed in is not closed by ``close()``.
        headers: Sent with every request (e.g. ``Authorization``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        directory: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self.headers = dict(headers or {})
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def _params(self, params: dict[str, Any] | None) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        if self.directory:
            merged["directory"] = self.directory
        if params:
            merged.update(params)
        return merged

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def post(self, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """POST a control call and return its decoded JSON body (None if empty).

        Raises:
            HttpTransportError: Non-2xx status.
            TransportError: Connection-level failure.
        """
        logger.debug("POST %s", path)
        try:
            response = await self._client.post(
                self._url(path), json=json, params=self._params(params), headers=self.headers
            )
        except httpx.HTTPError as e:
            raise TransportError(f"POST {path} failed: {e}") from e
        if not response.is_success:
            raise HttpTransportError(response.status_code, response.text, method="POST", path=path)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def events(self, params: dict[str, Any] | None = None) -> AsyncIterator[dict[str, Any]]:
        """Stream ``GET /event`` and yield decoded payloads until the server closes it."""
        async for event in self._stream("GET", "/event", params=params):
            yield event

    async def stream_post(
        self, path: str, json: Any = None, params: dict[str, Any] | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """POST and yield the decoded ``data:`` frames of the streamed response body.

        Raises:
            HttpTransportError: Non-2xx status.
            TransportError: Connection-level failure.
        """
        logger.debug("POST %s (stream)", path)
        async for event in self._stream("POST", path, json=json, params=params):
            yield event

    async def _stream(
        self, method: str, path: str, *, json: Any = None, params: dict[str, Any] | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        decoder = SseDecoder()
        headers = {**self.headers, "Accept": "text/event-stream"}
        try:
            async with self._client.stream(
                method, self._url(path), json=json, params=self._params(params), headers=headers
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise HttpTransportError(response.status_code, body, method=method, path=path)
                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        yield event
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} stream failed: {e}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
