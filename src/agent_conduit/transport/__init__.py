"""Byte-level channels beneath the backends."""

from agent_conduit.transport.jsonrpc import JsonRpcConnection
from agent_conduit.transport.sse import EventKind, HttpSseTransport, ServerEvent, SseDecoder, parse_server_event
from agent_conduit.transport.stdio import FramedStdioTransport

__all__ = [
    "EventKind",
    "FramedStdioTransport",
    "HttpSseTransport",
    "JsonRpcConnection",
    "ServerEvent",
    "SseDecoder",
    "parse_server_event",
]
