"""Tests for OpenCode over ACP."""

import json

import pytest

from agent_conduit.backends.opencode_acp import DEFAULT_MODEL, OpenCodeAcpBackend
from agent_conduit.config import BackendConfig
from agent_conduit.errors import SessionExpiredError
from agent_conduit.models import PermissionResponse, SessionConfig

from fakes import ScriptedAcpAgent


async def _backend(agent, **config) -> OpenCodeAcpBackend:
    backend = OpenCodeAcpBackend(BackendConfig(**config), transport_factory=agent.factory)
    await backend.initialize()
    return backend


def test_defaults():
    backend = OpenCodeAcpBackend()
    assert backend.command == "opencode"
    assert backend.config.args == ["acp"]
    assert backend.config.init_timeout_ms == 30_000
    assert backend.model == DEFAULT_MODEL

    custom = OpenCodeAcpBackend(BackendConfig(command="/opt/opencode", args=["acp", "--port", "0"], init_timeout_ms=5))
    assert custom.command == "/opt/opencode"
    assert custom.config.args == ["acp", "--port", "0"]
    assert custom.config.init_timeout_ms == 5


def test_launch_env_carries_model_config():
    backend = OpenCodeAcpBackend(BackendConfig(model="openai.gpt-5", variant="high", env={"OPENCODE_LOG": "debug"}))
    env = backend._launch_env()
    assert json.loads(env["OPENCODE_CONFIG_CONTENT"]) == {"model": "openai.gpt-5", "reasoningEffort": "high"}
    assert env["OPENCODE_LOG"] == "debug"

    plain = OpenCodeAcpBackend()
    assert json.loads(plain._launch_env()["OPENCODE_CONFIG_CONTENT"]) == {"model": DEFAULT_MODEL}


@pytest.mark.asyncio
async def test_session_params_and_per_session_model_ignored():
    agent = ScriptedAcpAgent()
    backend = await _backend(agent, variant="high")

    sid = await backend.new_session(SessionConfig(cwd="/repo", model="someone.else"))

    assert agent.transport.sent("session/new") == [
        {"cwd": "/repo", "mcpServers": [], "model": DEFAULT_MODEL, "variant": "high"}
    ]
    assert backend.get_model(sid) == DEFAULT_MODEL
    await backend.disconnect()


@pytest.mark.asyncio
async def test_set_model_relaunches_and_expires_sessions():
    agent = ScriptedAcpAgent()
    backend = await _backend(agent)
    sid = await backend.new_session(SessionConfig(cwd="/repo"))
    other = await backend.new_session(SessionConfig(cwd="/other"))

    # Same model: nothing happens
    await backend.set_model(sid, DEFAULT_MODEL)
    assert len(agent.transports) == 1

    await backend.set_model(sid, "openai.gpt-5")
    assert len(agent.transports) == 2
    assert agent.transports[0].closed
    assert backend.model == "openai.gpt-5"
    assert json.loads(backend._launch_env()["OPENCODE_CONFIG_CONTENT"])["model"] == "openai.gpt-5"

    for old in (sid, other):
        with pytest.raises(SessionExpiredError):
            backend.get_model(old)

    fresh = await backend.new_session(SessionConfig(cwd="/repo"))
    assert backend.get_model(fresh) == "openai.gpt-5"
    assert agent.transport.sent("session/new")[0]["model"] == "openai.gpt-5"
    await backend.disconnect()


@pytest.mark.asyncio
async def test_opencode_permission_shape():
    agent = ScriptedAcpAgent()
    backend = await _backend(agent)
    sid = await backend.new_session(SessionConfig(cwd="/repo"))
    seen = []

    async def handler(request):
        seen.append(request)
        await backend.respond_to_permission(sid, request.id, PermissionResponse.select("always"))

    backend.on_permission_request(handler)
    result = await agent.transport.request(
        "session/request_permission",
        {
            "sessionId": "remote-1",
            "permission": {
                "id": "per_1",
                "callId": "call_9",
                "title": "Edit a.py",
                "type": "edit",
                "metadata": {"path": "a.py"},
            },
        },
    )

    assert result == {"outcome": {"outcome": "selected", "optionId": "always"}}
    request = seen[0]
    assert request.id == "per_1"
    assert request.tool_call_id == "call_9"
    assert request.kind == "edit"
    assert request.raw_input == {"path": "a.py"}
    assert [o.option_id for o in request.options] == ["once", "always", "reject"]
    await backend.disconnect()


@pytest.mark.asyncio
async def test_permission_for_unknown_session_cancelled():
    agent = ScriptedAcpAgent()
    backend = await _backend(agent)
    backend.on_permission_request(lambda request: None)

    result = await agent.transport.request(
        "session/request_permission", {"sessionId": "ghost", "permission": {"id": "per_2"}}
    )
    assert result == {"outcome": {"outcome": "cancelled"}}
    await backend.disconnect()


@pytest.mark.asyncio
async def test_standard_acp_permission_shape_still_handled():
    agent = ScriptedAcpAgent()
    backend = await _backend(agent)
    sid = await backend.new_session(SessionConfig(cwd="/repo"))

    async def handler(request):
        await backend.respond_to_permission(sid, request.id, PermissionResponse.select("allow"))

    backend.on_permission_request(handler)
    result = await agent.transport.request(
        "session/request_permission",
        {
            "sessionId": "remote-1",
            "toolCall": {"toolCallId": "call-1", "title": "Run ls"},
            "options": [{"optionId": "allow", "name": "Allow", "kind": "allow_once"}],
        },
    )
    assert result == {"outcome": {"outcome": "selected", "optionId": "allow"}}
    await backend.disconnect()
