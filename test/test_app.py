import json

import pytest
from conftest import ECHO_TOOL, FakeProvider, FakeTransport, tool_call

from toolchat.app import ToolchatCore, build_providers
from toolchat.errors import ProviderUnavailable, ServerNotConnected
from toolchat.llm_client.config import load_ai_config
from toolchat.llm_client.model import AssistantMessage, Conversation
from toolchat.tool.types import ResultStatus, TransportKind

MCP_YAML = """
servers:
  - name: local
    type: process
    command: python -m toolchat.tool.mcp_servers.local_tools_server
    autoStart: true
  - name: manual
    type: process
    command: python -m toolchat.tool.mcp_servers.local_tools_server
defaultServer: local
"""

AI_YAML = """
providers:
  openai:
    enabled: true
    models:
      - id: gpt-test
        name: GPT Test
        maxTokens: 4096
  anthropic:
    enabled: true
    models:
      - id: claude-test
        name: Claude Test
        maxTokens: 4096
defaultProvider: openai
defaultModel: gpt-test
"""


@pytest.fixture
def config_files(tmp_path):
    mcp = tmp_path / "mcp.yaml"
    ai = tmp_path / "ai.yaml"
    mcp.write_text(MCP_YAML, encoding="utf-8")
    ai.write_text(AI_YAML, encoding="utf-8")
    return mcp, ai


def _core(mcp_path, ai_path, provider=None):
    providers = {"openai": provider} if provider else {}
    core = ToolchatCore.from_config(mcp_path, ai_path, providers=providers)
    transport = FakeTransport(tools={"local": [ECHO_TOOL], "manual": [ECHO_TOOL]})
    core.manager.transports[TransportKind.PROCESS] = transport
    return core, transport


@pytest.mark.asyncio
async def test_boundary_operations(config_files):
    core, transport = _core(*config_files)
    async with core:
        assert core.list_servers() == [
            {"name": "local", "transport": "process", "connected": True},
            {"name": "manual", "transport": "process", "connected": False},
        ]
        assert [t.name for t in core.list_server_tools("local")] == ["echo"]
        assert core.list_server_tools("manual") == []
        assert [(s, t.name) for s, t in core.list_all_tools()] == [("local", "echo")]

        result = await core.execute_tool("local", "echo", {"text": "hi"})
        assert result.status is ResultStatus.OK

        with pytest.raises(ServerNotConnected):
            await core.execute_tool("manual", "echo", {"text": "hi"})
        assert await core.connect_server("manual") is True
        await core.execute_tool("manual", "echo", {"text": "hi"})

    assert sorted(transport.closes) == ["local", "manual"]
    assert all(not s["connected"] for s in core.list_servers())


@pytest.mark.asyncio
async def test_chat_routes_tool_calls_through_the_router(config_files):
    provider = FakeProvider(
        [
            AssistantMessage(tool_calls=[tool_call("c1", "local__echo", json.dumps({"text": "hi"}))]),
            AssistantMessage(content="It said hi"),
        ]
    )
    core, transport = _core(*config_files, provider=provider)
    async with core:
        conversation = Conversation()
        reply = await core.send_chat_message(conversation, "echo hi")

    assert reply == "It said hi"
    assert transport.calls == [("local", "echo", {"text": "hi"})]
    assert [m.role for m in conversation] == ["user", "assistant", "tool", "assistant"]
    assert json.loads(conversation[2].content)["server_name"] == "local"


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(config_files):
    core, transport = _core(*config_files)
    await core.start()

    await core.shutdown()
    await core.shutdown()

    assert transport.closes == ["local"]


@pytest.mark.asyncio
async def test_bad_mcp_config_keeps_chat_working(tmp_path, config_files):
    _, ai = config_files
    bad = tmp_path / "bad.yaml"
    bad.write_text("servers: not-a-list", encoding="utf-8")
    provider = FakeProvider([AssistantMessage(content="still here")])

    core = ToolchatCore.from_config(bad, ai, providers={"openai": provider})
    async with core:
        assert core.list_servers() == []
        assert await core.send_chat_message(Conversation(), "hi") == "still here"


@pytest.mark.asyncio
async def test_bad_ai_config_keeps_tools_working(tmp_path, config_files):
    mcp, _ = config_files
    bad = tmp_path / "bad.yaml"
    bad.write_text("providers: 42", encoding="utf-8")

    core, transport = _core(mcp, bad)
    async with core:
        result = await core.execute_tool("local", "echo", {"text": "hi"})
        assert result.status is ResultStatus.OK
        with pytest.raises(ProviderUnavailable):
            await core.send_chat_message(Conversation(), "hi")


@pytest.mark.asyncio
async def test_provider_selection_through_the_core(config_files):
    core, _ = _core(*config_files)
    async with core:
        core.select_provider("anthropic", "claude-test")
        assert core.get_active_provider() == {"provider": "anthropic", "model": "claude-test"}
        assert [p["id"] for p in core.list_providers()] == ["anthropic", "openai"]
        assert core.list_models("openai")[0]["id"] == "gpt-test"
        with pytest.raises(ProviderUnavailable):
            await core.send_chat_message(Conversation(), "hi")


def test_build_providers_requires_api_keys(config_files, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LANGFUSE_PUBLIC_KEY", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")

    providers = build_providers(load_ai_config(config_files[1]))

    assert sorted(providers) == ["anthropic"]
