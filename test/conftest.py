import asyncio
import sys
from typing import Any, Dict, List, Optional

import pytest

from toolchat.errors import TransportError, TransportErrorKind
from toolchat.llm_client.config import AIConfig, ModelConfig, ProviderConfig
from toolchat.llm_client.model import AssistantMessage, ToolCall
from toolchat.llm_client.provider import ProviderClient
from toolchat.tool.registry import ToolRegistry
from toolchat.tool.transport import LiveServerHandle, Transport
from toolchat.tool.types import (
    McpConfig,
    ResourceDefinition,
    ServerDescriptor,
    ToolDefinition,
    ToolResult,
    TransportKind,
)

PYTHON = sys.executable

ECHO_TOOL = ToolDefinition(
    name="echo",
    description="Echo back the input",
    input_schema={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
)


class FakeTransport(Transport):
    """In-memory transport: records every call, fails on demand."""

    kind = TransportKind.PROCESS

    def __init__(
        self,
        tools: Optional[Dict[str, List[ToolDefinition]]] = None,
        resources: Optional[Dict[str, List[ResourceDefinition]]] = None,
        fail: Optional[set] = None,
        connect_delay: float = 0.0,
        capabilities_known: bool = True,
    ):
        super().__init__(handshake_timeout=1.0)
        self.tools = tools or {}
        self.resources = resources or {}
        self.fail = fail or set()
        self.connect_delay = connect_delay
        self.capabilities_known = capabilities_known
        self.connects: List[str] = []
        self.closes: List[str] = []
        self.calls: List[tuple] = []
        self.call_error: Optional[BaseException] = None
        self.active = 0
        self.max_active = 0

    async def connect(self, descriptor: ServerDescriptor) -> LiveServerHandle:
        self.connects.append(descriptor.name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.connect_delay:
                await asyncio.sleep(self.connect_delay)
        finally:
            self.active -= 1
        if descriptor.name in self.fail:
            raise TransportError(TransportErrorKind.SPAWN_FAILED, descriptor.name, "boom")
        handle = LiveServerHandle(descriptor)
        if self.capabilities_known:
            handle.attach_session(None, object(), None)
        return handle

    async def list_tools(self, handle):
        self._ensure_open(handle)
        return list(self.tools.get(handle.name, []))

    async def list_resources(self, handle):
        self._ensure_open(handle)
        return list(self.resources.get(handle.name, []))

    async def call(self, handle, tool_name, arguments):
        self._ensure_open(handle)
        self.calls.append((handle.name, tool_name, arguments))
        if self.call_error is not None:
            raise self.call_error
        return ToolResult(server_name=handle.name, target=tool_name, content={"echo": arguments})

    async def read_resource(self, handle, uri):
        self._ensure_open(handle)
        self.calls.append((handle.name, uri, None))
        return ToolResult(server_name=handle.name, target=uri, content="resource body")

    async def close(self, handle):
        self.closes.append(handle.name)
        handle.mark_closed()


class FakeProvider(ProviderClient):
    """Replays scripted assistant messages and records what it was sent."""

    provider_id = "openai"

    def __init__(self, responses: List[AssistantMessage]):
        super().__init__(client=None)
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    async def complete(self, messages, model, max_tokens, tools=None, name="chat_completion"):
        self.requests.append(
            {"messages": messages, "model": model, "max_tokens": max_tokens, "tools": tools}
        )
        return self.responses.pop(0)


def tool_call(call_id: str, name: str, arguments: str = "{}") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def process_server(name: str, command: str = "server", **kwargs) -> ServerDescriptor:
    kwargs.setdefault("auto_start", True)
    return ServerDescriptor(name=name, transport=TransportKind.PROCESS, command=command, **kwargs)


def stream_server(name: str, url: str = "http://localhost:1/sse", **kwargs) -> ServerDescriptor:
    return ServerDescriptor(name=name, transport=TransportKind.STREAM, url=url, **kwargs)


def make_config(*servers: ServerDescriptor, **kwargs) -> McpConfig:
    return McpConfig(servers=tuple(servers), **kwargs)


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def ai_config():
    return AIConfig(
        providers={
            "openai": ProviderConfig(
                enabled=True,
                models=(ModelConfig(id="gpt-test", name="GPT Test", max_tokens=2048),),
            ),
            "anthropic": ProviderConfig(
                enabled=False,
                models=(ModelConfig(id="claude-test", name="Claude Test", max_tokens=8192),),
            ),
        },
        default_provider="openai",
        default_model="gpt-test",
    )
