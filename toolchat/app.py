"""
ToolchatCore: wires the tool layer and the chat dispatcher together and
exposes the operations a host application calls.

Usage:
    async with ToolchatCore.from_config() as core:
        core.list_servers()
        result = await core.execute_tool("local-tools", "echo", {"text": "hi"})

        conversation = Conversation()
        reply = await core.send_chat_message(conversation, "What's the weather in Tokyo?")
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from toolchat.errors import ConfigError
from toolchat.llm_client.anthropic_client import AnthropicProvider
from toolchat.llm_client.config import AIConfig, load_ai_config
from toolchat.llm_client.dispatcher import ChatDispatcher, split_compound_name
from toolchat.llm_client.model import Conversation, ToolCallRequest
from toolchat.llm_client.openai_client import OpenAIProvider
from toolchat.llm_client.provider import ProviderClient
from toolchat.llm_client.tracing import build_langfuse_client
from toolchat.tool.config_loader import load_mcp_config
from toolchat.tool.manager import ConnectionManager
from toolchat.tool.registry import ToolRegistry
from toolchat.tool.router import ToolRouter
from toolchat.tool.types import McpConfig, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

PROVIDER_FACTORIES = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def build_providers(ai_config: AIConfig) -> Dict[str, ProviderClient]:
    """Create a client for each enabled provider whose API key is present."""
    langfuse = build_langfuse_client()
    providers: Dict[str, ProviderClient] = {}
    for provider_id, provider_config in ai_config.providers.items():
        if not provider_config.enabled:
            continue
        client = PROVIDER_FACTORIES[provider_id].from_env(langfuse)
        if client is None:
            logger.warning("%s provider enabled but no API key is set", provider_id)
            continue
        providers[provider_id] = client
        logger.info("%s provider initialized", provider_id)
    return providers


class ToolchatCore:
    def __init__(
        self,
        manager: ConnectionManager,
        registry: ToolRegistry,
        dispatcher: ChatDispatcher,
        router: ToolRouter | None = None,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.router = router or ToolRouter(manager, registry)
        self.dispatcher = dispatcher
        self._stopped = False

    @classmethod
    def from_config(
        cls,
        mcp_path: str | Path | None = None,
        ai_path: str | Path | None = None,
        providers: Optional[Mapping[str, ProviderClient]] = None,
    ) -> "ToolchatCore":
        # Each subsystem survives a bad config file for the other one
        try:
            mcp_config = load_mcp_config(mcp_path)
        except ConfigError as e:
            logger.error("Invalid MCP configuration, starting with no tool servers: %s", e)
            mcp_config = McpConfig()

        try:
            ai_config = load_ai_config(ai_path)
        except ConfigError as e:
            logger.error("Invalid AI configuration, chat is unavailable: %s", e)
            ai_config = AIConfig()
            providers = {}

        if providers is None:
            providers = build_providers(ai_config)

        registry = ToolRegistry()
        manager = ConnectionManager(mcp_config, registry)
        dispatcher = ChatDispatcher(ai_config, providers, registry.all_tools)
        return cls(manager, registry, dispatcher)

    async def __aenter__(self) -> "ToolchatCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def start(self) -> Dict[str, bool]:
        outcome = await self.manager.start()
        logger.info(
            "Started %d of %d tool servers",
            sum(outcome.values()),
            len(outcome),
        )
        return outcome

    # ── tool servers ─────────────────────────────────────

    def list_servers(self) -> List[Dict[str, Any]]:
        return self.manager.list_servers()

    def list_server_tools(self, server_name: str) -> List[ToolDefinition]:
        return self.registry.tools(server_name)

    def list_all_tools(self) -> List[Tuple[str, ToolDefinition]]:
        return self.registry.all_tools()

    async def connect_server(self, server_name: str) -> bool:
        return await self.manager.connect(server_name)

    async def execute_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: float | None = None,
    ) -> ToolResult:
        return await self.router.execute(server_name, tool_name, arguments, timeout=timeout)

    async def access_resource(self, server_name: str, uri: str, timeout: float | None = None) -> ToolResult:
        return await self.router.read_resource(server_name, uri, timeout=timeout)

    # ── chat ─────────────────────────────────────────────

    def list_providers(self) -> List[Dict[str, Any]]:
        return self.dispatcher.list_providers()

    def list_models(self, provider: str) -> List[Dict[str, Any]]:
        return self.dispatcher.list_models(provider)

    def select_provider(self, provider: str, model: str) -> None:
        self.dispatcher.select_provider(provider, model)

    def get_active_provider(self) -> Dict[str, str]:
        return self.dispatcher.get_active_provider()

    async def _handle_tool_call(self, request: ToolCallRequest) -> ToolResult:
        server_name, tool_name = split_compound_name(request.compound_name)
        return await self.router.execute(server_name, tool_name, request.arguments)

    async def send_chat_message(self, conversation: Conversation, text: str) -> str:
        conversation.add_user(text)
        return await self.dispatcher.send(conversation, self._handle_tool_call)

    # ── teardown ─────────────────────────────────────────

    async def shutdown(self, timeout: float = 10.0) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            await asyncio.wait_for(self.manager.stop_all(), timeout)
        except asyncio.TimeoutError:
            logger.error("Timed out after %.1fs stopping tool servers", timeout)
