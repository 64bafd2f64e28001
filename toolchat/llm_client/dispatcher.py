from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple

from pydantic import BaseModel

from toolchat.constants import COMPOUND_SEPARATOR, MAX_TOKENS_PER_REQUEST, MAX_TOOL_ROUNDS
from toolchat.errors import (
    MalformedToolCall,
    ProviderUnavailable,
    ToolRoundLimitExceeded,
    UnknownProvider,
)
from toolchat.llm_client.config import PROVIDER_NAMES, AIConfig
from toolchat.llm_client.model import AssistantMessage, Conversation, Message, ToolCall, ToolCallRequest
from toolchat.llm_client.provider import ProviderClient
from toolchat.tool.types import ToolDefinition

logger = logging.getLogger(__name__)

ToolsSource = Callable[[], Sequence[Tuple[str, ToolDefinition]]]
ToolCallHandler = Callable[[ToolCallRequest], Awaitable[Any]]


def split_compound_name(compound_name: str) -> Tuple[str, str]:
    """'server.tool' -> ('server', 'tool'). Exactly one separator, both parts non-empty."""
    parts = compound_name.split(COMPOUND_SEPARATOR)
    if len(parts) != 2:
        raise MalformedToolCall(
            compound_name, f"expected exactly one '{COMPOUND_SEPARATOR}' between server and tool"
        )
    server_name, tool_name = parts
    if not server_name or not tool_name:
        raise MalformedToolCall(compound_name, "server and tool names must be non-empty")
    return server_name, tool_name


def join_compound_name(server_name: str, tool_name: str) -> str:
    return f"{server_name}{COMPOUND_SEPARATOR}{tool_name}"


def _sanitize(name: str) -> str:
    # Only letters/numbers/_/- allowed; trim to 64 chars.
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)[:64]


def build_tool_specs(
    tools: Sequence[Tuple[str, ToolDefinition]],
) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    """
    Convert registry tools into OpenAI Chat Completions 'tools' and
    a dispatch map {function_name: compound_name}.
    """
    specs: List[Dict[str, Any]] = []
    dispatch: Dict[str, str] = {}

    for server_name, tool in tools:
        if COMPOUND_SEPARATOR in tool.name:
            logger.debug("Not advertising tool %r of server %s: name contains the separator", tool.name, server_name)
            continue
        compound = join_compound_name(server_name, tool.name)
        fn_name = _sanitize(f"{server_name}__{tool.name}")
        if fn_name in dispatch:
            logger.warning("Tool %s collides with %s after sanitizing; skipping it", compound, dispatch[fn_name])
            continue

        schema = tool.input_schema or {}
        # Ensure parameters is an object schema
        if schema.get("type") != "object":
            parameters = {"type": "object", "properties": {}}
        else:
            parameters = schema

        specs.append(
            {
                "type": "function",
                "function": {
                    "name": fn_name,
                    "description": (tool.description or compound)[:512],
                    "parameters": parameters,
                },
            }
        )
        dispatch[fn_name] = compound

    return specs, dispatch


def _result_text(result: Any) -> str:
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ChatDispatcher:
    """Runs the provider-agnostic chat loop, executing tool calls between completions."""

    def __init__(
        self,
        ai_config: AIConfig,
        providers: Mapping[str, ProviderClient],
        tools_source: ToolsSource,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        max_tokens: int = MAX_TOKENS_PER_REQUEST,
    ) -> None:
        self.config = ai_config
        self.providers = dict(providers)
        self.tools_source = tools_source
        self.max_tool_rounds = max_tool_rounds
        self.max_tokens = max_tokens
        self.current_provider = ai_config.default_provider
        self.current_model = ai_config.default_model

    def list_providers(self) -> List[Dict[str, Any]]:
        result = []
        for provider_id, display_name in PROVIDER_NAMES.items():
            cfg = self.config.providers.get(provider_id)
            result.append(
                {"id": provider_id, "name": display_name, "enabled": bool(cfg and cfg.enabled)}
            )
        return result

    def list_models(self, provider: str) -> List[Dict[str, Any]]:
        if provider not in PROVIDER_NAMES:
            raise UnknownProvider(provider)
        cfg = self.config.providers.get(provider)
        if cfg is None:
            return []
        return [
            {"id": m.id, "name": m.name, "maxTokens": m.max_tokens, "enabled": m.enabled}
            for m in cfg.models
        ]

    def select_provider(self, provider: str, model: str) -> None:
        if provider not in PROVIDER_NAMES:
            raise UnknownProvider(provider)
        self.current_provider = provider
        self.current_model = model
        logger.info("Active provider set to %s (%s)", provider, model)

    def get_active_provider(self) -> Dict[str, str]:
        return {"provider": self.current_provider, "model": self.current_model}

    def _token_ceiling(self, provider: str, model: str) -> int:
        cfg = self.config.providers.get(provider)
        model_cfg = cfg.model(model) if cfg else None
        if model_cfg is None:
            return self.max_tokens
        return min(self.max_tokens, model_cfg.max_tokens)

    def _to_request(self, tool_call: ToolCall, dispatch: Mapping[str, str]) -> ToolCallRequest:
        compound = dispatch.get(tool_call.name, tool_call.name)
        split_compound_name(compound)

        try:
            arguments = json.loads(tool_call.arguments) if tool_call.arguments else {}
        except json.JSONDecodeError as e:
            raise MalformedToolCall(tool_call.name, f"arguments are not valid JSON: {e}") from e
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise MalformedToolCall(tool_call.name, "arguments must be a JSON object")
        return ToolCallRequest(id=tool_call.id, compound_name=compound, arguments=arguments)

    async def send(self, conversation: Conversation, tool_call_handler: ToolCallHandler) -> str:
        """
        Complete the conversation with the active provider.

        Tool calls are executed one at a time through tool_call_handler, in the
        order the model requested them, and their results appended as tool
        messages before the next completion. Returns the final assistant text.
        """
        provider_id, model = self.current_provider, self.current_model
        client = self.providers.get(provider_id)
        if client is None:
            raise ProviderUnavailable(provider_id)

        tools, dispatch = build_tool_specs(self.tools_source())
        max_tokens = self._token_ceiling(provider_id, model)

        rounds = 0
        while True:
            assistant: AssistantMessage = await client.complete(
                conversation.to_openai(),
                model,
                max_tokens,
                tools or None,
                name="chat_completion",
            )

            if not assistant.tool_calls:
                conversation.append(Message(role="assistant", content=assistant.content or ""))
                return assistant.content or ""

            if rounds >= self.max_tool_rounds:
                raise ToolRoundLimitExceeded(self.max_tool_rounds)
            rounds += 1

            # Reject the whole batch before anything runs or is recorded
            requests = [self._to_request(tool_call, dispatch) for tool_call in assistant.tool_calls]

            conversation.append(
                Message(role="assistant", content=assistant.content, tool_calls=assistant.tool_calls)
            )
            for request in requests:
                logger.info("Round %d: calling %s", rounds, request.compound_name)
                result = await tool_call_handler(request)
                conversation.append(
                    Message(role="tool", content=_result_text(result), tool_call_id=request.id)
                )
