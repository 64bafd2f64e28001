import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

import anthropic
from anthropic import Anthropic

from toolchat.errors import ProviderError
from toolchat.llm_client.model import AssistantMessage, ToolCall
from toolchat.llm_client.provider import ProviderClient
from toolchat.llm_client.tracing import end_generation, start_generation

logger = logging.getLogger(__name__)


def _convert_openai_tools_to_anthropic(tools: Optional[List[Dict[str, Any]]]):
    if not tools:
        return None
    converted = []
    for tool in tools:
        if tool.get("type") != "function":
            continue
        fn = tool.get("function", {})
        converted.append(
            {
                "name": fn.get("name"),
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return converted or None


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug("Dropping unparseable tool arguments %r: %s", raw, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _convert_messages(messages: List[Dict[str, Any]]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """OpenAI-format history -> (system text, Anthropic messages)."""
    system_text = None
    converted: List[Dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            # concatenate multiple system messages if present
            text = msg.get("content") or ""
            system_text = f"{system_text}\n\n{text}" if system_text else text
            continue
        if role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id"),
                "content": [{"type": "text", "text": msg.get("content") or ""}],
            }
            # Consecutive tool results belong to the same user turn
            previous = converted[-1] if converted else None
            if (
                previous
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue
        if role == "assistant":
            blocks = []
            content_text = msg.get("content")
            if content_text:
                blocks.append({"type": "text", "text": content_text})
            for tc in msg.get("tool_calls", []) or []:
                fn = tc.get("function", {})
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc.get("id"),
                        "name": fn.get("name"),
                        "input": _parse_arguments(fn.get("arguments")),
                    }
                )
            # Anthropic requires content to be non-null
            if not blocks:
                blocks = [{"type": "text", "text": ""}]
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": role, "content": msg.get("content") or ""})
    return system_text, converted


class AnthropicProvider(ProviderClient):
    provider_id = "anthropic"

    @classmethod
    def from_env(cls, langfuse=None) -> Optional["AnthropicProvider"]:
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            return None
        return cls(Anthropic(api_key=api_key), langfuse)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
        tools: Optional[List[Dict[str, Any]]] = None,
        name: str = "anthropic_api",
    ) -> AssistantMessage:
        system_text, anthropic_messages = _convert_messages(messages)
        anthropic_tools = _convert_openai_tools_to_anthropic(tools)

        metadata = {
            "model": model,
            "max_tokens": max_tokens,
            "operation": "anthropic.messages.create",
            "provider": self.provider_id,
        }
        generation = start_generation(self.langfuse, name, model, messages, metadata)

        params: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": anthropic_messages,
        }
        if system_text:
            params["system"] = system_text
        if anthropic_tools:
            params["tools"] = anthropic_tools

        start_time = time.time()
        try:
            # The sync SDK client runs in a worker thread
            response = await asyncio.to_thread(self.client.messages.create, **params)
        except anthropic.AnthropicError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e
        end_time = time.time()

        text_content = ""
        tool_calls: List[ToolCall] = []
        for block in response.content or []:
            if block.type == "text":
                text_content += block.text or ""
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input or {}))
                )

        assistant = AssistantMessage(
            content=text_content or None,
            tool_calls=tool_calls,
            finish_reason=response.stop_reason,
        )
        logger.debug(
            "Anthropic %s answered in %.0fms with %d tool calls",
            model,
            (end_time - start_time) * 1000,
            len(tool_calls),
        )

        usage_obj = getattr(response, "usage", None)
        input_tokens = getattr(usage_obj, "input_tokens", 0) or 0
        output_tokens = getattr(usage_obj, "output_tokens", 0) or 0
        end_generation(
            generation,
            assistant,
            usage={
                "promptTokens": input_tokens,
                "completionTokens": output_tokens,
                "totalTokens": input_tokens + output_tokens,
            },
            metadata={**metadata, "latency_ms": (end_time - start_time) * 1000},
        )
        return assistant
