import logging
import os
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from toolchat.errors import ProviderError
from toolchat.llm_client.model import AssistantMessage, ToolCall
from toolchat.llm_client.provider import ProviderClient
from toolchat.llm_client.tracing import end_generation, start_generation

logger = logging.getLogger(__name__)


class OpenAIProvider(ProviderClient):
    provider_id = "openai"

    @classmethod
    def from_env(cls, langfuse=None) -> Optional["OpenAIProvider"]:
        """Build a client when OPENAI_API_KEY is set. No request is made here."""
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            return None
        return cls(AsyncOpenAI(api_key=api_key), langfuse)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
        tools: Optional[List[Dict[str, Any]]] = None,
        name: str = "openai_api",
    ) -> AssistantMessage:
        metadata = {
            "model": model,
            "max_tokens": max_tokens,
            "operation": "chat.completions.create",
            "provider": self.provider_id,
        }
        generation = start_generation(self.langfuse, name, model, messages, metadata)

        params: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
        }
        if tools:
            params["tools"] = tools

        start_time = time.time()
        try:
            response = await self.client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI API error: {e}") from e
        end_time = time.time()

        choice = response.choices[0]
        message = choice.message
        assistant = AssistantMessage(
            content=message.content,
            tool_calls=[
                ToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=tc.function.arguments or "{}",
                )
                for tc in (message.tool_calls or [])
            ],
            finish_reason=choice.finish_reason,
        )
        logger.debug(
            "OpenAI %s answered in %.0fms with %d tool calls",
            model,
            (end_time - start_time) * 1000,
            len(assistant.tool_calls or []),
        )

        usage_obj = getattr(response, "usage", None)
        end_generation(
            generation,
            assistant,
            usage={
                "promptTokens": getattr(usage_obj, "prompt_tokens", 0),
                "completionTokens": getattr(usage_obj, "completion_tokens", 0),
                "totalTokens": getattr(usage_obj, "total_tokens", 0),
            },
            metadata={**metadata, "latency_ms": (end_time - start_time) * 1000},
        )
        return assistant
