import json
import logging
import os
from typing import Any, Dict, List, Optional

from langfuse import Langfuse

from toolchat.llm_client.model import AssistantMessage

logger = logging.getLogger(__name__)


def build_langfuse_client() -> Optional[Langfuse]:
    """Langfuse client from the environment, or None when tracing is not configured."""
    secret_key = os.environ.get("LANGFUSE_SECRET_KEY")
    public_key = os.environ.get("LANGFUSE_PUBLIC_KEY")
    host = os.environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")
    if not secret_key or not public_key:
        return None
    try:
        return Langfuse(secret_key=secret_key, public_key=public_key, host=host)
    except Exception as e:
        logger.warning("Langfuse tracing disabled, client failed to initialize: %s", e)
        return None


def start_generation(
    langfuse: Optional[Langfuse],
    name: str,
    model: str,
    messages: List[Dict[str, Any]],
    metadata: Dict[str, Any],
):
    if langfuse is None:
        return None
    return langfuse.start_generation(name=name, model=model, input=messages, metadata=metadata)


def end_generation(
    generation,
    assistant: AssistantMessage,
    usage: Dict[str, int],
    metadata: Dict[str, Any],
) -> None:
    if generation is None:
        return

    # Parse args for readability in the trace
    tool_calls_log = []
    for tc in assistant.tool_calls or []:
        try:
            parsed_args = json.loads(tc.arguments or "{}")
        except json.JSONDecodeError:
            parsed_args = tc.arguments
        tool_calls_log.append({"id": tc.id, "name": tc.name, "arguments": parsed_args})

    generation.update(
        output={"assistant": assistant.content or "", "tool_calls": tool_calls_log},
        usage=usage,
        metadata={**metadata, "finish_reason": assistant.finish_reason, "success": True},
    )
    generation.end()
