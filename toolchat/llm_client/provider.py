from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from langfuse import Langfuse

from toolchat.llm_client.model import AssistantMessage


class ProviderClient(ABC):
    """One LLM backend. Messages and tools are always in OpenAI chat format."""

    provider_id: str = ""

    def __init__(self, client: Any, langfuse: Optional[Langfuse] = None) -> None:
        self.client = client
        self.langfuse = langfuse

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        max_tokens: int,
        tools: Optional[List[Dict[str, Any]]] = None,
        name: str = "chat_completion",
    ) -> AssistantMessage: ...
