import time
from typing import Any, Dict, Iterator, List, Literal, Optional

import pydantic
from pydantic import Field, JsonValue


class Event(pydantic.BaseModel):
    id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class ToolCall(Event):
    """A tool call exactly as the provider returned it (wire name, JSON arguments)."""

    id: str
    name: str
    arguments: str


class ToolCallRequest(pydantic.BaseModel):
    id: str
    compound_name: str
    arguments: Dict[str, JsonValue] = Field(default_factory=dict)


class AssistantMessage(Event):
    content: str | None = None
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: Optional[str] = None


class Message(Event):
    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.tool_calls
            ]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


class Conversation(pydantic.BaseModel):
    """Ordered, append-only message history for one chat."""

    messages: List[Message] = Field(default_factory=list)

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def add_user(self, text: str) -> Message:
        return self.append(Message(role="user", content=text))

    def add_system(self, text: str) -> Message:
        return self.append(Message(role="system", content=text))

    def to_openai(self) -> List[Dict[str, Any]]:
        return [m.to_openai() for m in self.messages]

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self.messages))

    def __getitem__(self, index: int) -> Message:
        return self.messages[index]
