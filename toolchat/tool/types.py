from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, JsonValue

from toolchat.constants import DEFAULT_CONNECT_TIMEOUT, DEFAULT_HANDSHAKE_TIMEOUT


class TransportKind(str, Enum):
    PROCESS = "process"
    STREAM = "stream"


@dataclass(frozen=True)
class ServerDescriptor:
    name: str
    transport: TransportKind
    command: Optional[str] = None
    url: Optional[str] = None
    api_key: Optional[str] = None
    enabled: bool = True
    auto_start: bool = False
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class McpConfig:
    servers: Tuple[ServerDescriptor, ...] = ()
    default_server: Optional[str] = None
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def get(self, name: str) -> Optional[ServerDescriptor]:
        return next((s for s in self.servers if s.name == name), None)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceDefinition:
    uri: str
    description: str = ""


@dataclass(frozen=True)
class ServerCatalog:
    """Immutable snapshot of one server's tools and resources."""

    tools: Mapping[str, ToolDefinition]
    resources: Mapping[str, ResourceDefinition]

    @classmethod
    def build(cls, tools, resources) -> "ServerCatalog":
        return cls(
            tools=MappingProxyType({t.name: t for t in tools}),
            resources=MappingProxyType({r.uri: r for r in resources}),
        )


class ResultStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    NOT_IMPLEMENTED = "not_implemented"


class ToolResult(BaseModel):
    server_name: str
    target: str
    status: ResultStatus = ResultStatus.OK
    content: JsonValue = None

    @property
    def implemented(self) -> bool:
        return self.status != ResultStatus.NOT_IMPLEMENTED
