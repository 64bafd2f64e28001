"""
Exception taxonomy shared by the tool layer and the chat dispatcher.

    ToolchatError
    ├── ConfigError            bad or missing configuration (startup only)
    ├── TransportError         spawn / connect / stream failures
    ├── ToolError              execution-time tool failures
    │   ├── ToolExecutionError
    │   └── SchemaMismatch
    ├── RoutingError           lookup failures in the router
    │   ├── ServerNotConnected
    │   ├── ToolNotFound
    │   └── ResourceNotFound
    ├── ProviderUnavailable / UnknownProvider / ProviderError
    └── DispatchError
        ├── ToolRoundLimitExceeded
        └── MalformedToolCall
"""

from __future__ import annotations

from enum import Enum


class ToolchatError(Exception):
    """Base class for every error raised by toolchat."""


class ConfigError(ToolchatError, ValueError):
    pass


class TransportErrorKind(str, Enum):
    SPAWN_FAILED = "spawn_failed"
    CONNECT_FAILED = "connect_failed"
    STREAM_CLOSED = "stream_closed"


class TransportError(ToolchatError):
    def __init__(self, kind: TransportErrorKind, server_name: str, message: str = ""):
        self.kind = kind
        self.server_name = server_name
        super().__init__(f"[{server_name}] {kind.value}: {message}" if message else f"[{server_name}] {kind.value}")


class ToolError(ToolchatError):
    pass


class ToolExecutionError(ToolError):
    def __init__(self, server_name: str, target: str, message: str):
        self.server_name = server_name
        self.target = target
        super().__init__(f"{server_name}/{target} failed: {message}")


class SchemaMismatch(ToolError):
    def __init__(self, server_name: str, tool_name: str, details: str):
        self.server_name = server_name
        self.tool_name = tool_name
        self.details = details
        super().__init__(f"Arguments for {server_name}/{tool_name} do not match its input schema: {details}")


class RoutingError(ToolchatError):
    pass


class ServerNotConnected(RoutingError):
    def __init__(self, server_name: str):
        self.server_name = server_name
        super().__init__(f"Server {server_name} not connected")


class ToolNotFound(RoutingError):
    def __init__(self, server_name: str, tool_name: str):
        self.server_name = server_name
        self.tool_name = tool_name
        super().__init__(f"Tool {tool_name} not found on server {server_name}")


class ResourceNotFound(RoutingError):
    def __init__(self, server_name: str, uri: str):
        self.server_name = server_name
        self.uri = uri
        super().__init__(f"Resource {uri} not found on server {server_name}")


class ProviderUnavailable(ToolchatError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} provider not initialized")


class UnknownProvider(ToolchatError, ValueError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class ProviderError(ToolchatError):
    pass


class DispatchError(ToolchatError):
    pass


class ToolRoundLimitExceeded(DispatchError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Model kept requesting tools after {limit} rounds")


class MalformedToolCall(DispatchError):
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Malformed tool call '{name}': {reason}")
