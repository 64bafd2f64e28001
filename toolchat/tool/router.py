from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from toolchat.errors import TransportError

from .manager import ConnectionManager
from .registry import ToolRegistry
from .schema import validate_arguments
from .types import ToolResult

logger = logging.getLogger(__name__)


class ToolRouter:
    """Resolves (server, tool) to a live server and performs the call."""

    def __init__(self, manager: ConnectionManager, registry: ToolRegistry) -> None:
        self.manager = manager
        self.registry = registry

    async def execute(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: float | None = None,
    ) -> ToolResult:
        handle = self.manager.get_handle(server_name)

        # The registry is authoritative whenever discovery actually ran
        if handle.capabilities_known:
            tool = self.registry.lookup_tool(server_name, tool_name)
            arguments = validate_arguments(server_name, tool_name, tool.input_schema, arguments)
        elif arguments is None:
            arguments = {}

        transport = self.manager.transport_for(handle)
        try:
            return await asyncio.wait_for(transport.call(handle, tool_name, arguments), timeout)
        except TransportError:
            logger.error("Error executing tool %s on server %s; marking it disconnected", tool_name, server_name)
            self.manager.mark_disconnected(server_name, handle)
            raise

    async def read_resource(
        self,
        server_name: str,
        uri: str,
        *,
        timeout: float | None = None,
    ) -> ToolResult:
        handle = self.manager.get_handle(server_name)
        if handle.capabilities_known:
            self.registry.lookup_resource(server_name, uri)

        transport = self.manager.transport_for(handle)
        try:
            return await asyncio.wait_for(transport.read_resource(handle, uri), timeout)
        except TransportError:
            logger.error("Error accessing resource %s on server %s; marking it disconnected", uri, server_name)
            self.manager.mark_disconnected(server_name, handle)
            raise
