from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from toolchat.errors import ResourceNotFound, ToolNotFound

from .types import ResourceDefinition, ServerCatalog, ToolDefinition

logger = logging.getLogger(__name__)

_EMPTY = ServerCatalog.build([], [])


class ToolRegistry:
    """
    Per-server catalog of tools and resources.

    Each server's catalog is an immutable ``ServerCatalog`` snapshot that is
    replaced with a single assignment on rebuild, so a reader holding a
    snapshot always sees either the complete old or the complete new set.
    """

    def __init__(self) -> None:
        self._catalogs: Dict[str, ServerCatalog] = {}

    def rebuild(
        self,
        server_name: str,
        tools: Iterable[ToolDefinition],
        resources: Iterable[ResourceDefinition],
    ) -> ServerCatalog:
        catalog = ServerCatalog.build(list(tools), list(resources))
        self._catalogs[server_name] = catalog
        logger.info(
            "Loaded %d tools and %d resources from server %s",
            len(catalog.tools),
            len(catalog.resources),
            server_name,
        )
        return catalog

    def remove(self, server_name: str) -> None:
        self._catalogs.pop(server_name, None)

    def clear(self) -> None:
        self._catalogs = {}

    def catalog(self, server_name: str) -> Optional[ServerCatalog]:
        return self._catalogs.get(server_name)

    def servers(self) -> List[str]:
        return list(self._catalogs)

    def tools(self, server_name: str) -> List[ToolDefinition]:
        return list(self._catalogs.get(server_name, _EMPTY).tools.values())

    def resources(self, server_name: str) -> List[ResourceDefinition]:
        return list(self._catalogs.get(server_name, _EMPTY).resources.values())

    def lookup_tool(self, server_name: str, tool_name: str) -> ToolDefinition:
        tool = self._catalogs.get(server_name, _EMPTY).tools.get(tool_name)
        if tool is None:
            raise ToolNotFound(server_name, tool_name)
        return tool

    def lookup_resource(self, server_name: str, uri: str) -> ResourceDefinition:
        resource = self._catalogs.get(server_name, _EMPTY).resources.get(uri)
        if resource is None:
            raise ResourceNotFound(server_name, uri)
        return resource

    def all_tools(self) -> List[Tuple[str, ToolDefinition]]:
        return [
            (server_name, tool)
            for server_name, catalog in list(self._catalogs.items())
            for tool in catalog.tools.values()
        ]
