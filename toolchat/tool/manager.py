"""
Connection manager: owns the configured tool servers and their live handles.

Usage:
    registry = ToolRegistry()
    manager = ConnectionManager(load_mcp_config(), registry)

    # Connect every enabled server (process servers need autoStart)
    await manager.start()

    manager.list_servers()
    # [{"name": "local-tools", "transport": "process", "connected": True}, ...]

    # Tear everything down (safe to call more than once)
    await manager.stop_all()

Per server:  UNCONFIGURED → CONNECTING → CONNECTED → DISCONNECTED

A failed connect is logged and the server is left out of the live set; it
never aborts the others. A server whose process exits or whose stream ends
is dropped from the live set. There is no automatic reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from toolchat.errors import ServerNotConnected, TransportError, TransportErrorKind

from .registry import ToolRegistry
from .transport import LiveServerHandle, Transport, default_transports
from .types import McpConfig, ServerDescriptor, TransportKind

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionManager:
    def __init__(
        self,
        config: McpConfig,
        registry: ToolRegistry,
        transports: Mapping[TransportKind, Transport] | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.transports: Dict[TransportKind, Transport] = dict(
            transports or default_transports(config.handshake_timeout)
        )
        self._descriptors: Dict[str, ServerDescriptor] = {s.name: s for s in config.servers}
        self._handles: Dict[str, LiveServerHandle] = {}
        self._states: Dict[str, ServerState] = {
            name: ServerState.UNCONFIGURED for name in self._descriptors
        }
        # One lock per server name so unrelated servers connect concurrently
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._descriptors}
        self._pending: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        logger.info(
            "ConnectionManager initialized with servers: %s",
            list(self._descriptors.keys()),
        )

    # ── startup ──────────────────────────────────────────

    def should_autoconnect(self, descriptor: ServerDescriptor) -> bool:
        if not descriptor.enabled:
            return False
        if descriptor.transport is TransportKind.PROCESS:
            return descriptor.auto_start
        return True

    async def start(self) -> Dict[str, bool]:
        """Connect every eligible server concurrently. Returns {name: connected}."""
        eligible = [d.name for d in self.config.servers if self.should_autoconnect(d)]
        results = await asyncio.gather(
            *(self.connect(name) for name in eligible), return_exceptions=True
        )
        outcome: Dict[str, bool] = {}
        for name, result in zip(eligible, results):
            if isinstance(result, BaseException):
                if not isinstance(result, asyncio.CancelledError):
                    logger.error("Failed to initialize MCP server %s: %s", name, result)
                outcome[name] = False
            else:
                outcome[name] = result
        return outcome

    # ── connect / disconnect ─────────────────────────────

    async def connect(self, server_name: str) -> bool:
        descriptor = self._descriptors.get(server_name)
        if descriptor is None:
            raise ServerNotConnected(server_name)
        if not descriptor.enabled:
            logger.warning("Server %s is disabled; not connecting", server_name)
            return False

        task = self._pending.get(server_name)
        if task is None or task.done():
            task = asyncio.ensure_future(self._connect(descriptor))
            self._pending[server_name] = task
            task.add_done_callback(lambda t, n=server_name: self._forget_pending(n, t))
        return await task

    def _forget_pending(self, server_name: str, task: asyncio.Task) -> None:
        if self._pending.get(server_name) is task:
            del self._pending[server_name]

    async def _connect(self, descriptor: ServerDescriptor) -> bool:
        name = descriptor.name
        async with self._locks[name]:
            if name in self._handles:
                return True

            self._states[name] = ServerState.CONNECTING
            transport = self.transports[descriptor.transport]
            handle: Optional[LiveServerHandle] = None
            try:
                handle = await asyncio.wait_for(
                    transport.connect(descriptor), self.config.connect_timeout
                )
                tools = await asyncio.wait_for(
                    transport.list_tools(handle), self.config.connect_timeout
                )
                resources = await asyncio.wait_for(
                    transport.list_resources(handle), self.config.connect_timeout
                )
                if handle.closed:
                    raise TransportError(
                        TransportErrorKind.STREAM_CLOSED, name, "closed during discovery"
                    )
            except (TransportError, asyncio.TimeoutError) as e:
                logger.error("Failed to initialize MCP server %s: %s", name, str(e) or "timed out")
                await self._discard(transport, handle)
                self._states[name] = ServerState.DISCONNECTED
                return False
            except BaseException:
                await self._discard(transport, handle)
                self._states[name] = ServerState.DISCONNECTED
                raise

            # Connect and discovery both finished; only now touch owned state
            self._handles[name] = handle
            self.registry.rebuild(name, tools, resources)
            self._states[name] = ServerState.CONNECTED
            handle.add_close_callback(self._on_handle_closed)
            logger.info(
                "Connected to MCP server %s%s",
                name,
                "" if handle.capabilities_known else " (capabilities unknown)",
            )
            return True

    async def _discard(self, transport: Transport, handle: Optional[LiveServerHandle]) -> None:
        if handle is None:
            return
        try:
            await asyncio.shield(transport.close(handle))
        except Exception:
            logger.exception("Error releasing %s after failed connect", handle.name)

    def _on_handle_closed(self, handle: LiveServerHandle) -> None:
        # Runs synchronously from the transport, so removal is atomic for readers
        if self._handles.get(handle.name) is not handle:
            return
        logger.warning("MCP server %s disconnected", handle.name)
        del self._handles[handle.name]
        self.registry.remove(handle.name)
        self._states[handle.name] = ServerState.DISCONNECTED
        task = asyncio.ensure_future(self._close_quietly(handle))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_quietly(self, handle: LiveServerHandle) -> None:
        try:
            await self.transport_for(handle).close(handle)
        except Exception:
            logger.exception("Error closing MCP server %s", handle.name)

    def mark_disconnected(self, server_name: str, handle: LiveServerHandle | None = None) -> None:
        """Drop a server from the live set after a mid-call transport failure."""
        current = self._handles.get(server_name)
        if current is None or (handle is not None and current is not handle):
            return
        current.mark_closed()
        # no-op when mark_closed already ran the callback
        self._on_handle_closed(current)

    async def disconnect(self, server_name: str) -> None:
        lock = self._locks.get(server_name)
        if lock is None:
            return
        async with lock:
            handle = self._handles.pop(server_name, None)
            if handle is None:
                return
            self.registry.remove(server_name)
            self._states[server_name] = ServerState.DISCONNECTED
            await self._close_quietly(handle)
            logger.info("Stopped MCP server %s", server_name)

    async def stop_all(self) -> None:
        """Cancel in-flight connects, close every live handle, clear all state."""
        pending = [task for task in self._pending.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Detach first so exit callbacks fired by the closes below are no-ops
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                await self.transport_for(handle).close(handle)
                logger.info("Stopped MCP server %s", handle.name)
            except Exception:
                logger.exception("Error stopping MCP server %s", handle.name)

        self.registry.clear()
        for name, state in self._states.items():
            if state is not ServerState.UNCONFIGURED:
                self._states[name] = ServerState.DISCONNECTED

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── queries ──────────────────────────────────────────

    def get_handle(self, server_name: str) -> LiveServerHandle:
        handle = self._handles.get(server_name)
        if handle is None or handle.closed:
            raise ServerNotConnected(server_name)
        return handle

    def transport_for(self, handle: LiveServerHandle) -> Transport:
        return self.transports[handle.kind]

    def is_connected(self, server_name: str) -> bool:
        return server_name in self._handles

    def state(self, server_name: str) -> ServerState:
        return self._states.get(server_name, ServerState.UNCONFIGURED)

    def list_servers(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": d.name,
                "transport": d.transport.value,
                "connected": d.name in self._handles,
            }
            for d in self.config.servers
        ]
