"""
Transport layer for MCP tool servers.

Two variants behind one ``Transport`` interface:
  - ProcessTransport: spawns the server through the shell and speaks MCP
    over its stdin/stdout pipes. Non-protocol stdout lines and all stderr
    lines are logged tagged with the server name.
  - StreamTransport: connects to a remote server over SSE, with an optional
    bearer token resolved from the environment.

A process that never completes the MCP handshake is kept running in the
"reachable, capability unknown" state: discovery yields nothing and calls
return a ``not_implemented`` result instead of failing.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import sys
import time
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import anyio
from mcp import ClientSession, types
from mcp.client.sse import sse_client
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage
from pydantic import AnyUrl

from toolchat.constants import DEFAULT_HANDSHAKE_TIMEOUT, PROCESS_STOP_TIMEOUT
from toolchat.errors import ToolExecutionError, TransportError, TransportErrorKind

from .config_loader import resolve_credential
from .types import (
    ResourceDefinition,
    ResultStatus,
    ServerDescriptor,
    ToolDefinition,
    ToolResult,
    TransportKind,
)

logger = logging.getLogger(__name__)

# Largest single stdout line accepted from a tool server
_STREAM_LIMIT = 16 * 1024 * 1024

_STREAM_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
)


class LiveServerHandle:
    """Runtime state of one connected server. Owned by the ConnectionManager."""

    def __init__(self, descriptor: ServerDescriptor, connection: Any = None):
        self.descriptor = descriptor
        self.connection = connection
        self.runner: Optional[_SessionRunner] = None
        self.session: Optional[ClientSession] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self.created_at = time.time()
        self.closed = False
        self._close_callbacks: List[Callable[["LiveServerHandle"], None]] = []

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> TransportKind:
        return self.descriptor.transport

    @property
    def capabilities_known(self) -> bool:
        return self.session is not None

    def attach_session(
        self,
        runner: _SessionRunner | None,
        session: ClientSession,
        capabilities: types.ServerCapabilities | None,
    ) -> None:
        self.runner = runner
        self.session = session
        self.capabilities = capabilities

    def add_close_callback(self, callback: Callable[["LiveServerHandle"], None]) -> None:
        if self.closed:
            callback(self)
            return
        self._close_callbacks.append(callback)

    def mark_closed(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in list(self._close_callbacks):
            try:
                callback(self)
            except Exception:
                logger.exception("Close callback failed for %s", self.name)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<LiveServerHandle {self.name} {self.kind.value} {state}>"


class _SessionRunner:
    """
    Hosts a ``ClientSession`` inside one dedicated task.

    The session's task groups are entered and exited by the same task, so
    the session can be stopped from any caller (e.g. ``stop_all``).
    """

    def __init__(self, name: str, open_streams, on_end: Callable[[], None] | None = None):
        self.name = name
        self._open_streams = open_streams
        self._on_end = on_end
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._stop: Optional[asyncio.Event] = None
        self._established = False

    async def start(self, timeout: float):
        self._ready = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"mcp-session:{self.name}")
        try:
            return await asyncio.wait_for(self._ready, timeout)
        except BaseException:
            await self.stop()
            raise

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_streams())
                session = await stack.enter_async_context(
                    ClientSession(streams[0], streams[1])
                )
                init_result = await session.initialize()
                if self._ready.done():
                    return
                self._established = True
                self._ready.set_result((session, init_result))
                await self._stop.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                logger.warning("[%s] MCP session ended: %s", self.name, exc)
        finally:
            if self._established and self._on_end is not None:
                self._on_end()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        if not self._established:
            self._task.cancel()
        done, _ = await asyncio.wait({self._task}, timeout=PROCESS_STOP_TIMEOUT)
        if not done:
            logger.warning("[%s] MCP session did not close in time, cancelling", self.name)
            self._task.cancel()
            await asyncio.wait({self._task})


class _ProcessChannel:
    """Owns a spawned server process and pumps its pipes."""

    def __init__(self, name: str, process: asyncio.subprocess.Process):
        self.name = name
        self.process = process
        self._session_writer = None
        self._tasks: List[asyncio.Task] = []
        self._exit_callbacks: List[Callable[[int], None]] = []
        self._stdout_callbacks: List[Callable[[], None]] = []
        self.stdout_closed = False

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._pump_stdout(), name=f"stdout:{self.name}"),
            asyncio.create_task(self._pump_stderr(), name=f"stderr:{self.name}"),
            asyncio.create_task(self._watch_exit(), name=f"exit:{self.name}"),
        ]

    def on_exit(self, callback: Callable[[int], None]) -> None:
        self._exit_callbacks.append(callback)

    def on_stdout_closed(self, callback: Callable[[], None]) -> None:
        self._stdout_callbacks.append(callback)

    @asynccontextmanager
    async def session_streams(self):
        read_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_reader = anyio.create_memory_object_stream(0)
        self._session_writer = read_writer
        if self.stdout_closed:
            await read_writer.aclose()
        stdin_task = asyncio.create_task(self._pump_stdin(write_reader), name=f"stdin:{self.name}")
        try:
            yield read_stream, write_stream
        finally:
            self._session_writer = None
            stdin_task.cancel()
            await asyncio.gather(stdin_task, return_exceptions=True)
            for stream in (read_writer, read_stream, write_stream, write_reader):
                await stream.aclose()

    async def _pump_stdout(self) -> None:
        try:
            async for raw in self.process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                writer = self._session_writer
                if writer is not None:
                    try:
                        message = types.JSONRPCMessage.model_validate_json(line)
                    except ValueError:
                        message = None
                    if message is not None:
                        try:
                            await writer.send(SessionMessage(message))
                            continue
                        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                            pass
                logger.info("[%s] %s", self.name, line)
        except (ValueError, asyncio.LimitOverrunError, OSError) as e:
            # An oversized line leaves the pipe unreadable
            logger.error("[%s] stdout failed: %s", self.name, e)
        finally:
            self.stdout_closed = True
            for callback in list(self._stdout_callbacks):
                try:
                    callback()
                except Exception:
                    logger.exception("stdout close callback failed for %s", self.name)
            # End of stream fails any request still waiting on the session
            writer = self._session_writer
            if writer is not None:
                await writer.aclose()

    async def _pump_stderr(self) -> None:
        async for raw in self.process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.warning("[%s] %s", self.name, line)

    async def _pump_stdin(self, write_reader) -> None:
        async with write_reader:
            async for session_message in write_reader:
                payload = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                try:
                    self.process.stdin.write((payload + "\n").encode("utf-8"))
                    await self.process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    logger.warning("[%s] stdin closed by server", self.name)
                    return

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        logger.info("[%s] process exited with code %s", self.name, returncode)
        for callback in list(self._exit_callbacks):
            try:
                callback(returncode)
            except Exception:
                logger.exception("Exit callback failed for %s", self.name)

    def _signal(self, sig: int) -> None:
        try:
            if os.name == "posix":
                # Spawned in its own session, so this reaches the shell's children too
                os.killpg(self.process.pid, sig)
            elif sig == signal.SIGTERM:
                self.process.terminate()
            else:
                self.process.kill()
        except ProcessLookupError:
            pass

    async def close(self) -> None:
        if self.alive:
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(self.process.wait(), PROCESS_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("[%s] did not exit after SIGTERM, killing", self.name)
                self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))
                await self.process.wait()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("[%s] process stopped", self.name)


def _call_content(result: types.CallToolResult):
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured
    blocks = [block.model_dump(mode="json", exclude_none=True) for block in result.content]
    if blocks and all(b.get("type") == "text" for b in blocks):
        return "\n".join(b.get("text", "") for b in blocks)
    return blocks


def _resource_content(result: types.ReadResourceResult):
    contents = [c.model_dump(mode="json", exclude_none=True) for c in result.contents]
    if len(contents) == 1 and "text" in contents[0]:
        return contents[0]["text"]
    return contents


class Transport(ABC):
    """Uniform interface over process and stream tool servers."""

    kind: TransportKind

    def __init__(self, handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT):
        self.handshake_timeout = handshake_timeout

    @abstractmethod
    async def connect(self, descriptor: ServerDescriptor) -> LiveServerHandle:
        ...

    @abstractmethod
    async def close(self, handle: LiveServerHandle) -> None:
        """Release everything the handle owns. Safe on an already-dead handle."""
        ...

    def _ensure_open(self, handle: LiveServerHandle) -> None:
        if handle.closed:
            raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, "connection is closed")

    async def list_tools(self, handle: LiveServerHandle) -> List[ToolDefinition]:
        self._ensure_open(handle)
        if handle.session is None:
            return []
        if handle.capabilities is not None and handle.capabilities.tools is None:
            return []
        try:
            result = await handle.session.list_tools()
        except McpError as e:
            logger.info("[%s] tools/list not available: %s", handle.name, e)
            return []
        except _STREAM_ERRORS as e:
            raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in result.tools
        ]

    async def list_resources(self, handle: LiveServerHandle) -> List[ResourceDefinition]:
        self._ensure_open(handle)
        if handle.session is None:
            return []
        if handle.capabilities is not None and handle.capabilities.resources is None:
            return []
        try:
            result = await handle.session.list_resources()
        except McpError as e:
            logger.info("[%s] resources/list not available: %s", handle.name, e)
            return []
        except _STREAM_ERRORS as e:
            raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
        return [
            ResourceDefinition(
                uri=str(resource.uri),
                description=resource.description or resource.name or "",
            )
            for resource in result.resources
        ]

    async def call(
        self, handle: LiveServerHandle, tool_name: str, arguments: Dict[str, Any]
    ) -> ToolResult:
        self._ensure_open(handle)
        if handle.session is None:
            logger.info("[%s] executing tool %s with args %s: capabilities unknown", handle.name, tool_name, arguments)
            return ToolResult(
                server_name=handle.name,
                target=tool_name,
                status=ResultStatus.NOT_IMPLEMENTED,
                content={"result": "Tool execution not implemented"},
            )
        try:
            result = await handle.session.call_tool(tool_name, arguments=arguments)
        except McpError as e:
            if handle.closed:
                raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
            raise ToolExecutionError(handle.name, tool_name, str(e)) from e
        except _STREAM_ERRORS as e:
            raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
        return ToolResult(
            server_name=handle.name,
            target=tool_name,
            status=ResultStatus.ERROR if result.isError else ResultStatus.OK,
            content=_call_content(result),
        )

    async def read_resource(self, handle: LiveServerHandle, uri: str) -> ToolResult:
        self._ensure_open(handle)
        if handle.session is None:
            logger.info("[%s] accessing resource %s: capabilities unknown", handle.name, uri)
            return ToolResult(
                server_name=handle.name,
                target=uri,
                status=ResultStatus.NOT_IMPLEMENTED,
                content={"data": "Resource access not implemented"},
            )
        try:
            result = await handle.session.read_resource(AnyUrl(uri))
        except McpError as e:
            if handle.closed:
                raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
            raise ToolExecutionError(handle.name, uri, str(e)) from e
        except _STREAM_ERRORS as e:
            raise TransportError(TransportErrorKind.STREAM_CLOSED, handle.name, str(e)) from e
        return ToolResult(server_name=handle.name, target=uri, content=_resource_content(result))


class ProcessTransport(Transport):
    """MCP over the stdin/stdout pipes of a local subprocess."""

    kind = TransportKind.PROCESS

    @staticmethod
    def split_command(descriptor: ServerDescriptor) -> List[str]:
        try:
            argv = shlex.split(descriptor.command or "")
        except ValueError as e:
            raise TransportError(TransportErrorKind.SPAWN_FAILED, descriptor.name, f"bad command: {e}") from e
        if not argv:
            raise TransportError(TransportErrorKind.SPAWN_FAILED, descriptor.name, "empty command")

        # Run python servers inside the current interpreter's environment
        if argv[0] in ("python", "python3"):
            argv[0] = sys.executable

        program = argv[0]
        exists = shutil.which(program) is not None
        if not exists and os.path.sep in program:
            exists = os.path.exists(program)
        if not exists:
            raise TransportError(
                TransportErrorKind.SPAWN_FAILED, descriptor.name, f"executable not found: {program}"
            )
        return argv

    async def connect(self, descriptor: ServerDescriptor) -> LiveServerHandle:
        argv = self.split_command(descriptor)

        # Inherit the parent environment so servers see API keys etc.
        env = dict(os.environ)
        env.update(descriptor.env)

        logger.info("Starting process server %s: %s", descriptor.name, " ".join(argv))
        try:
            process = await asyncio.create_subprocess_shell(
                shlex.join(argv),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STREAM_LIMIT,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise TransportError(TransportErrorKind.SPAWN_FAILED, descriptor.name, str(e)) from e

        channel = _ProcessChannel(descriptor.name, process)
        handle = LiveServerHandle(descriptor, channel)
        channel.on_exit(lambda returncode: handle.mark_closed())
        channel.on_stdout_closed(handle.mark_closed)
        channel.start()

        try:
            runner = _SessionRunner(descriptor.name, channel.session_streams, on_end=handle.mark_closed)
            try:
                session, init_result = await runner.start(self.handshake_timeout)
            except Exception as e:
                # stdout closes slightly before the exit status is reaped
                if not channel.alive or channel.stdout_closed:
                    raise TransportError(
                        TransportErrorKind.SPAWN_FAILED,
                        descriptor.name,
                        f"process exited or closed stdout during handshake (code {process.returncode})",
                    ) from e
                logger.warning(
                    "Server %s is running but did not complete the MCP handshake (%s); "
                    "capabilities unknown",
                    descriptor.name,
                    e.__class__.__name__,
                )
            else:
                handle.attach_session(runner, session, init_result.capabilities)
        except BaseException:
            await channel.close()
            raise

        return handle

    async def close(self, handle: LiveServerHandle) -> None:
        if handle.runner is not None:
            await handle.runner.stop()
        if handle.connection is not None:
            await handle.connection.close()
        handle.mark_closed()


class StreamTransport(Transport):
    """MCP over an SSE connection to a remote server."""

    kind = TransportKind.STREAM

    async def connect(self, descriptor: ServerDescriptor) -> LiveServerHandle:
        token = resolve_credential(descriptor.api_key)
        headers = {"Authorization": f"Bearer {token}"} if token else None

        handle = LiveServerHandle(descriptor)
        runner = _SessionRunner(
            descriptor.name,
            lambda: sse_client(descriptor.url, headers=headers, timeout=self.handshake_timeout),
            on_end=handle.mark_closed,
        )
        logger.info("Connecting to stream server %s at %s", descriptor.name, descriptor.url)
        try:
            session, init_result = await runner.start(self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(TransportErrorKind.CONNECT_FAILED, descriptor.name, "timed out") from e
        except Exception as e:
            raise TransportError(TransportErrorKind.CONNECT_FAILED, descriptor.name, str(e)) from e

        handle.connection = runner
        handle.attach_session(runner, session, init_result.capabilities)
        return handle

    async def close(self, handle: LiveServerHandle) -> None:
        if handle.runner is not None:
            await handle.runner.stop()
        handle.mark_closed()


def default_transports(handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT) -> Dict[TransportKind, Transport]:
    return {
        TransportKind.PROCESS: ProcessTransport(handshake_timeout),
        TransportKind.STREAM: StreamTransport(handshake_timeout),
    }
