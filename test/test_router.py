import asyncio

import pytest
from conftest import ECHO_TOOL, FakeTransport, make_config, process_server

from toolchat.errors import (
    ResourceNotFound,
    SchemaMismatch,
    ServerNotConnected,
    ToolExecutionError,
    ToolNotFound,
    TransportError,
    TransportErrorKind,
)
from toolchat.tool.manager import ConnectionManager, ServerState
from toolchat.tool.router import ToolRouter
from toolchat.tool.types import ResourceDefinition, ResultStatus, TransportKind


async def _setup(registry, transport, *servers):
    manager = ConnectionManager(
        make_config(*servers), registry, transports={TransportKind.PROCESS: transport}
    )
    await manager.start()
    return manager, ToolRouter(manager, registry)


@pytest.mark.asyncio
async def test_execute_routes_to_the_live_server(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))

    result = await router.execute("alpha", "echo", {"text": "hi"})

    assert result.status is ResultStatus.OK
    assert result.content == {"echo": {"text": "hi"}}
    assert transport.calls == [("alpha", "echo", {"text": "hi"})]
    await manager.stop_all()


@pytest.mark.asyncio
async def test_unconnected_server_raises_without_touching_state(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(
        registry, transport, process_server("alpha"), process_server("beta", auto_start=False)
    )
    before = registry.catalog("alpha")

    with pytest.raises(ServerNotConnected):
        await router.execute("beta", "echo", {"text": "hi"})

    assert registry.catalog("alpha") is before
    assert registry.catalog("beta") is None
    assert transport.calls == []
    await manager.stop_all()


@pytest.mark.asyncio
async def test_unknown_tool_never_reaches_the_transport(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))

    with pytest.raises(ToolNotFound):
        await router.execute("alpha", "nope", {})

    assert transport.calls == []
    await manager.stop_all()


@pytest.mark.asyncio
async def test_schema_mismatch_never_reaches_the_transport(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))

    with pytest.raises(SchemaMismatch):
        await router.execute("alpha", "echo", {"text": 42})
    with pytest.raises(SchemaMismatch):
        await router.execute("alpha", "echo", {})

    assert transport.calls == []
    await manager.stop_all()


@pytest.mark.asyncio
async def test_unknown_capabilities_skip_registry_checks(registry):
    transport = FakeTransport(capabilities_known=False)
    manager, router = await _setup(registry, transport, process_server("local"))

    await router.execute("local", "anything", None)

    assert transport.calls == [("local", "anything", {})]
    await manager.stop_all()


@pytest.mark.asyncio
async def test_transport_failure_marks_server_disconnected(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))
    transport.call_error = TransportError(TransportErrorKind.STREAM_CLOSED, "alpha", "pipe broke")

    with pytest.raises(TransportError):
        await router.execute("alpha", "echo", {"text": "hi"})

    assert not manager.is_connected("alpha")
    assert manager.state("alpha") is ServerState.DISCONNECTED
    assert registry.tools("alpha") == []
    with pytest.raises(ServerNotConnected):
        await router.execute("alpha", "echo", {"text": "hi"})
    await manager.stop_all()


@pytest.mark.asyncio
async def test_tool_failure_leaves_server_connected(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))
    transport.call_error = ToolExecutionError("alpha", "echo", "bad input")

    with pytest.raises(ToolExecutionError):
        await router.execute("alpha", "echo", {"text": "hi"})

    assert manager.is_connected("alpha")
    await manager.stop_all()


@pytest.mark.asyncio
async def test_timeout_leaves_owned_state_untouched(registry):
    transport = FakeTransport(tools={"alpha": [ECHO_TOOL]})
    manager, router = await _setup(registry, transport, process_server("alpha"))
    before = registry.catalog("alpha")

    async def hang(handle, tool_name, arguments):
        await asyncio.sleep(10)

    transport.call = hang
    with pytest.raises(asyncio.TimeoutError):
        await router.execute("alpha", "echo", {"text": "hi"}, timeout=0.05)

    assert manager.is_connected("alpha")
    assert registry.catalog("alpha") is before
    await manager.stop_all()


@pytest.mark.asyncio
async def test_read_resource(registry):
    transport = FakeTransport(
        tools={"alpha": [ECHO_TOOL]},
        resources={"alpha": [ResourceDefinition(uri="info://server-info")]},
    )
    manager, router = await _setup(registry, transport, process_server("alpha"))

    result = await router.read_resource("alpha", "info://server-info")
    assert result.content == "resource body"

    with pytest.raises(ResourceNotFound):
        await router.read_resource("alpha", "info://missing")
    await manager.stop_all()
