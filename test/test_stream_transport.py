from contextlib import asynccontextmanager

import pytest
from conftest import stream_server

from toolchat.errors import TransportError, TransportErrorKind
from toolchat.tool import transport as transport_module
from toolchat.tool.transport import StreamTransport


def _refusing_sse_client(seen):
    @asynccontextmanager
    async def sse_client(url, headers=None, timeout=5):
        seen.append({"url": url, "headers": headers})
        raise ConnectionError("connection refused")
        yield

    return sse_client


@pytest.mark.asyncio
async def test_unreachable_server_is_a_connect_failure():
    descriptor = stream_server("remote", url="http://127.0.0.1:1/sse")

    with pytest.raises(TransportError) as info:
        await StreamTransport(handshake_timeout=2.0).connect(descriptor)

    assert info.value.kind is TransportErrorKind.CONNECT_FAILED
    assert info.value.server_name == "remote"


@pytest.mark.asyncio
async def test_bearer_token_comes_from_the_environment(monkeypatch):
    seen = []
    monkeypatch.setattr(transport_module, "sse_client", _refusing_sse_client(seen))
    monkeypatch.setenv("REMOTE_TOKEN", "s3cret")
    descriptor = stream_server("remote", url="http://example.test/sse", api_key="${REMOTE_TOKEN}")

    with pytest.raises(TransportError):
        await StreamTransport(handshake_timeout=1.0).connect(descriptor)

    assert seen == [
        {"url": "http://example.test/sse", "headers": {"Authorization": "Bearer s3cret"}}
    ]


@pytest.mark.asyncio
async def test_unset_token_sends_no_header(monkeypatch):
    seen = []
    monkeypatch.setattr(transport_module, "sse_client", _refusing_sse_client(seen))
    monkeypatch.delenv("REMOTE_TOKEN", raising=False)
    descriptor = stream_server("remote", api_key="${REMOTE_TOKEN}")

    with pytest.raises(TransportError) as info:
        await StreamTransport(handshake_timeout=1.0).connect(descriptor)

    assert info.value.kind is TransportErrorKind.CONNECT_FAILED
    assert seen[0]["headers"] is None
