"""Tests for the HTTP chat gateway transport."""

from __future__ import annotations

import json

import httpx
import pytest

from app.services.transport import GatewayChatTransport


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_send_posts_message_with_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        transport = GatewayChatTransport(http_client, "http://gateway.local/", token="t0ken")
        sent = await transport.send("15550101234", "hello")

    assert sent is True
    assert transport.is_connected()
    assert str(seen[0].url) == "http://gateway.local/messages"
    assert seen[0].headers["Authorization"] == "Bearer t0ken"
    assert json.loads(seen[0].content) == {"to": "15550101234", "text": "hello"}


@pytest.mark.anyio("asyncio")
async def test_send_reports_gateway_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization"):
            raise httpx.ConnectError("gateway down", request=request)
        return httpx.Response(503)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        rejected = await GatewayChatTransport(http_client, "http://gateway.local").send("1234", "hi")
        unreachable = await GatewayChatTransport(
            http_client, "http://gateway.local", token="t"
        ).send("1234", "hi")

    assert rejected is False
    assert unreachable is False


@pytest.mark.anyio("asyncio")
async def test_unconfigured_gateway_drops_messages() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        transport = GatewayChatTransport(http_client, None)

        assert not transport.is_connected()
        assert await transport.send("1234", "hi") is False
