"""Tests for the aiohttp realtime transport's frame handling."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qs, urlsplit

import aiohttp
import pytest

from appwrite_orm.backends.websocket import AiohttpRealtimeTransport
from appwrite_orm.errors import TransportDisconnectedError


def text(payload: Any) -> aiohttp.WSMessage:
    return aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, json.dumps(payload), None)


class FakeWebSocket:
    """Replays queued frames through ``receive``."""

    def __init__(self, frames: list[aiohttp.WSMessage]):
        self.frames = list(frames)
        self.closed = False

    async def receive(self) -> aiohttp.WSMessage:
        return self.frames.pop(0)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport() -> AiohttpRealtimeTransport:
    return AiohttpRealtimeTransport("wss://api.example.test/v1/realtime", "proj")


class TestAiohttpRealtimeTransport:
    def test_url_for_channels(self, transport) -> None:
        url = transport.url_for(["databases.main.collections.a.documents", "documents"])

        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "wss://api.example.test/v1/realtime"
        params = parse_qs(parts.query)
        assert params["project"] == ["proj"]
        assert params["channels[]"] == ["databases.main.collections.a.documents", "documents"]

    @pytest.mark.asyncio
    async def test_receive_requires_connection(self, transport) -> None:
        with pytest.raises(TransportDisconnectedError):
            await transport.receive()

    @pytest.mark.asyncio
    async def test_receive_skips_control_frames(self, transport) -> None:
        event = {
            "events": ["databases.main.collections.a.documents.1.create"],
            "payload": {"$id": "1"},
        }
        transport._ws = FakeWebSocket(
            [
                text({"type": "connected", "data": {"channels": []}}),
                aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, "not json", None),
                text({"type": "pong"}),
                text({"type": "error", "data": {"code": 1008, "message": "Policy"}}),
                aiohttp.WSMessage(aiohttp.WSMsgType.BINARY, b"\x00", None),
                text(["not", "an", "object"]),
                text({"type": "event", "data": "not-an-object"}),
                text({"type": "event", "data": event}),
            ]
        )

        assert await transport.receive() == event

    @pytest.mark.parametrize(
        "kind",
        [aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR],
    )
    @pytest.mark.asyncio
    async def test_close_frames_disconnect(self, transport, kind) -> None:
        transport._ws = FakeWebSocket([aiohttp.WSMessage(kind, None, None)])

        with pytest.raises(TransportDisconnectedError):
            await transport.receive()

    @pytest.mark.asyncio
    async def test_close_releases_socket(self, transport) -> None:
        ws = FakeWebSocket([])
        transport._ws = ws

        await transport.close()

        assert ws.closed
        assert transport._ws is None
