"""
Websocket realtime transport.

One aiohttp websocket connection to the backend's realtime endpoint,
subscribed to a fixed channel set. Channel changes are handled by the bus
closing this transport and opening a new one.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import urlencode

import aiohttp

from appwrite_orm.backends.base import RealtimeTransport
from appwrite_orm.errors import TransportDisconnectedError

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 20.0


class AiohttpRealtimeTransport(RealtimeTransport):
    """
    Realtime connection over ``aiohttp``.

    Args:
        endpoint: Websocket endpoint (``wss://host/v1/realtime``)
        project_id: Project the channels belong to
        heartbeat: Seconds between ``ping`` messages
    """

    def __init__(self, endpoint: str, project_id: str, heartbeat: float = HEARTBEAT_INTERVAL):
        self.endpoint = endpoint
        self.project_id = project_id
        self.heartbeat = heartbeat
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ping_task: asyncio.Task[None] | None = None

    def url_for(self, channels: list[str]) -> str:
        params = [("project", self.project_id)] + [("channels[]", c) for c in channels]
        return f"{self.endpoint}?{urlencode(params)}"

    async def connect(self, channels: list[str]) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url_for(channels))
        except aiohttp.ClientError as e:
            await self._session.close()
            self._session = None
            raise TransportDisconnectedError(f"Realtime connect failed: {e}") from e
        self._ping_task = asyncio.create_task(self._ping_loop())
        logger.debug("Realtime connected with %d channels", len(channels))

    async def _ping_loop(self) -> None:
        while self._ws is not None and not self._ws.closed:
            await asyncio.sleep(self.heartbeat)
            try:
                await self._ws.send_json({"type": "ping"})
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError):
                return

    async def receive(self) -> dict[str, Any]:
        if self._ws is None:
            raise TransportDisconnectedError("Realtime transport is not connected")

        while True:
            msg = await self._ws.receive()
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                raise TransportDisconnectedError(f"Realtime connection closed ({msg.type.name})")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue

            try:
                message = json.loads(msg.data)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed realtime frame")
                continue

            if not isinstance(message, dict):
                logger.warning("Ignoring realtime frame that is not an object")
                continue
            kind = message.get("type")
            if kind == "event":
                data = message.get("data")
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring realtime event without a data object")
                continue
            if kind == "error":
                logger.error("Realtime error: %s", message.get("data"))
            # "connected" and "pong" frames carry nothing to deliver

    async def close(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
