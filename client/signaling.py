"""WebSocket connection to the signaling relay."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Optional

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect

from logging_config import get_logger
from schemas.signaling import WireModel, parse_server_message

logger = get_logger(__name__)


class SignalingClient:
    """Sends client messages to the relay and yields the relay's messages, parsed."""

    def __init__(self, server_url: str) -> None:
        self.server_url = server_url
        self._websocket: Optional[ClientConnection] = None

    async def connect(self) -> None:
        self._websocket = await connect(self.server_url)
        logger.info(f"Connected to signaling server {self.server_url}")

    async def send(self, message: WireModel) -> None:
        if self._websocket is None:
            raise ConnectionError("Not connected to the signaling server")
        await self._websocket.send(message.to_json())
        logger.debug(f"Sent {message.type}")

    async def messages(self) -> AsyncIterator[WireModel]:
        """Yield relay messages until the connection closes. Unparseable frames are skipped."""
        if self._websocket is None:
            raise ConnectionError("Not connected to the signaling server")
        try:
            async for raw in self._websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                try:
                    yield parse_server_message(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring invalid relay message: {e.error_count()} error(s)")
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")

    async def close(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
            logger.info("Disconnected from signaling server")

    async def __aenter__(self) -> "SignalingClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
