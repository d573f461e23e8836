"""Shared fixtures: in-process relays and recording sockets."""

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import MemoryRoomRegistry
from connections import ConnectionHub
from relay import Relay


class RecordingSocket:
    """Stands in for an open WebSocket: keeps every frame the relay pushes."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame["type"] == message_type]

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.frames]

    def clear(self) -> None:
        self.frames.clear()


@pytest.fixture
def registry() -> MemoryRoomRegistry:
    return MemoryRoomRegistry()


@pytest.fixture
def relay(registry: MemoryRoomRegistry) -> Relay:
    return Relay(registry, ConnectionHub())


@pytest.fixture
def connect(relay: Relay):
    """Open recording connections on the relay: ``conn_id, socket = await connect("A")``."""

    async def _connect(connection_id: str) -> tuple[str, RecordingSocket]:
        socket = RecordingSocket()
        await relay.connect(socket.send, connection_id=connection_id)
        return connection_id, socket

    return _connect


@pytest.fixture
def client(relay: Relay):
    app = create_app(relay=relay)
    with TestClient(app) as test_client:
        yield test_client
