import asyncio
from typing import Awaitable, Callable, Dict

import redis.asyncio as redis

from logging_config import get_logger
from redis_keys import REDIS_CONN_CHANNEL

logger = get_logger(__name__)

# Pushes one serialized frame to an open socket
SendText = Callable[[str], Awaitable[None]]


class ConnectionHub:
    """Tracks the sockets open on this instance and pushes frames to them."""

    def __init__(self):
        self._connections: Dict[str, SendText] = {}

    async def register(self, connection_id: str, send: SendText):
        self._connections[connection_id] = send
        logger.debug(f"Registered connection {connection_id} (local connections: {len(self._connections)})")

    async def unregister(self, connection_id: str):
        if self._connections.pop(connection_id, None) is not None:
            logger.debug(f"Unregistered connection {connection_id} (local connections: {len(self._connections)})")

    def is_local(self, connection_id: str) -> bool:
        return connection_id in self._connections

    async def send(self, connection_id: str, text: str) -> bool:
        """Deliver a frame. Returns False when the connection is unknown or the send failed."""
        return await self._send_local(connection_id, text)

    async def _send_local(self, connection_id: str, text: str) -> bool:
        send = self._connections.get(connection_id)
        if send is None:
            return False
        try:
            await send(text)
            return True
        except Exception as e:
            # Socket is closing, its own handler will run the disconnect cleanup
            logger.warning(f"Error sending to connection {connection_id}: {e}")
            return False

    def __len__(self):
        return len(self._connections)

    async def close(self):
        self._connections.clear()


class RedisConnectionHub(ConnectionHub):
    """Hub for multi-instance deployments.

    Each local connection gets a Redis pub/sub channel and a listener task that
    forwards whatever is published there to the socket. Sends to connections
    owned by another instance go through ``PUBLISH``; the subscriber count tells
    whether anyone still owns the target.
    """

    def __init__(self, redis_client: redis.Redis):
        super().__init__()
        self.redis_client = redis_client
        self._listeners: Dict[str, asyncio.Task] = {}

    def get_channel_name(self, connection_id: str) -> str:
        return REDIS_CONN_CHANNEL.format(connection_id=connection_id)

    async def register(self, connection_id: str, send: SendText):
        await super().register(connection_id, send)
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(self.get_channel_name(connection_id))
        self._listeners[connection_id] = asyncio.create_task(self._listen(connection_id, pubsub))

    async def unregister(self, connection_id: str):
        await super().unregister(connection_id)
        task = self._listeners.pop(connection_id, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def send(self, connection_id: str, text: str) -> bool:
        if self.is_local(connection_id):
            return await self._send_local(connection_id, text)
        subscribers = await self.redis_client.publish(self.get_channel_name(connection_id), text)
        logger.debug(f"Published frame for connection {connection_id}, {subscribers} subscribers")
        return subscribers > 0

    async def _listen(self, connection_id: str, pubsub):
        channel = self.get_channel_name(connection_id)
        logger.debug(f"Starting Redis listener on {channel}")
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                if message.get("type") == "message":
                    await self._send_local(connection_id, message["data"])
        except asyncio.CancelledError:
            logger.debug(f"Redis listener cancelled for connection {connection_id}")
            raise
        except Exception as e:
            logger.error(f"Error in Redis listener for connection {connection_id}: {e}", exc_info=True)
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                logger.error(f"Error closing pub/sub for connection {connection_id}: {e}")

    async def close(self):
        for connection_id in list(self._listeners):
            await self.unregister(connection_id)
        await super().close()


def create_hub(backend: str, redis_client: redis.Redis = None) -> ConnectionHub:
    if backend == "redis":
        return RedisConnectionHub(redis_client)
    return ConnectionHub()
