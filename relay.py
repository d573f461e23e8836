"""Rendezvous relay: pairs two connections per room and forwards negotiation messages between them."""

import uuid
from typing import Optional

from pydantic import ValidationError

from backend import JoinOutcome, JoinStatus, MembershipConflict, RoomRegistry, create_redis_client, create_registry
from connections import ConnectionHub, SendText, create_hub
from constants import RELAY_BACKEND
from errors import InvalidMessage, RoutingMiss
from logging_config import get_logger
from schemas.signaling import (
    JoinedRoom,
    JoinRoom,
    LeaveRoom,
    RelayError,
    RoomFull,
    SignalToPeer,
    UserConnected,
    UserDisconnected,
    Welcome,
    WireModel,
    normalize_room_key,
    parse_client_message,
    signal_from_peer,
    signal_kind,
    signal_payload,
)

logger = get_logger(__name__)


class Relay:
    def __init__(self, registry: RoomRegistry, hub: ConnectionHub):
        self.registry = registry
        self.hub = hub

    async def connect(self, send: SendText, connection_id: Optional[str] = None) -> str:
        connection_id = connection_id or uuid.uuid4().hex
        await self.hub.register(connection_id, send)
        await self._push(connection_id, Welcome(connection_id=connection_id))
        logger.info(f"User connected: {connection_id}")
        return connection_id

    async def disconnect(self, connection_id: str):
        logger.info(f"User disconnected: {connection_id}")
        try:
            await self.leave(connection_id)
        finally:
            await self.hub.unregister(connection_id)

    async def join(self, connection_id: str, room_key: str) -> Optional[JoinOutcome]:
        room_key = normalize_room_key(room_key)
        if not room_key:
            await self._reject(connection_id, InvalidMessage("invalid-room-key", "Room key must not be empty"))
            return None

        logger.info(f"User {connection_id} joining room: {room_key}")
        try:
            outcome = await self.registry.join(room_key, connection_id)
        except MembershipConflict:
            previous = await self.registry.room_of(connection_id)
            logger.info(f"User {connection_id} switches from room {previous} to {room_key}")
            await self.leave(connection_id)
            outcome = await self.registry.join(room_key, connection_id)

        if outcome.status == JoinStatus.FULL:
            logger.info(f"Room {room_key} is full")
            await self._push(connection_id, RoomFull(room_key=room_key))
            return outcome

        if outcome.status == JoinStatus.JOINED:
            logger.info(f"User {connection_id} joined room {room_key}. Room size: {len(outcome.peers) + 1}")
            for peer_id in outcome.peers:
                await self._push(peer_id, UserConnected(peer_id=connection_id))
                logger.info(f"Notified {peer_id} that {connection_id} connected")

        await self._push(connection_id, JoinedRoom(room_key=room_key))
        return outcome

    async def relay(self, from_id: str, message: SignalToPeer) -> bool:
        """Forward a negotiation message to ``message.to`` annotated with its sender.

        Raises RoutingMiss when the target is gone or outside the sender's room.
        """
        kind = signal_kind(message)
        to_id = message.to
        logger.debug(f"{kind.value} from {from_id} to {to_id}")

        sender_room = await self.registry.room_of(from_id)
        if sender_room is None or sender_room != await self.registry.room_of(to_id):
            raise RoutingMiss(to_id, "not in the sender's room")

        delivered = await self.hub.send(to_id, signal_from_peer(kind, signal_payload(message), from_id).to_json())
        if not delivered:
            raise RoutingMiss(to_id, "not connected")
        return True

    async def leave(self, connection_id: str) -> bool:
        outcome = await self.registry.leave(connection_id)
        if outcome is None:
            return False

        for peer_id in outcome.remaining:
            await self._push(peer_id, UserDisconnected(peer_id=connection_id))
        if outcome.room_deleted:
            logger.info(f"Room {outcome.room_key} deleted (empty)")
        else:
            logger.info(f"Room {outcome.room_key} now has {len(outcome.remaining)} user(s)")
        return True

    async def handle_text(self, connection_id: str, data: str):
        """Dispatch one inbound frame. Bad frames are answered with an error, never raised."""
        try:
            message = parse_client_message(data)
        except ValidationError as e:
            logger.warning(f"Invalid message from {connection_id}: {e.error_count()} error(s)")
            await self._reject(connection_id, InvalidMessage("invalid-message", "Malformed or unknown message"))
            return

        if isinstance(message, JoinRoom):
            await self.join(connection_id, message.room_key)
        elif isinstance(message, LeaveRoom):
            await self.leave(connection_id)
        else:
            try:
                await self.relay(connection_id, message)
            except RoutingMiss as e:
                logger.warning(f"Dropped {message.type} from {connection_id}: {e}")

    async def room_details(self, room_key: str) -> Optional[dict]:
        room_key = normalize_room_key(room_key)
        members = await self.registry.members(room_key) if room_key else set()
        if not members:
            return None
        return {
            "room_key": room_key,
            "capacity": self.registry.capacity,
            "members_count": len(members),
            "is_full": len(members) >= self.registry.capacity,
        }

    async def room_count(self) -> int:
        return await self.registry.room_count()

    async def close(self):
        await self.hub.close()
        await self.registry.close()

    async def _push(self, connection_id: str, message: WireModel) -> bool:
        delivered = await self.hub.send(connection_id, message.to_json())
        if not delivered:
            logger.debug(f"Could not push {message.type} to {connection_id}")
        return delivered

    async def _reject(self, connection_id: str, error: InvalidMessage):
        await self._push(connection_id, RelayError(code=error.code, message=error.message))


def create_relay(backend: str = RELAY_BACKEND) -> Relay:
    """Build a relay whose registry and hub share one Redis client when the backend is Redis."""
    redis_client = create_redis_client() if backend == "redis" else None
    return Relay(create_registry(backend, redis_client), create_hub(backend, redis_client))
