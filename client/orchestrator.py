"""Client-side session orchestration.

State machine:

    idle --join--> connecting --stream/connect--> connected
    connecting --room-full / relay error / primitive error--> error
    connecting|connected --peer left / primitive closed--> disconnected
    connecting|connected --primitive error--> error
    * --disconnect--> idle

Role assignment is structural: the side told that a peer joined (it was in the
room first) initiates; the side receiving an unsolicited offer responds.

Every input, whether a relay message or a callback of the negotiation
primitive, becomes an event on one queue and is handled one at a time.
Primitive callbacks carry the generation of the primitive that produced them,
so anything emitted by a discarded primitive is ignored.

Peer notifications and offers are only accepted once ``joined-room`` confirmed
the current room. The relay sends frames on one socket in order, so anything
addressed to a previous room arrives before that confirmation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from client.peer import (
    LocalSignal,
    NegotiationPrimitive,
    PeerClosed,
    PeerConnected,
    PeerEvent,
    PeerFactory,
    PeerFailed,
    RemoteStream,
    wait_closed,
)
from errors import CapacityExceeded, NegotiationFailure, SignalingError
from logging_config import get_logger
from schemas.signaling import (
    AnswerFromPeer,
    IceCandidateFromPeer,
    JoinedRoom,
    JoinRoom,
    LeaveRoom,
    OfferFromPeer,
    RelayError,
    RoomFull,
    SignalKind,
    UserConnected,
    UserDisconnected,
    Welcome,
    WireModel,
    signal_to_peer,
)

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


PEER_LEFT = "peer-left"
PEER_CLOSED = "peer-closed"


class SignalingSender(Protocol):
    async def send(self, message: WireModel) -> None: ...


# User requests

@dataclass
class JoinRequested:
    room_key: str


@dataclass
class DisconnectRequested:
    pass


# Relay notifications

@dataclass
class Connected:
    connection_id: str


@dataclass
class RoomJoined:
    room_key: str


@dataclass
class RoomRejected:
    room_key: str


@dataclass
class RelayRejected:
    code: str
    message: str


@dataclass
class PeerJoined:
    peer_id: str


@dataclass
class PeerLeft:
    peer_id: str


@dataclass
class RemoteSignal:
    kind: SignalKind
    payload: Any
    peer_id: str


# Negotiation primitive callbacks, tagged with the generation that emitted them

@dataclass
class PrimitiveEvent:
    generation: int
    event: PeerEvent


def event_from_message(message: WireModel):
    """Map one relay message onto an orchestrator event. Unknown messages map to None."""
    if isinstance(message, Welcome):
        return Connected(message.connection_id)
    if isinstance(message, JoinedRoom):
        return RoomJoined(message.room_key)
    if isinstance(message, RoomFull):
        return RoomRejected(message.room_key)
    if isinstance(message, RelayError):
        return RelayRejected(message.code, message.message)
    if isinstance(message, UserConnected):
        return PeerJoined(message.peer_id)
    if isinstance(message, UserDisconnected):
        return PeerLeft(message.peer_id)
    if isinstance(message, OfferFromPeer):
        return RemoteSignal(SignalKind.OFFER, message.offer, message.from_)
    if isinstance(message, AnswerFromPeer):
        return RemoteSignal(SignalKind.ANSWER, message.answer, message.from_)
    if isinstance(message, IceCandidateFromPeer):
        return RemoteSignal(SignalKind.ICE_CANDIDATE, message.candidate, message.from_)
    return None


StateListener = Callable[[ConnectionState, "SessionOrchestrator"], Optional[Awaitable[None]]]

_STOP = object()
_RESTARTABLE = (ConnectionState.IDLE, ConnectionState.DISCONNECTED, ConnectionState.ERROR)


class SessionOrchestrator:
    """Drives one participant's side of a two-party session."""

    def __init__(self, signaling: SignalingSender, peer_factory: PeerFactory) -> None:
        self.signaling = signaling
        self.peer_factory = peer_factory

        self.state = ConnectionState.IDLE
        self.connection_id: Optional[str] = None
        self.room_key: Optional[str] = None
        self.room_confirmed = False
        self.peer_id: Optional[str] = None
        self.is_initiator: Optional[bool] = None
        self.stream: Any = None
        # Every remote track received so far; stream is the first of them
        self.tracks: list = []
        self.error: Optional[SignalingError] = None
        self.disconnect_reason: Optional[str] = None

        self.events: asyncio.Queue = asyncio.Queue()
        self._primitive: Optional[NegotiationPrimitive] = None
        self._generation = 0
        self._listeners: list[StateListener] = []
        self._state_changed = asyncio.Condition()

        # (state, event type) -> handler. Missing entries are ignored.
        self._transitions: dict[tuple[ConnectionState, type], Callable] = {}
        for state in _RESTARTABLE:
            self._transitions[(state, JoinRequested)] = self._on_join_requested
        for state in ConnectionState:
            self._transitions[(state, DisconnectRequested)] = self._on_disconnect_requested
            self._transitions[(state, Connected)] = self._on_connected
        self._transitions.update(
            {
                (ConnectionState.CONNECTING, RoomJoined): self._on_room_joined,
                (ConnectionState.CONNECTING, RoomRejected): self._on_room_full,
                (ConnectionState.CONNECTING, RelayRejected): self._on_relay_rejected,
                (ConnectionState.CONNECTING, PeerJoined): self._on_peer_joined,
                (ConnectionState.CONNECTING, RemoteSignal): self._on_remote_signal,
                (ConnectionState.CONNECTED, RemoteSignal): self._on_remote_signal,
                (ConnectionState.CONNECTING, PeerLeft): self._on_peer_left,
                (ConnectionState.CONNECTED, PeerLeft): self._on_peer_left,
                (ConnectionState.CONNECTING, PrimitiveEvent): self._on_primitive_event,
                (ConnectionState.CONNECTED, PrimitiveEvent): self._on_primitive_event,
            }
        )

    # Caller API

    def join(self, room_key: str) -> None:
        self.events.put_nowait(JoinRequested(room_key))

    def disconnect(self) -> None:
        self.events.put_nowait(DisconnectRequested())

    def feed(self, message: WireModel) -> None:
        """Enqueue a message received from the relay."""
        event = event_from_message(message)
        if event is None:
            logger.debug(f"Ignoring relay message {type(message).__name__}")
            return
        self.events.put_nowait(event)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def run(self) -> None:
        """Consume events until ``stop()`` is called."""
        while True:
            event = await self.events.get()
            if event is _STOP:
                break
            try:
                await self.handle(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)
                await self._fail(SignalingError(str(e)))
        await self._discard_primitive()

    def stop(self) -> None:
        """Make ``run()`` return once the events already queued are handled."""
        self.events.put_nowait(_STOP)

    async def wait_for_state(self, *states: ConnectionState, timeout: Optional[float] = None) -> ConnectionState:
        async def _wait():
            async with self._state_changed:
                await self._state_changed.wait_for(lambda: self.state in states)
                return self.state

        return await asyncio.wait_for(_wait(), timeout)

    async def handle(self, event) -> None:
        """Apply exactly one event to the state machine."""
        handler = self._transitions.get((self.state, type(event)))
        if handler is None:
            logger.debug(f"No transition for {type(event).__name__} in state {self.state.value}")
            return
        await handler(event)

    # Transitions

    async def _on_connected(self, event: Connected) -> None:
        self.connection_id = event.connection_id
        logger.info(f"Connected to signaling server as {event.connection_id}")

    async def _on_join_requested(self, event: JoinRequested) -> None:
        await self._discard_primitive()
        self._reset_session()
        self.room_key = event.room_key
        await self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Joining room: {event.room_key}")
        await self.signaling.send(JoinRoom(room_key=event.room_key))

    async def _on_room_joined(self, event: RoomJoined) -> None:
        self.room_key = event.room_key
        self.room_confirmed = True
        logger.info(f"Joined room: {event.room_key}")

    async def _on_room_full(self, event: RoomRejected) -> None:
        logger.info(f"Room is full: {event.room_key or self.room_key}")
        await self._fail(CapacityExceeded(event.room_key or self.room_key or ""))

    async def _on_relay_rejected(self, event: RelayRejected) -> None:
        logger.warning(f"Relay rejected request ({event.code}): {event.message}")
        await self._fail(SignalingError(event.message))

    async def _on_peer_joined(self, event: PeerJoined) -> None:
        if not self.room_confirmed:
            logger.debug(f"Ignoring user-connected for {event.peer_id} from a previous room")
            return
        logger.info(f"User connected: {event.peer_id}")
        primitive = await self._create_primitive(event.peer_id, initiator=True)
        await primitive.start()

    async def _on_remote_signal(self, event: RemoteSignal) -> None:
        if event.kind == SignalKind.OFFER:
            if self.state != ConnectionState.CONNECTING:
                logger.debug(f"Ignoring offer from {event.peer_id} while {self.state.value}")
                return
            if not self.room_confirmed:
                logger.debug(f"Ignoring offer from {event.peer_id} sent to a previous room")
                return
            logger.info(f"Received offer from {event.peer_id}")
            primitive = await self._create_primitive(event.peer_id, initiator=False)
            await primitive.signal(SignalKind.OFFER, event.payload)
            return

        if self._primitive is None or event.peer_id != self.peer_id:
            logger.debug(f"Dropping {event.kind.value} from {event.peer_id}, no matching negotiation")
            return
        if event.kind == SignalKind.ANSWER and self.state != ConnectionState.CONNECTING:
            logger.debug(f"Ignoring answer from {event.peer_id} while {self.state.value}")
            return
        logger.debug(f"Received {event.kind.value} from {event.peer_id}")
        await self._primitive.signal(event.kind, event.payload)

    async def _on_peer_left(self, event: PeerLeft) -> None:
        if not self.room_confirmed or (self.peer_id is not None and event.peer_id != self.peer_id):
            logger.debug(f"Ignoring user-disconnected for {event.peer_id}, not our peer")
            return
        logger.info(f"User disconnected: {event.peer_id}")
        await self._discard_primitive()
        self._clear_media()
        self.disconnect_reason = PEER_LEFT
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _on_primitive_event(self, event: PrimitiveEvent) -> None:
        if event.generation != self._generation or self._primitive is None:
            logger.debug(f"Dropping {type(event.event).__name__} from a discarded negotiation")
            return

        inner = event.event
        if isinstance(inner, LocalSignal):
            if inner.kind != SignalKind.ICE_CANDIDATE and self.state != ConnectionState.CONNECTING:
                logger.debug(f"Not sending late {inner.kind.value} while {self.state.value}")
                return
            logger.debug(f"Sending {inner.kind.value} to {self.peer_id}")
            await self.signaling.send(signal_to_peer(inner.kind, inner.payload, self.peer_id))
        elif isinstance(inner, RemoteStream):
            logger.info(f"Received remote track #{len(self.tracks) + 1}")
            self.tracks.append(inner.stream)
            if self.stream is None:
                self.stream = inner.stream
            if self.state == ConnectionState.CONNECTED:
                # Listeners must see every track, not only the one that connected us
                await self._notify()
            else:
                await self._set_state(ConnectionState.CONNECTED)
        elif isinstance(inner, PeerConnected):
            await self._set_state(ConnectionState.CONNECTED)
        elif isinstance(inner, PeerFailed):
            logger.error(f"Peer connection error: {inner.message}")
            await self._fail(NegotiationFailure(inner.message))
        elif isinstance(inner, PeerClosed):
            logger.info("Peer connection closed")
            await self._discard_primitive()
            self._clear_media()
            self.disconnect_reason = PEER_CLOSED
            await self._set_state(ConnectionState.DISCONNECTED)

    async def _on_disconnect_requested(self, event: DisconnectRequested) -> None:
        await self._discard_primitive()
        if self.room_key is not None:
            try:
                await self.signaling.send(LeaveRoom())
            except Exception as e:
                logger.warning(f"Could not notify relay about leaving {self.room_key}: {e}")
        self._reset_session()
        await self._set_state(ConnectionState.IDLE)

    # Helpers

    async def _create_primitive(self, peer_id: str, initiator: bool) -> NegotiationPrimitive:
        # Never two negotiations at once
        await self._discard_primitive()
        self._generation += 1
        generation = self._generation
        self.peer_id = peer_id
        self.is_initiator = initiator
        logger.info(f"Initializing peer connection (initiator: {initiator})")

        def emit(peer_event: PeerEvent) -> None:
            self.events.put_nowait(PrimitiveEvent(generation, peer_event))

        self._primitive = self.peer_factory(initiator, emit)
        return self._primitive

    async def _discard_primitive(self) -> None:
        primitive, self._primitive = self._primitive, None
        # Bump the generation so callbacks still queued from this primitive are dropped
        self._generation += 1
        await wait_closed(primitive)

    async def _fail(self, error: SignalingError) -> None:
        await self._discard_primitive()
        self._clear_media()
        self.error = error
        await self._set_state(ConnectionState.ERROR)

    def _reset_session(self) -> None:
        self.room_key = None
        self.room_confirmed = False
        self.peer_id = None
        self.is_initiator = None
        self._clear_media()
        self.error = None
        self.disconnect_reason = None

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        async with self._state_changed:
            self._state_changed.notify_all()
        await self._notify()

    async def _notify(self) -> None:
        for listener in self._listeners:
            result = listener(self.state, self)
            if asyncio.iscoroutine(result):
                await result

    def _clear_media(self) -> None:
        self.stream = None
        self.tracks = []
