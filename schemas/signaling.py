"""Relay wire protocol.

Every WebSocket frame is a JSON object discriminated by its ``type`` field.
Client → relay and relay → client messages are separate unions because the
three negotiation kinds share a ``type`` but carry ``to`` in one direction and
``from`` in the other.
"""

import random
import string
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ROOM_KEY_ALPHABET = string.ascii_uppercase + string.digits


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


# Name of the field holding the opaque negotiation payload for each kind
PAYLOAD_FIELDS = {
    SignalKind.OFFER: "offer",
    SignalKind.ANSWER: "answer",
    SignalKind.ICE_CANDIDATE: "candidate",
}


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# Client → relay

class JoinRoom(WireModel):
    type: Literal["join-room"] = "join-room"
    room_key: str = Field(alias="roomKey")


class LeaveRoom(WireModel):
    type: Literal["leave-room"] = "leave-room"


class OfferToPeer(WireModel):
    type: Literal["offer"] = "offer"
    offer: Any
    to: str


class AnswerToPeer(WireModel):
    type: Literal["answer"] = "answer"
    answer: Any
    to: str


class IceCandidateToPeer(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: Any
    to: str


# Relay → client

class Welcome(WireModel):
    type: Literal["welcome"] = "welcome"
    connection_id: str = Field(alias="connectionId")


class JoinedRoom(WireModel):
    type: Literal["joined-room"] = "joined-room"
    room_key: str = Field(alias="roomKey")


class RoomFull(WireModel):
    type: Literal["room-full"] = "room-full"
    room_key: str = Field(default="", alias="roomKey")


class UserConnected(WireModel):
    type: Literal["user-connected"] = "user-connected"
    peer_id: str = Field(alias="peerId")


class UserDisconnected(WireModel):
    type: Literal["user-disconnected"] = "user-disconnected"
    peer_id: str = Field(alias="peerId")


class OfferFromPeer(WireModel):
    type: Literal["offer"] = "offer"
    offer: Any
    from_: str = Field(alias="from")


class AnswerFromPeer(WireModel):
    type: Literal["answer"] = "answer"
    answer: Any
    from_: str = Field(alias="from")


class IceCandidateFromPeer(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: Any
    from_: str = Field(alias="from")


class RelayError(WireModel):
    type: Literal["error"] = "error"
    code: str
    message: str


SignalToPeer = Union[OfferToPeer, AnswerToPeer, IceCandidateToPeer]
SignalFromPeer = Union[OfferFromPeer, AnswerFromPeer, IceCandidateFromPeer]

ClientMessage = Annotated[
    Union[JoinRoom, LeaveRoom, OfferToPeer, AnswerToPeer, IceCandidateToPeer],
    Field(discriminator="type"),
]
ServerMessage = Annotated[
    Union[
        Welcome,
        JoinedRoom,
        RoomFull,
        UserConnected,
        UserDisconnected,
        OfferFromPeer,
        AnswerFromPeer,
        IceCandidateFromPeer,
        RelayError,
    ],
    Field(discriminator="type"),
]

client_message_adapter = TypeAdapter(ClientMessage)
server_message_adapter = TypeAdapter(ServerMessage)

_TO_PEER = {
    SignalKind.OFFER: OfferToPeer,
    SignalKind.ANSWER: AnswerToPeer,
    SignalKind.ICE_CANDIDATE: IceCandidateToPeer,
}
_FROM_PEER = {
    SignalKind.OFFER: OfferFromPeer,
    SignalKind.ANSWER: AnswerFromPeer,
    SignalKind.ICE_CANDIDATE: IceCandidateFromPeer,
}


def parse_client_message(data: str):
    """Parse one client frame. Raises pydantic.ValidationError on bad input."""
    return client_message_adapter.validate_json(data)


def parse_server_message(data: str):
    """Parse one relay frame. Raises pydantic.ValidationError on bad input."""
    return server_message_adapter.validate_json(data)


def signal_kind(message: Union[SignalToPeer, SignalFromPeer]) -> SignalKind:
    return SignalKind(message.type)


def signal_payload(message: Union[SignalToPeer, SignalFromPeer]) -> Any:
    return getattr(message, PAYLOAD_FIELDS[signal_kind(message)])


def signal_to_peer(kind: SignalKind, payload: Any, to: str) -> SignalToPeer:
    return _TO_PEER[kind](**{PAYLOAD_FIELDS[kind]: payload, "to": to})


def signal_from_peer(kind: SignalKind, payload: Any, from_id: str) -> SignalFromPeer:
    return _FROM_PEER[kind](**{PAYLOAD_FIELDS[kind]: payload, "from": from_id})


def normalize_room_key(room_key: Optional[str]) -> str:
    """Room keys are case-insensitive tokens: strip surrounding whitespace and upper-case."""
    return (room_key or "").strip().upper()


def generate_room_key(length: int = 8) -> str:
    return "".join(random.choices(ROOM_KEY_ALPHABET, k=length))
