"""Unit tests for the relay wire protocol models."""

import json

import pytest
from pydantic import ValidationError

from schemas.signaling import (
    AnswerFromPeer,
    IceCandidateToPeer,
    JoinRoom,
    LeaveRoom,
    OfferFromPeer,
    OfferToPeer,
    RoomFull,
    SignalKind,
    UserConnected,
    generate_room_key,
    normalize_room_key,
    parse_client_message,
    parse_server_message,
    signal_from_peer,
    signal_kind,
    signal_payload,
    signal_to_peer,
)


def test_join_room_uses_camel_case_on_the_wire() -> None:
    """Test JoinRoom serialization."""
    assert json.loads(JoinRoom(room_key="ABC123").to_json()) == {"type": "join-room", "roomKey": "ABC123"}


def test_delivered_signal_carries_from_field() -> None:
    """Test that the reserved word ``from`` is used on the wire."""
    message = OfferFromPeer(offer={"type": "offer", "sdp": "v=0"}, from_="A")

    assert json.loads(message.to_json()) == {"type": "offer", "offer": {"type": "offer", "sdp": "v=0"}, "from": "A"}


def test_parse_client_messages_by_type() -> None:
    """Test the client → relay discriminated union."""
    assert isinstance(parse_client_message('{"type": "join-room", "roomKey": "x"}'), JoinRoom)
    assert isinstance(parse_client_message('{"type": "leave-room"}'), LeaveRoom)
    offer = parse_client_message('{"type": "offer", "offer": {"sdp": "v=0"}, "to": "B"}')
    assert isinstance(offer, OfferToPeer)
    assert offer.to == "B"
    candidate = parse_client_message('{"type": "ice-candidate", "candidate": null, "to": "B"}')
    assert isinstance(candidate, IceCandidateToPeer)


def test_parse_server_messages_by_type() -> None:
    """Test the relay → client discriminated union."""
    assert isinstance(parse_server_message('{"type": "user-connected", "peerId": "B"}'), UserConnected)
    assert isinstance(parse_server_message('{"type": "room-full"}'), RoomFull)
    answer = parse_server_message('{"type": "answer", "answer": {"sdp": "v=0"}, "from": "A"}')
    assert isinstance(answer, AnswerFromPeer)
    assert answer.from_ == "A"


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        '{"type": "dance"}',
        '{"type": "offer", "offer": {}}',
        '{"type": "join-room"}',
        "[]",
    ],
)
def test_invalid_client_frames_raise(frame: str) -> None:
    """Test that malformed frames are rejected at the protocol boundary."""
    with pytest.raises(ValidationError):
        parse_client_message(frame)


def test_signal_helpers_keep_payload_and_kind() -> None:
    """Test building deliveries from client signals."""
    outgoing = signal_to_peer(SignalKind.ICE_CANDIDATE, {"candidate": "candidate:1"}, "B")
    assert signal_kind(outgoing) == SignalKind.ICE_CANDIDATE
    assert signal_payload(outgoing) == {"candidate": "candidate:1"}

    delivered = signal_from_peer(signal_kind(outgoing), signal_payload(outgoing), "A")
    assert delivered.type == "ice-candidate"
    assert delivered.candidate == {"candidate": "candidate:1"}
    assert delivered.from_ == "A"


def test_normalize_room_key() -> None:
    """Test room key case normalization."""
    assert normalize_room_key("  abc123 ") == "ABC123"
    assert normalize_room_key("") == ""
    assert normalize_room_key(None) == ""


def test_generate_room_key() -> None:
    """Test that generated keys are already normalized."""
    key = generate_room_key(8)
    assert len(key) == 8
    assert normalize_room_key(key) == key
