"""Tests for the aiortc negotiation primitive.

Only the offer/answer exchange is exercised; connectivity checks are not
awaited since the test host may have no usable network interface.
"""

import asyncio

import pytest

from client.peer import AiortcPeer, LocalSignal, PeerFailed, aiortc_factory, wait_closed
from schemas.signaling import SignalKind


class Recorder:
    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def signals(self, kind: SignalKind) -> list:
        return [event.payload for event in self.events if isinstance(event, LocalSignal) and event.kind == kind]

    def failures(self) -> list:
        return [event for event in self.events if isinstance(event, PeerFailed)]


@pytest.mark.asyncio
async def test_offer_answer_exchange() -> None:
    """Test that the initiator offers on start and the responder answers."""
    offerer_events, answerer_events = Recorder(), Recorder()
    offerer = AiortcPeer(True, offerer_events, ice_servers=[])
    answerer = AiortcPeer(False, answerer_events, ice_servers=[])

    try:
        await offerer.start()
        offers = offerer_events.signals(SignalKind.OFFER)
        assert len(offers) == 1
        assert offers[0]["type"] == "offer"
        assert "m=application" in offers[0]["sdp"]

        await answerer.start()
        assert answerer_events.events == []

        await answerer.signal(SignalKind.OFFER, offers[0])
        answers = answerer_events.signals(SignalKind.ANSWER)
        assert len(answers) == 1
        assert answers[0]["type"] == "answer"

        await offerer.signal(SignalKind.ANSWER, answers[0])
        assert offerer.pc.remoteDescription is not None
        assert offerer_events.failures() == []
        assert answerer_events.failures() == []
    finally:
        await offerer.close()
        await answerer.close()


@pytest.mark.asyncio
async def test_unexpected_remote_description_reports_failure() -> None:
    """Test that an answer without a pending offer becomes a failure event, not an exception."""
    events = Recorder()
    peer = AiortcPeer(False, events, ice_servers=[])

    try:
        await peer.signal(SignalKind.ANSWER, {"type": "answer", "sdp": "v=0\r\n"})
        await peer.signal(SignalKind.OFFER, {"type": "offer"})
    finally:
        await peer.close()

    assert len(events.failures()) == 2


@pytest.mark.asyncio
async def test_end_of_candidates_is_accepted() -> None:
    events = Recorder()
    peer = AiortcPeer(False, events, ice_servers=[])

    try:
        await peer.signal(SignalKind.ICE_CANDIDATE, None)
        await peer.signal(SignalKind.ICE_CANDIDATE, {"candidate": ""})
    finally:
        await peer.close()

    assert events.failures() == []


@pytest.mark.asyncio
async def test_close_is_idempotent() -> None:
    events = Recorder()
    peer = aiortc_factory(ice_servers=[])(True, events)

    await peer.close()
    await peer.close()

    assert peer.pc.connectionState == "closed"
    assert events.events == []


class HangingPrimitive:
    async def close(self) -> None:
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_wait_closed_is_bounded() -> None:
    await wait_closed(HangingPrimitive(), timeout=0.05)
    await wait_closed(None)
