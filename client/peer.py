"""Negotiation primitive: the black box that performs the actual peer connection handshake.

The orchestrator only sees the ``NegotiationPrimitive`` interface. A primitive
reports everything it does through the ``emit`` callback it was built with,
using the ``PeerEvent`` dataclasses below.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from logging_config import get_logger
from schemas.signaling import SignalKind

logger = get_logger(__name__)


@dataclass
class LocalSignal:
    """The primitive produced a negotiation payload that must reach the remote side."""

    kind: SignalKind
    payload: Any


@dataclass
class RemoteStream:
    stream: Any


@dataclass
class PeerConnected:
    pass


@dataclass
class PeerFailed:
    message: str


@dataclass
class PeerClosed:
    pass


PeerEvent = Union[LocalSignal, RemoteStream, PeerConnected, PeerFailed, PeerClosed]
Emit = Callable[[PeerEvent], None]


class NegotiationPrimitive:
    """Interface of one peer connection attempt."""

    async def start(self) -> None:
        """Begin negotiating. Initiators generate their offer here; responders do nothing."""
        raise NotImplementedError

    async def signal(self, kind: SignalKind, payload: Any) -> None:
        """Feed a payload received from the remote side."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release every transport resource. Must be idempotent."""
        raise NotImplementedError


# Builds a primitive: (initiator, emit) -> primitive
PeerFactory = Callable[[bool, Emit], NegotiationPrimitive]


class AiortcPeer(NegotiationPrimitive):
    """Negotiation primitive backed by an aiortc RTCPeerConnection.

    aiortc gathers candidates before the description is ready, so offers and
    answers already carry them and no local ``ice-candidate`` is ever emitted.
    Remote candidates (from browsers that trickle) are still accepted.
    """

    def __init__(
        self,
        initiator: bool,
        emit: Emit,
        tracks: Optional[list] = None,
        ice_servers: Optional[list[dict]] = None,
    ) -> None:
        self.initiator = initiator
        self.emit = emit
        self.tracks = tracks or []
        self._closed = False

        # None keeps aiortc's default STUN server, an empty list disables STUN
        configuration = None
        if ice_servers is not None:
            configuration = RTCConfiguration(
                iceServers=[
                    RTCIceServer(
                        urls=server["urls"],
                        username=server.get("username"),
                        credential=server.get("credential"),
                    )
                    for server in ice_servers
                ]
            )
        self.pc = RTCPeerConnection(configuration=configuration)
        self._wire_events()

        for track in self.tracks:
            self.pc.addTrack(track)

        if initiator:
            # A data channel guarantees the offer has at least one m-line even without media
            self._attach_channel(self.pc.createDataChannel("session"))

    def _wire_events(self) -> None:
        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"Connection state: {state}")
            if self._closed:
                return
            if state == "failed":
                self.emit(PeerFailed("Peer connection failed"))
            elif state == "closed":
                self.emit(PeerClosed())

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received remote {track.kind} track")
            self.emit(RemoteStream(track))

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            self._attach_channel(channel)

    def _attach_channel(self, channel) -> None:
        @channel.on("open")
        def on_open():
            logger.info("Peer connection established")
            self.emit(PeerConnected())

    async def start(self) -> None:
        if not self.initiator:
            return
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as error:
            logger.error(f"Failed to create offer: {error}", exc_info=True)
            self.emit(PeerFailed(str(error)))
            return
        self.emit(LocalSignal(SignalKind.OFFER, self._local_description()))

    async def signal(self, kind: SignalKind, payload: Any) -> None:
        try:
            if kind == SignalKind.ICE_CANDIDATE:
                await self._add_ice_candidate(payload)
                return

            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type=payload["type"]))
            if kind == SignalKind.OFFER:
                answer = await self.pc.createAnswer()
                await self.pc.setLocalDescription(answer)
                self.emit(LocalSignal(SignalKind.ANSWER, self._local_description()))
        except Exception as error:
            logger.error(f"Failed to apply remote {kind.value}: {error}", exc_info=True)
            self.emit(PeerFailed(str(error)))

    def _local_description(self) -> dict:
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def _add_ice_candidate(self, payload: Any) -> None:
        # Browsers send either the candidate init itself or {"candidate": {...}}
        if isinstance(payload, dict) and isinstance(payload.get("candidate"), dict):
            payload = payload["candidate"]

        candidate_str = payload.get("candidate") if payload else None
        if not candidate_str:
            # aiortc needs no end-of-candidates marker on the peer connection
            logger.debug("Received end-of-candidates")
            return

        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str.split("candidate:", 1)[1]
        candidate = candidate_from_sdp(candidate_str)
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)
        logger.debug("Added remote ICE candidate")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Closing peer connection")
        await self.pc.close()


def aiortc_factory(tracks: Optional[list] = None, ice_servers: Optional[list[dict]] = None) -> PeerFactory:
    def factory(initiator: bool, emit: Emit) -> NegotiationPrimitive:
        return AiortcPeer(initiator, emit, tracks=tracks, ice_servers=ice_servers)

    return factory


async def wait_closed(primitive: Optional[NegotiationPrimitive], timeout: float = 5.0) -> None:
    """Close a primitive, bounding how long a misbehaving transport may take."""
    if primitive is None:
        return
    try:
        await asyncio.wait_for(primitive.close(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Timed out closing negotiation primitive after {timeout:.1f}s")
