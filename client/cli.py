"""Command-line participant.

Connects to the relay, creates or joins a room and negotiates a peer session
with aiortc. Received media is drained into a black hole; rendering is left to
real front ends.

    python -m client.cli --create
    python -m client.cli --room ABC123 --media sample.mp4
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer

from client.orchestrator import ConnectionState, SessionOrchestrator
from client.peer import aiortc_factory
from client.signaling import SignalingClient
from constants import ROOM_KEY_LENGTH, SIGNALING_SERVER_URL
from logging_config import get_logger, setup_logging
from schemas.signaling import generate_room_key

logger = get_logger(__name__)

DEFAULT_ICE_SERVERS = [{"urls": "stun:stun.l.google.com:19302"}]


class CLIParticipant:
    """Wires a SignalingClient, a SessionOrchestrator and aiortc together."""

    def __init__(self, server_url: str, room_key: str, media: Optional[str] = None, stun: bool = True) -> None:
        self.server_url = server_url
        self.room_key = room_key
        self.player = MediaPlayer(media) if media else None
        self.recorder = MediaBlackhole()
        self.signaling = SignalingClient(server_url)

        tracks = []
        if self.player is not None:
            tracks = [track for track in (self.player.audio, self.player.video) if track is not None]
        self.orchestrator = SessionOrchestrator(
            self.signaling,
            aiortc_factory(tracks=tracks, ice_servers=DEFAULT_ICE_SERVERS if stun else []),
        )
        self.orchestrator.add_listener(self.on_state_change)
        self.finished = asyncio.Event()

    async def on_state_change(self, state: ConnectionState, orchestrator: SessionOrchestrator) -> None:
        print(f"[{state.value}] room={orchestrator.room_key or '-'} peer={orchestrator.peer_id or '-'}")
        if state == ConnectionState.CONNECTED and orchestrator.tracks:
            # Called again for every new track; addTrack and start skip tracks already drained
            for track in orchestrator.tracks:
                self.recorder.addTrack(track)
            await self.recorder.start()
        elif state == ConnectionState.ERROR:
            print(f"Error: {orchestrator.error}")
            self.finished.set()
        elif state == ConnectionState.DISCONNECTED:
            print("Peer left the room")
            self.finished.set()

    async def pump(self) -> None:
        async for message in self.signaling.messages():
            self.orchestrator.feed(message)
        self.finished.set()

    async def run(self) -> None:
        async with self.signaling:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.finished.set)

            runner = asyncio.create_task(self.orchestrator.run())
            pump = asyncio.create_task(self.pump())
            print(f"Room key: {self.room_key}")
            self.orchestrator.join(self.room_key)
            try:
                await self.finished.wait()
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
                self.orchestrator.disconnect()
                self.orchestrator.stop()
                await runner
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
                await self.recorder.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Join a two-party peer session through the signaling relay")
    parser.add_argument("--server", default=SIGNALING_SERVER_URL, help=f"Relay WebSocket URL (default: {SIGNALING_SERVER_URL})")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--room", help="Room key to join")
    group.add_argument("--create", action="store_true", help="Create a new room with a random key")
    parser.add_argument("--media", default=None, help="Media file or device to send (default: data channel only)")
    parser.add_argument("--no-stun", action="store_true", help="Do not use a public STUN server")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    setup_logging(log_level="DEBUG" if args.verbose else "INFO")
    room_key = generate_room_key(ROOM_KEY_LENGTH) if args.create else args.room

    participant = CLIParticipant(args.server, room_key, media=args.media, stun=not args.no_stun)
    try:
        asyncio.run(participant.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
