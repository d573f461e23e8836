from fastapi import APIRouter, HTTPException, Request

from constants import ROOM_KEY_LENGTH
from logging_config import get_logger
from schemas.rooms import CreateRoomResponse, RoomDetailsResponse
from schemas.signaling import generate_room_key

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])

MAX_KEY_ATTEMPTS = 10


def build_ws_url(request: Request) -> str:
    base_url = str(request.base_url).rstrip('/')
    # Replace http/https with ws/wss
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


@rooms_router.post("/", response_model=CreateRoomResponse)
async def create_room(request: Request):
    """Hand out a room key that is not in use right now.

    The room itself is created by the first ``join-room`` on the signaling socket.
    """
    relay = request.app.state.relay
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room key request from {client_host}")

    for _ in range(MAX_KEY_ATTEMPTS):
        room_key = generate_room_key(ROOM_KEY_LENGTH)
        if not await relay.registry.room_exists(room_key):
            logger.info(f"Issued room key {room_key}")
            return CreateRoomResponse(room_key=room_key, ws_url=build_ws_url(request))

    logger.error(f"Could not find a free room key after {MAX_KEY_ATTEMPTS} attempts")
    raise HTTPException(status_code=503, detail="Could not allocate a room key")


@rooms_router.get("/{room_key}", response_model=RoomDetailsResponse)
async def get_room_details(room_key: str, request: Request):
    """
    Get room occupancy.

    Returns:
    - roomKey: Normalized room key
    - capacity: Maximum members (always 2)
    - membersCount: Current number of members
    - isFull: Whether a join would be answered with room-full
    """
    relay = request.app.state.relay
    details = await relay.room_details(room_key)
    if details is None:
        logger.info(f"Room details failed: Room {room_key} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room details retrieved for {details['room_key']}: {details['members_count']}/{details['capacity']} members")
    return RoomDetailsResponse(**details)
