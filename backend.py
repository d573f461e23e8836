import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

import redis.asyncio as redis

from constants import MEMBERSHIP_TTL, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, RELAY_BACKEND, ROOM_CAPACITY
from logging_config import get_logger
from redis_keys import REDIS_CONN_ROOM_KEY, REDIS_ROOM_MEMBERS_KEY

logger = get_logger(__name__)


class JoinStatus(str, Enum):
    JOINED = "joined"
    ALREADY_JOINED = "already-joined"
    FULL = "full"


@dataclass
class JoinOutcome:
    status: JoinStatus
    room_key: str
    # Members that were in the room before this join
    peers: List[str] = field(default_factory=list)


@dataclass
class LeaveOutcome:
    room_key: str
    remaining: List[str]
    room_deleted: bool


class MembershipConflict(Exception):
    """Raised when a connection tries to join a room while still a member of another one."""


class RoomRegistry:
    """Room membership store. Every room holds at most ``capacity`` connections."""

    capacity: int = ROOM_CAPACITY

    async def join(self, room_key: str, connection_id: str) -> JoinOutcome:
        raise NotImplementedError

    async def leave(self, connection_id: str) -> Optional[LeaveOutcome]:
        raise NotImplementedError

    async def members(self, room_key: str) -> Set[str]:
        raise NotImplementedError

    async def room_of(self, connection_id: str) -> Optional[str]:
        raise NotImplementedError

    async def room_exists(self, room_key: str) -> bool:
        return len(await self.members(room_key)) > 0

    async def room_count(self) -> int:
        raise NotImplementedError

    async def close(self):
        pass


class KeyedLocks:
    """One asyncio.Lock per key, dropped as soon as nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


class MemoryRoomRegistry(RoomRegistry):
    """Process-local registry. Mutations on one room key are serialized by that key's lock."""

    def __init__(self, capacity: int = ROOM_CAPACITY):
        self.capacity = capacity
        self._rooms: Dict[str, Set[str]] = {}
        self._membership: Dict[str, str] = {}
        self._locks = KeyedLocks()
        logger.info(f"Initializing in-memory room registry (capacity {capacity})")

    async def join(self, room_key: str, connection_id: str) -> JoinOutcome:
        current = self._membership.get(connection_id)
        if current is not None and current != room_key:
            raise MembershipConflict(f"Connection {connection_id} is already in room {current}")

        async with self._locks.hold(room_key):
            members = self._rooms.get(room_key)
            if members is not None and connection_id in members:
                return JoinOutcome(JoinStatus.ALREADY_JOINED, room_key, sorted(members - {connection_id}))
            if members is not None and len(members) >= self.capacity:
                logger.debug(f"Room {room_key} is full ({len(members)}/{self.capacity})")
                return JoinOutcome(JoinStatus.FULL, room_key)
            if members is None:
                members = self._rooms[room_key] = set()
                logger.debug(f"Room {room_key} created")
            peers = sorted(members)
            members.add(connection_id)
            self._membership[connection_id] = room_key
            logger.debug(f"Connection {connection_id} added to room {room_key} ({len(members)}/{self.capacity})")
            return JoinOutcome(JoinStatus.JOINED, room_key, peers)

    async def leave(self, connection_id: str) -> Optional[LeaveOutcome]:
        room_key = self._membership.get(connection_id)
        if room_key is None:
            return None

        async with self._locks.hold(room_key):
            if self._membership.get(connection_id) != room_key:
                return None
            del self._membership[connection_id]
            members = self._rooms.get(room_key, set())
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room_key, None)
                logger.debug(f"Room {room_key} deleted (empty)")
                return LeaveOutcome(room_key, [], True)
            return LeaveOutcome(room_key, sorted(members), False)

    async def members(self, room_key: str) -> Set[str]:
        return set(self._rooms.get(room_key, ()))

    async def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    async def room_count(self) -> int:
        return len(self._rooms)


# KEYS[1] = members set, KEYS[2] = connection -> room key
# ARGV[1] = connection id, ARGV[2] = room key, ARGV[3] = capacity, ARGV[4] = ttl
# Returns {status, peer...} where status 1 = joined, 2 = already joined, 0 = full
JOIN_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local peers = {}
local already = false
for _, member in ipairs(members) do
    if member == ARGV[1] then
        already = true
    else
        table.insert(peers, member)
    end
end
if already then
    table.insert(peers, 1, 2)
    return peers
end
if #members >= tonumber(ARGV[3]) then
    return {0}
end
redis.call('SADD', KEYS[1], ARGV[1])
redis.call('SET', KEYS[2], ARGV[2])
local ttl = tonumber(ARGV[4])
if ttl > 0 then
    redis.call('EXPIRE', KEYS[1], ttl)
    redis.call('EXPIRE', KEYS[2], ttl)
end
table.insert(peers, 1, 1)
return peers
"""

# KEYS[1] = members set, KEYS[2] = connection -> room key
# ARGV[1] = connection id
# Returns remaining members, or {-1} when the connection was not a member
LEAVE_SCRIPT = """
redis.call('DEL', KEYS[2])
local removed = redis.call('SREM', KEYS[1], ARGV[1])
if removed == 0 then
    return {-1}
end
local remaining = redis.call('SMEMBERS', KEYS[1])
if #remaining == 0 then
    redis.call('DEL', KEYS[1])
end
return remaining
"""


class RedisRoomRegistry(RoomRegistry):
    """Registry shared by several relay instances. Join and leave are single Lua scripts."""

    def __init__(self, redis_client: redis.Redis, capacity: int = ROOM_CAPACITY, ttl: int = MEMBERSHIP_TTL):
        self.redis_client = redis_client
        self.capacity = capacity
        self.ttl = ttl
        self._join_script = redis_client.register_script(JOIN_SCRIPT)
        self._leave_script = redis_client.register_script(LEAVE_SCRIPT)
        logger.info(f"Initializing Redis room registry (capacity {capacity}, ttl {ttl})")

    async def join(self, room_key: str, connection_id: str) -> JoinOutcome:
        current = await self.room_of(connection_id)
        if current is not None and current != room_key:
            raise MembershipConflict(f"Connection {connection_id} is already in room {current}")

        result = await self._join_script(
            keys=[
                REDIS_ROOM_MEMBERS_KEY.format(room_key=room_key),
                REDIS_CONN_ROOM_KEY.format(connection_id=connection_id),
            ],
            args=[connection_id, room_key, self.capacity, self.ttl],
        )
        status, peers = int(result[0]), sorted(result[1:])
        if status == 0:
            logger.debug(f"Room {room_key} is full")
            return JoinOutcome(JoinStatus.FULL, room_key)
        if status == 2:
            return JoinOutcome(JoinStatus.ALREADY_JOINED, room_key, peers)
        logger.debug(f"Connection {connection_id} added to room {room_key} in Redis")
        return JoinOutcome(JoinStatus.JOINED, room_key, peers)

    async def leave(self, connection_id: str) -> Optional[LeaveOutcome]:
        room_key = await self.room_of(connection_id)
        if room_key is None:
            return None

        result = await self._leave_script(
            keys=[
                REDIS_ROOM_MEMBERS_KEY.format(room_key=room_key),
                REDIS_CONN_ROOM_KEY.format(connection_id=connection_id),
            ],
            args=[connection_id],
        )
        if result and result[0] == -1:
            return None
        remaining = sorted(result)
        if not remaining:
            logger.debug(f"Room {room_key} deleted from Redis (empty)")
        return LeaveOutcome(room_key, remaining, not remaining)

    async def members(self, room_key: str) -> Set[str]:
        return set(await self.redis_client.smembers(REDIS_ROOM_MEMBERS_KEY.format(room_key=room_key)))

    async def room_of(self, connection_id: str) -> Optional[str]:
        return await self.redis_client.get(REDIS_CONN_ROOM_KEY.format(connection_id=connection_id))

    async def room_count(self) -> int:
        count = 0
        async for _ in self.redis_client.scan_iter(match=REDIS_ROOM_MEMBERS_KEY.format(room_key="*")):
            count += 1
        return count

    async def close(self):
        await self.redis_client.aclose()


def create_redis_client() -> redis.Redis:
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)


def create_registry(backend: str = RELAY_BACKEND, redis_client: Optional[redis.Redis] = None) -> RoomRegistry:
    if backend == "memory":
        return MemoryRoomRegistry()
    if backend == "redis":
        client = redis_client or create_redis_client()
        logger.info(f"Using Redis room registry at {REDIS_HOST}:{REDIS_PORT}")
        return RedisRoomRegistry(client)
    raise ValueError(f"Unknown relay backend: {backend}")
