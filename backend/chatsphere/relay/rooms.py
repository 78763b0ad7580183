"""Room membership and fan-out.

Rooms are not stored entities. A room exists in this module only while it
has live members or someone holds its lock; the shard is created lazily on
first use and dropped as soon as it is empty and unused.

Each room shard has its own asyncio.Lock. The lock serialises membership
changes, history replay on join, and the persist-then-broadcast step of a
send, so every member observes the same broadcast order.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, FrozenSet, Optional, Set, Tuple

from pydantic import BaseModel

from .connection import Connection, ConnectionState
from .schemas import PresenceEvent

logger = logging.getLogger(__name__)

PRIVATE_ROOM_PREFIX = "dm_"

HistoryProvider = Callable[[Connection, str], Awaitable[int]]


def _escape_user_id(user_id: str) -> str:
    return user_id.replace("%", "%25").replace("_", "%5F")


def private_room_key(user_a: str, user_b: str) -> str:
    """Derive the private room key shared by two users.

    The key depends only on the pair, not on who asks first, and ``_``/``%``
    inside ids are escaped so two distinct pairs never map to the same key.

    Example:
        >>> private_room_key("bob", "alice")
        'dm_alice_bob'
    """
    if not user_a or not user_b:
        raise ValueError("private rooms need two non-empty user ids")
    first, second = sorted((user_a, user_b))
    return f"{PRIVATE_ROOM_PREFIX}{_escape_user_id(first)}_{_escape_user_id(second)}"


def _unescape_user_id(escaped: str) -> str:
    return escaped.replace("%5F", "_").replace("%25", "%")


def private_room_participants(room_key: str) -> Optional[Tuple[str, str]]:
    """Return the two user ids a private room key was derived from.

    Returns None if ``room_key`` is not a private room key.
    """
    if not room_key.startswith(PRIVATE_ROOM_PREFIX):
        return None
    parts = room_key[len(PRIVATE_ROOM_PREFIX):].split("_")
    if len(parts) != 2 or not all(parts):
        return None
    first, second = (_unescape_user_id(part) for part in parts)
    if private_room_key(first, second) != room_key:
        return None
    return first, second


def may_access_room(user_id: str, room_key: str) -> bool:
    """Whether a user may read or join a room.

    Group rooms are open to every authenticated user; a private room only to
    its two participants.
    """
    participants = private_room_participants(room_key)
    return participants is None or user_id in participants


@dataclass
class JoinResult:
    room: str
    member_count: int
    first_join: bool
    replayed: int = 0


class _RoomShard:
    __slots__ = ("members", "lock", "holders")

    def __init__(self) -> None:
        # connection_id -> Connection
        self.members: Dict[str, Connection] = {}
        self.lock = asyncio.Lock()
        self.holders = 0


class RoomManager:
    """Tracks live room membership and delivers room-wide events."""

    def __init__(self, history: Optional[HistoryProvider] = None) -> None:
        # room_key -> shard
        self._shards: Dict[str, _RoomShard] = {}
        # connection_id -> set of room keys
        self._rooms_by_connection: Dict[str, Set[str]] = {}
        self._history = history

    def set_history_provider(self, history: HistoryProvider) -> None:
        self._history = history

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def locked(self, room_key: str) -> AsyncIterator[_RoomShard]:
        """Hold the room's lock, creating the shard if needed."""
        shard = self._shards.get(room_key)
        if shard is None:
            shard = self._shards[room_key] = _RoomShard()
        shard.holders += 1
        try:
            async with shard.lock:
                yield shard
        finally:
            shard.holders -= 1
            if shard.holders == 0 and not shard.members and self._shards.get(room_key) is shard:
                del self._shards[room_key]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(self, connection: Connection, room_key: str) -> JoinResult:
        """Add a connection to a room and replay history to it.

        Joining a room twice does not notify the other members again.
        """
        connection_id = connection.connection_id
        async with self.locked(room_key) as shard:
            if connection.state is ConnectionState.DISCONNECTED:
                # Join raced with disconnect cleanup; never re-add a departed connection.
                return JoinResult(room=room_key, member_count=len(shard.members), first_join=False)
            first_join = connection_id not in shard.members
            shard.members[connection_id] = connection
            self._rooms_by_connection.setdefault(connection_id, set()).add(room_key)
            result = JoinResult(room=room_key, member_count=len(shard.members), first_join=first_join)

            if self._history is not None:
                result.replayed = await self._history(connection, room_key)

            if first_join and connection.identity is not None:
                self._deliver(shard, self._presence("presence-joined", room_key, connection),
                              exclude=connection_id)

        logger.info(
            "[Rooms] %s joined %s (members=%d, replayed=%d)",
            connection_id, room_key, result.member_count, result.replayed,
        )
        return result

    async def leave(self, connection_id: str, room_key: str, notify: bool = True) -> bool:
        """Remove a connection from a room.

        Returns:
            True if the connection was a member, False otherwise.
        """
        if room_key not in self._shards:
            return False
        async with self.locked(room_key) as shard:
            connection = shard.members.pop(connection_id, None)
            rooms = self._rooms_by_connection.get(connection_id)
            if rooms is not None:
                rooms.discard(room_key)
                if not rooms:
                    del self._rooms_by_connection[connection_id]
            if connection is None:
                return False
            if notify and connection.identity is not None:
                self._deliver(shard, self._presence("presence-left", room_key, connection))

        logger.info("[Rooms] %s left %s", connection_id, room_key)
        return True

    def is_member(self, connection_id: str, room_key: str) -> bool:
        shard = self._shards.get(room_key)
        return shard is not None and connection_id in shard.members

    def members_of(self, room_key: str) -> FrozenSet[str]:
        shard = self._shards.get(room_key)
        return frozenset(shard.members) if shard else frozenset()

    def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        return frozenset(self._rooms_by_connection.get(connection_id, ()))

    def room_count(self) -> int:
        return len(self._shards)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def fan_out(self, room_key: str, event: BaseModel, exclude: Optional[str] = None) -> int:
        """Deliver an event to every current member of a room.

        Callers that need ordering across events must hold ``locked(room_key)``.

        Returns:
            Number of connections the event was queued for.
        """
        shard = self._shards.get(room_key)
        if shard is None:
            return 0
        return self._deliver(shard, event, exclude=exclude)

    @staticmethod
    def _deliver(shard: _RoomShard, event: BaseModel, exclude: Optional[str] = None) -> int:
        delivered = 0
        for connection_id, connection in list(shard.members.items()):
            if connection_id == exclude:
                continue
            if connection.deliver(event):
                delivered += 1
        return delivered

    @staticmethod
    def _presence(kind: str, room_key: str, connection: Connection) -> PresenceEvent:
        return PresenceEvent(
            type=kind,
            room=room_key,
            connectionId=connection.connection_id,
            userId=connection.identity.user_id,
            displayName=connection.identity.display_name,
        )
