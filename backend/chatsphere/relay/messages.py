"""Message relay: validate, persist, then broadcast.

A message is broadcast only after the store has accepted it. Persist and
broadcast happen while the room lock is held, so the broadcast order seen by
every member is exactly the persistence order.
"""
import asyncio
import logging
from typing import Optional

from chatsphere.storage import MessageStore, StorageError

from .connection import Connection
from .errors import BodyTooLong, EmptyBody, NotAMember, PersistenceFailure
from .rooms import RoomManager
from .schemas import ErrorEvent, HistoryBatchEvent, Message, MessageEvent

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50

DEFAULT_MAX_BODY_LENGTH = 4000


class MessageRelay:
    """Sends chat messages and replays room history."""

    def __init__(
        self,
        store: MessageStore,
        rooms: RoomManager,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_body_length: int = DEFAULT_MAX_BODY_LENGTH,
    ) -> None:
        self._store = store
        self._rooms = rooms
        self.history_limit = history_limit
        self.max_body_length = max_body_length

    async def send(self, connection: Connection, room_key: str, body: str) -> Message:
        """Persist a message and broadcast it to every member, sender included.

        Raises:
            NotAMember: The connection has not joined ``room_key``.
            EmptyBody: The body is blank after trimming.
            BodyTooLong: The body exceeds ``max_body_length``.
            PersistenceFailure: The store rejected the message; nothing was sent.
        """
        connection_id = connection.connection_id
        if not self._rooms.is_member(connection_id, room_key):
            raise NotAMember(f"Not a member of room {room_key}", room=room_key)
        if not body or not body.strip():
            raise EmptyBody("Message body is empty", room=room_key)
        if len(body) > self.max_body_length:
            raise BodyTooLong(
                f"Message body exceeds {self.max_body_length} characters", room=room_key
            )

        async with self._rooms.locked(room_key):
            # Membership may have changed while waiting for the lock.
            if not self._rooms.is_member(connection_id, room_key):
                raise NotAMember(f"Not a member of room {room_key}", room=room_key)
            try:
                message = await asyncio.to_thread(
                    self._store.append_message, room_key, connection.identity, body
                )
            except StorageError as exc:
                logger.error("[Relay] Persist failed for room %s: %s", room_key, exc)
                raise PersistenceFailure("Message could not be stored", room=room_key) from exc

            delivered = self._rooms.fan_out(room_key, MessageEvent.from_message(message))

        logger.debug(
            "[Relay] %s -> %s (%d recipients, id=%s)",
            connection_id, room_key, delivered, message.id,
        )
        return message

    async def replay_history(
        self, connection: Connection, room_key: str, limit: Optional[int] = None
    ) -> int:
        """Deliver the most recent persisted messages to one connection.

        Messages arrive as a single ``history-batch`` event, oldest first. A
        store failure is reported to this connection only.

        Returns:
            Number of messages replayed.
        """
        limit = self.history_limit if limit is None else min(limit, self.history_limit)
        try:
            messages = await asyncio.to_thread(self._store.recent_messages, room_key, limit)
        except StorageError as exc:
            logger.error("[Relay] History read failed for room %s: %s", room_key, exc)
            connection.deliver(ErrorEvent(
                code=PersistenceFailure.code,
                message="History could not be loaded",
                room=room_key,
            ))
            return 0

        connection.deliver(HistoryBatchEvent(
            room=room_key,
            memberCount=len(self._rooms.members_of(room_key)),
            messages=[MessageEvent.from_message(m) for m in messages],
        ))
        return len(messages)
