"""DuckDB-backed message store (the relay's persistence gateway).

This module provides durable, append-only storage for chat messages. The
store is the only place message timestamps are assigned: clients never
supply them, and within a room every appended message gets a timestamp
strictly greater than the previous one, so time order equals insertion order.

Database Schema:
    messages table:
        - seq: Auto-incrementing insertion order
        - id: Message UUID
        - room_key: Room the message belongs to
        - sender_id: User ID of the sender
        - sender_name: Display name of the sender at send time
        - body: Message text
        - ts: Server-assigned Unix timestamp (seconds)

Thread Safety:
    A DuckDB connection must not be used from several threads at once. The
    relay calls the store through ``asyncio.to_thread``, so every statement
    runs under a single ``threading.Lock``.

Usage:
    store = MessageStore.get_instance()
    message = store.append_message("general", identity, "hello")
    recent = store.recent_messages("general", limit=50)
"""
import logging
import threading
import time
import uuid
from typing import Dict, List, Optional

import duckdb

from chatsphere.relay.schemas import Identity, Message

logger = logging.getLogger(__name__)

# Minimum spacing between two timestamps in the same room.
_TS_EPSILON = 1e-6

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    seq         BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
    id          VARCHAR NOT NULL,
    room_key    VARCHAR NOT NULL,
    sender_id   VARCHAR NOT NULL,
    sender_name VARCHAR NOT NULL,
    body        VARCHAR NOT NULL,
    ts          DOUBLE NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_key)"

_COLUMNS = "id, room_key, sender_id, sender_name, body, ts"


class StorageError(Exception):
    """Raised when the underlying database rejects a read or write."""


class MessageStore:
    """Singleton service for persisting chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _default_db_path: Database file used when no path is given.
    """

    _instance: Optional["MessageStore"] = None
    _default_db_path: str = "chatsphere.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: Path to the DuckDB file, or ":memory:".
        """
        self._db_path = db_path or self._default_db_path
        self._lock = threading.Lock()
        # room_key -> last assigned timestamp
        self._last_ts: Dict[str, float] = {}
        try:
            self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
            self._conn.execute(_CREATE_SEQUENCE)
            self._conn.execute(_CREATE_TABLE)
            self._conn.execute(_INDEX)
        except duckdb.Error as exc:
            raise StorageError(f"Cannot open message store at {self._db_path}: {exc}") from exc
        logger.info("[MessageStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton. Primarily used by tests."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def append_message(self, room_key: str, sender: Identity, body: str) -> Message:
        """Append a message to a room's log and return the stored record.

        The timestamp is taken here, under the store lock, and is strictly
        greater than any earlier timestamp in the same room.

        Raises:
            StorageError: If the insert fails. Nothing is stored in that case.
        """
        message_id = str(uuid.uuid4())
        with self._lock:
            conn = self._connection()
            try:
                ts = self._next_timestamp(conn, room_key)
                conn.execute(
                    f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    [message_id, room_key, sender.user_id, sender.display_name, body, ts],
                )
            except duckdb.Error as exc:
                raise StorageError(f"Failed to append message to {room_key}: {exc}") from exc
            self._last_ts[room_key] = ts

        return Message(
            id=message_id,
            room=room_key,
            sender=sender.user_id,
            displayName=sender.display_name,
            body=body,
            time=ts,
        )

    def _next_timestamp(self, conn: duckdb.DuckDBPyConnection, room_key: str) -> float:
        last = self._last_ts.get(room_key)
        if last is None:
            row = conn.execute(
                "SELECT max(ts) FROM messages WHERE room_key = ?", [room_key]
            ).fetchone()
            last = row[0] if row and row[0] is not None else 0.0
        return max(time.time(), last + _TS_EPSILON)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def recent_messages(self, room_key: str, limit: int) -> List[Message]:
        """Return up to ``limit`` most recent messages, oldest first."""
        return self.messages_before(room_key, None, limit)

    def messages_before(
        self,
        room_key: str,
        before: Optional[float],
        limit: int,
    ) -> List[Message]:
        """Return up to ``limit`` messages older than ``before``, oldest first.

        Args:
            room_key: Room to read.
            before: Timestamp cursor (exclusive). None means "latest".
            limit: Maximum number of messages.
        """
        if limit <= 0:
            return []
        query = f"SELECT {_COLUMNS} FROM messages WHERE room_key = ?"
        params: list = [room_key]
        if before is not None:
            query += " AND ts < ?"
            params.append(before)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            try:
                rows = self._connection().execute(query, params).fetchall()
            except duckdb.Error as exc:
                raise StorageError(f"Failed to read messages for {room_key}: {exc}") from exc

        return [self._row_to_message(row) for row in reversed(rows)]

    def count_messages(self, room_key: str) -> int:
        with self._lock:
            try:
                row = self._connection().execute(
                    "SELECT count(*) FROM messages WHERE room_key = ?", [room_key]
                ).fetchone()
            except duckdb.Error as exc:
                raise StorageError(f"Failed to count messages for {room_key}: {exc}") from exc
        return int(row[0]) if row else 0

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(
            id=row[0],
            room=row[1],
            sender=row[2],
            displayName=row[3],
            body=row[4],
            time=row[5],
        )

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise StorageError("Message store is closed")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
