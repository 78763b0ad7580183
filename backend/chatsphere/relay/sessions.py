"""Session registry: who is online.

Maps an authenticated connection id to its connection and identity. All
operations are synchronous and run on the event loop, so each call observes
a whole entry or none of it.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .connection import Connection
from .errors import AlreadyBound
from .schemas import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    """One online connection and the identity bound to it."""
    connection: Connection
    identity: Identity

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "userId": self.identity.user_id,
            "displayName": self.identity.display_name,
        }


class SessionRegistry:
    """Single source of truth for active, authenticated connections."""

    def __init__(self) -> None:
        # connection_id -> PresenceEntry
        self._entries: Dict[str, PresenceEntry] = {}

    def register(self, connection: Connection, identity: Identity) -> PresenceEntry:
        """Bind an identity to a previously unauthenticated connection.

        Raises:
            AlreadyBound: If the connection already has an identity.
        """
        if connection.identity is not None or connection.connection_id in self._entries:
            raise AlreadyBound(f"Connection {connection.connection_id} is already bound")
        connection.identity = identity
        entry = PresenceEntry(connection=connection, identity=identity)
        self._entries[connection.connection_id] = entry
        logger.info(
            "[Registry] %s bound to user %s (%d online)",
            connection.connection_id, identity.user_id, len(self._entries),
        )
        return entry

    def lookup(self, connection_id: str) -> Optional[Identity]:
        entry = self._entries.get(connection_id)
        return entry.identity if entry else None

    def connection(self, connection_id: str) -> Optional[Connection]:
        entry = self._entries.get(connection_id)
        return entry.connection if entry else None

    def unregister(self, connection_id: str) -> None:
        """Remove a connection. Removing an absent entry is a no-op."""
        if self._entries.pop(connection_id, None) is not None:
            logger.info("[Registry] %s unregistered (%d online)", connection_id, len(self._entries))

    def presence(self) -> List[PresenceEntry]:
        return list(self._entries.values())

    def connections_for_user(self, user_id: str) -> List[PresenceEntry]:
        return [e for e in self._entries.values() if e.identity.user_id == user_id]

    def __len__(self) -> int:
        return len(self._entries)
