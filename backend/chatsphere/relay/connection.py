"""Per-connection state and outbound delivery.

Each Connection owns a bounded outbound queue drained by a single writer
task, so events reach the socket in the order they were delivered and a slow
client never holds up fan-out to the rest of a room. A client that falls
more than ``max_pending`` frames behind, or whose socket fails, stops
receiving and is closed; its read loop then runs the normal cleanup.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status
from pydantic import BaseModel

from .schemas import Identity

logger = logging.getLogger(__name__)

# Upper bound on how long disconnect waits for queued frames to flush.
_WRITER_FLUSH_TIMEOUT = 5.0

DEFAULT_MAX_PENDING_FRAMES = 256


class ConnectionState(str, Enum):
    """Lifecycle state of a connection.

    Attributes:
        CONNECTING: Transport accepted, nothing else known yet.
        AUTHENTICATING: Token extracted, waiting on the identity verifier.
        ACTIVE: Identity bound and registered; events are processed.
        DISCONNECTED: Terminal. Deliveries are dropped.
    """
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class Connection:
    """A live client channel identified by a server-assigned connection id."""

    def __init__(
        self,
        websocket: Any = None,
        connection_id: Optional[str] = None,
        max_pending: int = DEFAULT_MAX_PENDING_FRAMES,
    ) -> None:
        self.connection_id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity: Optional[Identity] = None
        self.state = ConnectionState.CONNECTING
        # Set once the socket can no longer take frames (overflow or send error).
        self.send_closed = False
        self._outbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue(maxsize=max_pending)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        user = self.identity.user_id if self.identity else None
        return f"<Connection {self.connection_id} user={user} state={self.state.value}>"

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE and not self.send_closed

    def deliver(self, event: BaseModel) -> bool:
        """Queue an event for this connection.

        Returns:
            True if queued, False if the connection is disconnected, its
            socket has failed, or it is too far behind (it is then closed).
        """
        if self.state is ConnectionState.DISCONNECTED or self.send_closed:
            return False
        try:
            self._outbox.put_nowait(event.model_dump(mode="json", by_alias=True))
        except asyncio.QueueFull:
            logger.warning(
                "Connection %s has %d undelivered frames, closing",
                self.connection_id, self._outbox.qsize(),
            )
            self._abort(status.WS_1013_TRY_AGAIN_LATER)
            return False
        return True

    def _abort(self, code: int) -> None:
        self.send_closed = True
        if self.websocket is not None and self._closer is None:
            self._closer = asyncio.create_task(self._close(code))

    async def _close(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:  # pylint: disable=broad-except
            logger.debug(f"Close of {self.connection_id} ignored: {e}")

    # ------------------------------------------------------------------
    # Writer task
    # ------------------------------------------------------------------

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is None:
                return
            try:
                await self.websocket.send_json(frame)
            except Exception as e:  # pylint: disable=broad-except
                logger.debug(f"Failed to send to connection {self.connection_id}: {e}")
                self.send_closed = True
                return

    async def stop_writer(self) -> None:
        """Flush queued frames (best effort) and stop the writer task."""
        if self._writer is None:
            return
        writer, self._writer = self._writer, None
        if self.send_closed or writer.done():
            writer.cancel()
        else:
            try:
                self._outbox.put_nowait(None)
            except asyncio.QueueFull:
                writer.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(writer, return_exceptions=True), timeout=_WRITER_FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Writer for %s did not flush in time", self.connection_id)
