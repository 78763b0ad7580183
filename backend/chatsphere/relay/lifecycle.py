"""Connection lifecycle: authenticate, serve, clean up.

State machine per connection:

    connecting -> authenticating -> active -> disconnected
                        |                          ^
                        +------ auth failure ------+

A connection that fails authentication is closed before anything is
registered. Once active, the connection's events are read and handled one at
a time by the task that owns it. Whatever ends that loop (client close,
network error, idle timeout, unexpected exception) runs the same cleanup:
leave every room (notifying the remaining members), then drop the presence
entry.
"""
import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.requests import HTTPConnection

from chatsphere.auth import TokenVerifier

from .connection import DEFAULT_MAX_PENDING_FRAMES, Connection, ConnectionState
from .errors import AuthError, Forbidden, MalformedEvent, NotAMember, RelayError
from .messages import MessageRelay
from .rooms import RoomManager, may_access_room, private_room_key
from .schemas import (
    ConnectedEvent,
    ErrorEvent,
    Identity,
    JoinEvent,
    LeaveEvent,
    SendEvent,
    SignalEvent,
    parse_inbound,
)
from .sessions import SessionRegistry
from .signaling import SignalingRelay

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "

# Marker for frames that are not valid JSON.
_UNPARSEABLE = object()


class ConnectionLifecycleController:
    """Owns every Connection from handshake to cleanup."""

    def __init__(
        self,
        registry: SessionRegistry,
        rooms: RoomManager,
        messages: MessageRelay,
        signaling: SignalingRelay,
        verifier: TokenVerifier,
        token_query_param: str = "token",
        idle_timeout_seconds: int = 0,
        max_pending_frames: int = DEFAULT_MAX_PENDING_FRAMES,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._messages = messages
        self._signaling = signaling
        self._verifier = verifier
        self._token_query_param = token_query_param
        self._idle_timeout = idle_timeout_seconds or None
        self._max_pending_frames = max_pending_frames

    # ------------------------------------------------------------------
    # Transport entry point
    # ------------------------------------------------------------------

    async def run(self, websocket: WebSocket) -> None:
        """Drive one WebSocket from accept to cleanup."""
        connection = Connection(websocket, max_pending=self._max_pending_frames)
        await websocket.accept()

        connection.state = ConnectionState.AUTHENTICATING
        token = self.extract_token(websocket)
        try:
            identity = self._verifier.verify(token)
        except AuthError as exc:
            await self._reject(connection, exc)
            return

        self.activate(connection, identity)
        logger.info(
            f"[WS] Connection {connection.connection_id} active as "
            f"userId={identity.user_id}, displayName={identity.display_name}"
        )

        try:
            while True:
                data = await self._receive(websocket)
                await self.dispatch(connection, data)
        except WebSocketDisconnect as exc:
            logger.info(f"[WS] Connection {connection.connection_id} closed by client (code={exc.code})")
        except asyncio.TimeoutError:
            logger.info(f"[WS] Connection {connection.connection_id} idle for {self._idle_timeout}s, closing")
            await self._close_quietly(websocket, status.WS_1001_GOING_AWAY)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception(f"[WS] Connection {connection.connection_id} failed: {e}")
            await self._close_quietly(websocket, status.WS_1011_INTERNAL_ERROR)
        finally:
            await self.disconnect(connection)

    def extract_token(self, conn: HTTPConnection) -> Optional[str]:
        """Read the credential from a handshake or request (query param, then Authorization header)."""
        token = conn.query_params.get(self._token_query_param)
        if token:
            return token
        header = conn.headers.get("authorization", "")
        if header.lower().startswith(_BEARER_PREFIX):
            return header[len(_BEARER_PREFIX):].strip() or None
        return None

    async def _reject(self, connection: Connection, exc: AuthError) -> None:
        logger.warning(f"[WS] Rejecting connection {connection.connection_id}: {exc.reason}")
        connection.state = ConnectionState.DISCONNECTED
        try:
            await connection.websocket.send_json(
                ErrorEvent(code=exc.code, message=exc.message).model_dump()
            )
        except Exception as e:  # pylint: disable=broad-except
            logger.debug(f"Could not report auth failure: {e}")
        await self._close_quietly(connection.websocket, status.WS_1008_POLICY_VIOLATION)

    async def _receive(self, websocket: WebSocket) -> Any:
        if self._idle_timeout:
            message = await asyncio.wait_for(websocket.receive(), timeout=self._idle_timeout)
        else:
            message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

        text = message.get("text")
        if text is None and message.get("bytes") is not None:
            text = message["bytes"].decode("utf-8", errors="replace")
        try:
            return json.loads(text or "")
        except ValueError:
            return _UNPARSEABLE

    @staticmethod
    async def _close_quietly(websocket: WebSocket, code: int) -> None:
        try:
            await websocket.close(code=code)
        except Exception as e:  # pylint: disable=broad-except
            logger.debug(f"Close after failure ignored: {e}")

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def activate(self, connection: Connection, identity: Identity) -> None:
        """Bind the identity, register presence, and start delivering."""
        self._registry.register(connection, identity)
        connection.state = ConnectionState.ACTIVE
        connection.start_writer()
        connection.deliver(ConnectedEvent(
            connectionId=connection.connection_id,
            userId=identity.user_id,
            displayName=identity.display_name,
        ))

    async def disconnect(self, connection: Connection) -> None:
        """Remove every trace of a connection. Safe to call more than once."""
        if connection.state is ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED

        rooms = self._rooms.rooms_of(connection.connection_id)
        for room_key in rooms:
            await self._rooms.leave(connection.connection_id, room_key, notify=True)
        self._registry.unregister(connection.connection_id)
        await connection.stop_writer()

        logger.info(
            f"[WS] Connection {connection.connection_id} cleaned up "
            f"(left {len(rooms)} rooms, {len(self._registry)} online)"
        )

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, connection: Connection, data: Any) -> None:
        """Handle one inbound frame. Errors go back to this connection only."""
        try:
            if data is _UNPARSEABLE:
                raise MalformedEvent("Event is not valid JSON")
            event = parse_inbound(data)
            logger.debug("[WS] %s received: type=%s", connection.connection_id, event.type)

            if isinstance(event, JoinEvent):
                room_key = event.room or private_room_key(connection.identity.user_id, event.peer)
                if not may_access_room(connection.identity.user_id, room_key):
                    raise Forbidden(f"Room {room_key} is private", room=room_key)
                await self._rooms.join(connection, room_key)
            elif isinstance(event, LeaveEvent):
                if not await self._rooms.leave(connection.connection_id, event.room):
                    raise NotAMember(f"Not a member of room {event.room}", room=event.room)
            elif isinstance(event, SendEvent):
                await self._messages.send(connection, event.room, event.body)
            elif isinstance(event, SignalEvent):
                self._signaling.relay(connection, event.to, event.kind, event.payload)
        except RelayError as exc:
            logger.info(f"[WS] {exc.code} for {connection.connection_id}: {exc.message}")
            connection.deliver(ErrorEvent(code=exc.code, message=exc.message, room=exc.room))


