"""Relay router providing the WebSocket endpoint and read-only HTTP views.

This module provides:
    - WebSocket /ws: authenticated real-time relay connection
    - GET /presence: online connections (optionally for one user)
    - GET /rooms/private-key: deterministic private room key for two users
    - GET /rooms/{room_key}/history: paginated persisted history

HTTP views take the same token as the socket (``token`` query parameter or
``Authorization: Bearer``). A private room's history is only readable by its
two participants.

WebSocket protocol (client -> server):
    - join: {room} or {peer}
    - leave: {room}
    - send: {room, body}
    - signal-offer / signal-answer / signal-candidate: {to, payload}

Server -> client:
    - connected, message, history-batch, presence-joined, presence-left,
      signal-incoming, error
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse

from chatsphere.storage import StorageError

from .errors import AuthError
from .hub import ChatHub
from .rooms import may_access_room, private_room_key
from .schemas import Identity

logger = logging.getLogger(__name__)

router = APIRouter()


def require_identity(request: Request) -> Identity:
    """Verify the caller's token, answering 401 if it is missing or bad."""
    hub = ChatHub.get_instance()
    token = hub.lifecycle.extract_token(request)
    try:
        return hub.verifier.verify(token)
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.websocket("/ws")
async def relay_websocket(websocket: WebSocket) -> None:
    """Serve one relay connection until it closes.

    The token is read from the ``token`` query parameter (configurable) or an
    ``Authorization: Bearer`` header.
    """
    hub = ChatHub.get_instance()
    logger.info(f"[WS] New connection from {websocket.client}")
    await hub.lifecycle.run(websocket)


@router.get("/presence", dependencies=[Depends(require_identity)])
async def get_presence(
    userId: Optional[str] = Query(None, description="Only list connections of this user"),
) -> JSONResponse:
    """List online connections.

    Clients use this to find the connection id to address a signal to.
    """
    registry = ChatHub.get_instance().registry
    entries = registry.connections_for_user(userId) if userId else registry.presence()
    return JSONResponse({
        "online": [entry.to_dict() for entry in entries],
        "count": len(entries),
    })


@router.get("/rooms/private-key")
async def get_private_room_key(
    a: str = Query(..., description="First user ID"),
    b: str = Query(..., description="Second user ID"),
) -> JSONResponse:
    """Return the private room key shared by two users (order independent)."""
    try:
        room_key = private_room_key(a, b)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"room": room_key})


@router.get("/rooms/{room_key}/history")
async def get_room_history(
    room_key: str,
    before: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    caller: Identity = Depends(require_identity),
) -> JSONResponse:
    """Get paginated persisted history for a room.

    Args:
        room_key: The room key.
        before: Unix timestamp cursor. Returns messages older than this.
                If not provided, returns the most recent messages.
        limit: Maximum number of messages (defaults to ``relay.history_limit``,
               capped at ``relay.max_history_page``).

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /rooms/general/history?limit=50
        GET /rooms/general/history?before=1707321600.123&limit=50
    """
    if not may_access_room(caller.user_id, room_key):
        logger.warning(f"{caller.user_id} denied history of private room {room_key}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Room {room_key} is private")

    hub = ChatHub.get_instance()
    relay_cfg = hub.config.relay
    limit = min(limit or relay_cfg.history_limit, relay_cfg.max_history_page)

    try:
        messages = await asyncio.to_thread(hub.store.messages_before, room_key, before, limit)

        # Check if there are more messages before the oldest returned
        has_more = False
        if messages:
            older = await asyncio.to_thread(hub.store.messages_before, room_key, messages[0].time, 1)
            has_more = len(older) > 0
    except StorageError as e:
        logger.error(f"History read failed for {room_key}: {e}")
        raise HTTPException(status_code=503, detail="Message history unavailable")

    return JSONResponse({
        "messages": [msg.model_dump() for msg in messages],
        "hasMore": has_more,
    })
