"""Point-to-point signaling relay (call offers, answers, ICE candidates).

Payloads are opaque: they are forwarded verbatim, never inspected, never
stored. Delivery is best effort; a missing target is dropped silently.
"""
import logging
from typing import Any

from .connection import Connection
from .errors import TargetUnreachable
from .schemas import SignalIncomingEvent
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

SIGNAL_KINDS = ("offer", "answer", "candidate")


class SignalingRelay:
    """Forwards signaling payloads between two live connections."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    def relay(self, sender: Connection, to_connection_id: str, kind: str, payload: Any) -> bool:
        """Forward ``payload`` to ``to_connection_id``.

        No room membership is required. The recipient sees the sender's
        connection id so it can address a reply.

        Returns:
            True if the payload was queued for the target, False if dropped.
        """
        if kind not in SIGNAL_KINDS:
            raise ValueError(f"Unknown signal kind: {kind}")
        try:
            target = self._resolve(to_connection_id)
        except TargetUnreachable:
            logger.debug(
                "[Signal] %s from %s dropped: target %s gone",
                kind, sender.connection_id, to_connection_id,
            )
            return False

        identity = sender.identity
        event = SignalIncomingEvent(
            kind=kind,
            from_=sender.connection_id,
            fromUserId=identity.user_id if identity else None,
            fromName=identity.display_name if identity else None,
            payload=payload,
        )
        delivered = target.deliver(event)
        logger.debug(
            "[Signal] %s %s -> %s (delivered=%s)",
            kind, sender.connection_id, to_connection_id, delivered,
        )
        return delivered

    def _resolve(self, connection_id: str) -> Connection:
        target = self._registry.connection(connection_id)
        if target is None or not target.is_active:
            raise TargetUnreachable(f"Connection {connection_id} is not online")
        return target
