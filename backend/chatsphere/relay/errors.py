"""Error taxonomy for the relay core.

Every error carries a stable ``code`` that is sent to clients verbatim in
``error`` events. Errors are always local to the connection that triggered
them.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors reported to a single connection."""

    code = "RelayError"

    def __init__(self, message: str = "", room: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.room = room


class AuthError(RelayError):
    """Missing, invalid, or expired credential. The connection never goes active."""

    code = "AuthError"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authentication failed: {reason}")
        self.reason = reason


class AlreadyBound(RelayError):
    """A connection was registered twice. Programming error, not a client error."""

    code = "AlreadyBound"


class NotAMember(RelayError):
    code = "NotAMember"


class EmptyBody(RelayError):
    code = "EmptyBody"


class BodyTooLong(RelayError):
    code = "BodyTooLong"


class MalformedEvent(RelayError):
    code = "MalformedEvent"


class PersistenceFailure(RelayError):
    """The store rejected a message. Nothing was broadcast."""

    code = "PersistenceFailure"


class TargetUnreachable(RelayError):
    """Signaling target is gone. Never surfaced to the sender."""

    code = "TargetUnreachable"


class Forbidden(RelayError):
    """The room is private to two other users."""

    code = "Forbidden"
