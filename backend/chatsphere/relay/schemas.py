"""Pydantic schemas for the relay wire protocol.

Inbound events are a tagged union keyed on ``type``; a payload that does not
match exactly one variant is rejected at the boundary with ``MalformedEvent``.
Outbound events are serialised with ``model_dump(by_alias=True)``.

Client -> server:
    - join: {room} or {peer}
    - leave: {room}
    - send: {room, body}
    - signal-offer / signal-answer / signal-candidate: {to, payload}

Server -> client:
    - connected, message, history-batch, presence-joined, presence-left,
      signal-incoming, error
"""
import uuid
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .errors import MalformedEvent


# =============================================================================
# Core records
# =============================================================================


class Identity(BaseModel):
    """Authenticated user bound to a connection for its whole lifetime."""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)


class Message(BaseModel):
    """A persisted chat message.

    ``time`` is assigned by the store at append time (seconds since epoch)
    and never taken from the client.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room: str
    sender: str
    displayName: str
    body: str
    time: float


# =============================================================================
# Inbound events
# =============================================================================


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore")


class JoinEvent(_Inbound):
    """Join a group room by name, or the private room shared with ``peer``."""
    type: Literal["join"]
    room: Optional[str] = Field(default=None, min_length=1)
    peer: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _room_or_peer(self) -> "JoinEvent":
        if (self.room is None) == (self.peer is None):
            raise ValueError("join needs exactly one of 'room' or 'peer'")
        return self


class LeaveEvent(_Inbound):
    type: Literal["leave"]
    room: str = Field(..., min_length=1)


class SendEvent(_Inbound):
    type: Literal["send"]
    room: str = Field(..., min_length=1)
    body: str


class _SignalEvent(_Inbound):
    to: str = Field(..., min_length=1)
    payload: Any

    @model_validator(mode="after")
    def _payload_present(self) -> "_SignalEvent":
        if self.payload is None:
            raise ValueError("signal payload is required")
        return self

    @property
    def kind(self) -> str:
        return self.type.split("-", 1)[1]


class SignalOfferEvent(_SignalEvent):
    type: Literal["signal-offer"]


class SignalAnswerEvent(_SignalEvent):
    type: Literal["signal-answer"]


class SignalCandidateEvent(_SignalEvent):
    type: Literal["signal-candidate"]


InboundEvent = Annotated[
    Union[
        JoinEvent,
        LeaveEvent,
        SendEvent,
        SignalOfferEvent,
        SignalAnswerEvent,
        SignalCandidateEvent,
    ],
    Field(discriminator="type"),
]

SignalEvent = Union[SignalOfferEvent, SignalAnswerEvent, SignalCandidateEvent]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_inbound(data: Any) -> Any:
    """Validate a decoded JSON frame into one of the inbound event variants.

    Raises:
        MalformedEvent: If the frame is not an object or matches no variant.
    """
    if not isinstance(data, dict):
        raise MalformedEvent("Event must be a JSON object")
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid event")
        raise MalformedEvent(f"Invalid event: {location} {detail}".strip()) from exc


# =============================================================================
# Outbound events
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    connectionId: str
    userId: str
    displayName: str


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    id: str
    room: str
    sender: str
    displayName: str
    body: str
    time: float

    @classmethod
    def from_message(cls, message: Message) -> "MessageEvent":
        return cls(**message.model_dump())


class HistoryBatchEvent(BaseModel):
    type: Literal["history-batch"] = "history-batch"
    room: str
    memberCount: int
    messages: List[MessageEvent]


class PresenceEvent(BaseModel):
    type: Literal["presence-joined", "presence-left"]
    room: str
    connectionId: str
    userId: str
    displayName: str


class SignalIncomingEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["signal-incoming"] = "signal-incoming"
    kind: Literal["offer", "answer", "candidate"]
    from_: str = Field(..., alias="from")
    fromUserId: Optional[str] = None
    fromName: Optional[str] = None
    payload: Any


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
    room: Optional[str] = None
