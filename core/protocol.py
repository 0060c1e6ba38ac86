"""
Real-time protocol envelopes.

Every frame exchanged on `/ws` is a JSON object `{"type": ..., "payload": ...}`.
The six envelope kinds are modelled as two closed, discriminated unions: what a
client may send (`ClientEnvelope`) and what the server pushes
(`ServerEnvelope`). Frames are decoded exactly once, at the transport boundary,
and an unknown `type` is a decode error rather than a silent drop.

The heartbeat is not an envelope. ASGI does not expose WebSocket control frames
to applications, so probes and acknowledgments travel as the reserved text
frames `{"type": "ping"}` and `{"type": "pong"}`, which `decode_client_frame`
recognises before envelope validation.
"""

import json
from enum import IntEnum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ProtocolError
from core.models import CamelModel, Message, MessagePayload


class CloseCode(IntEnum):
    """WebSocket close codes used by the server"""

    NORMAL = 1000  # intentional: logout or replaced by a newer session
    GOING_AWAY = 1001  # server shutdown
    POLICY_VIOLATION = 1008  # socket identity check failed
    HEARTBEAT_TIMEOUT = 4000  # evicted by the liveness monitor


HEARTBEAT_PROBE = json.dumps({"type": "ping"})
HEARTBEAT_ACK_TYPE = "pong"


class HeartbeatAck:
    """Marker returned by `decode_client_frame` for a heartbeat acknowledgment"""

    def __repr__(self) -> str:
        return "HeartbeatAck()"


HEARTBEAT_ACK = HeartbeatAck()


# Client -> server


class AuthPayload(CamelModel):
    user_id: int
    token: Optional[str] = None


class AuthEnvelope(BaseModel):
    type: Literal["auth"]
    payload: AuthPayload


class TypingRequestPayload(CamelModel):
    receiver_id: int


class TypingRequest(BaseModel):
    type: Literal["typing"]
    payload: TypingRequestPayload


ClientEnvelope = Annotated[
    Union[AuthEnvelope, TypingRequest], Field(discriminator="type")
]


# Server -> client


class TypingNoticePayload(CamelModel):
    user_id: int


class TypingNotice(BaseModel):
    type: Literal["typing"] = "typing"
    payload: TypingNoticePayload


class NewMessageEvent(BaseModel):
    type: Literal["newMessage"] = "newMessage"
    payload: MessagePayload

    @classmethod
    def for_message(cls, message: Message) -> "NewMessageEvent":
        return cls(payload=MessagePayload.model_validate(message))


class UserStatusPayload(CamelModel):
    user_id: int
    online: bool


class UserStatusEvent(BaseModel):
    type: Literal["userStatus"] = "userStatus"
    payload: UserStatusPayload


class ErrorPayload(CamelModel):
    message: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    payload: ErrorPayload


ServerEnvelope = Annotated[
    Union[TypingNotice, NewMessageEvent, UserStatusEvent, ErrorEvent],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientEnvelope)
_server_adapter = TypeAdapter(ServerEnvelope)


def typing_notice(user_id: int) -> TypingNotice:
    return TypingNotice(payload=TypingNoticePayload(user_id=user_id))


def user_status(user_id: int, online: bool) -> UserStatusEvent:
    return UserStatusEvent(payload=UserStatusPayload(user_id=user_id, online=online))


def error_event(message: str) -> ErrorEvent:
    return ErrorEvent(payload=ErrorPayload(message=message))


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "frame"
    return f"Invalid frame at '{location}': {first.get('msg', 'invalid value')}"


def decode_client_frame(
    raw: Union[str, bytes]
) -> Union[AuthEnvelope, TypingRequest, HeartbeatAck]:
    """
    Decode one inbound text frame.

    Raises:
        ProtocolError: the frame is not JSON, is not an object, or does not
            match any client envelope.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ProtocolError("Frame is not valid JSON")

    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")

    if data.get("type") == HEARTBEAT_ACK_TYPE:
        return HEARTBEAT_ACK

    try:
        return _client_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ProtocolError(_describe(exc))


def decode_server_frame(raw: Union[str, bytes]):
    """Decode a server envelope; used by clients and tests"""
    try:
        return _server_adapter.validate_json(raw)
    except PydanticValidationError as exc:
        raise ProtocolError(_describe(exc))


def encode(envelope: BaseModel) -> str:
    """Serialize an envelope with camelCase payload keys"""
    return envelope.model_dump_json(by_alias=True)
