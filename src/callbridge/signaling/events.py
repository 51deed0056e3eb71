"""Signaling message models and types.

Client messages arrive as ``{"type": ..., "data": {...}}``; server events are
sent as ``{"type": ..., "timestamp": ..., "data": {...}}``. Payload keys are
camelCase on the wire and snake_case in Python.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class EventType(str, Enum):
    """Signaling event types (client requests and server events)."""

    # client -> server
    REGISTER = "register"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    MUTE_AUDIO = "mute-audio"
    TOGGLE_VIDEO = "toggle-video"
    HOLD_CALL = "hold-call"
    TRANSFER_CALL = "transfer-call"
    CALL_STATE_UPDATE = "call-state-update"

    # server -> client
    REGISTERED = "registered"
    ROOM_USERS = "room-users"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    USER_AUDIO_MUTED = "user-audio-muted"
    USER_VIDEO_TOGGLED = "user-video-toggled"
    CALL_HELD = "call-held"
    CALL_TRANSFER_INITIATED = "call-transfer-initiated"
    SERVER_SHUTDOWN = "server-shutdown"
    ERROR = "error"


# =============================================================================
# Client messages
# =============================================================================


class ClientMessage(BaseModel):
    """Envelope of a message sent by a client."""

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class SignalingPayload(BaseModel):
    """Base for client payloads: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RegisterRequest(SignalingPayload):
    """``register`` payload."""

    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    extension: Optional[str] = None


class JoinRoomRequest(SignalingPayload):
    """``join-room`` payload."""

    room_id: str = Field(min_length=1)
    user_id: Optional[str] = None


class LeaveRoomRequest(SignalingPayload):
    """``leave-room`` payload."""

    room_id: str = Field(min_length=1)


class OfferRequest(SignalingPayload):
    """``offer`` payload (the offer itself is relayed verbatim)."""

    offer: Any
    room_id: str = Field(min_length=1)
    target_socket_id: Optional[str] = None


class AnswerRequest(SignalingPayload):
    """``answer`` payload."""

    answer: Any
    room_id: str = Field(min_length=1)
    target_socket_id: Optional[str] = None


class IceCandidateRequest(SignalingPayload):
    """``ice-candidate`` payload."""

    candidate: Any
    room_id: str = Field(min_length=1)
    target_socket_id: Optional[str] = None


class MuteAudioRequest(SignalingPayload):
    """``mute-audio`` payload."""

    room_id: str = Field(min_length=1)
    muted: bool


class ToggleVideoRequest(SignalingPayload):
    """``toggle-video`` payload."""

    room_id: str = Field(min_length=1)
    enabled: bool


class HoldCallRequest(SignalingPayload):
    """``hold-call`` payload."""

    room_id: str = Field(min_length=1)
    held: bool


class TransferCallRequest(SignalingPayload):
    """``transfer-call`` payload."""

    room_id: str = Field(min_length=1)
    target_agent: str = Field(min_length=1)
    call_id: Optional[str] = None


class CallStateUpdateRequest(SignalingPayload):
    """``call-state-update`` payload, passed through opaquely."""

    state: Any = None
    call_id: Optional[str] = None
    room_id: Optional[str] = None
    interaction_id: Optional[str] = None


REQUEST_MODELS: Dict[EventType, Type[SignalingPayload]] = {
    EventType.REGISTER: RegisterRequest,
    EventType.JOIN_ROOM: JoinRoomRequest,
    EventType.LEAVE_ROOM: LeaveRoomRequest,
    EventType.OFFER: OfferRequest,
    EventType.ANSWER: AnswerRequest,
    EventType.ICE_CANDIDATE: IceCandidateRequest,
    EventType.MUTE_AUDIO: MuteAudioRequest,
    EventType.TOGGLE_VIDEO: ToggleVideoRequest,
    EventType.HOLD_CALL: HoldCallRequest,
    EventType.TRANSFER_CALL: TransferCallRequest,
    EventType.CALL_STATE_UPDATE: CallStateUpdateRequest,
}


# =============================================================================
# Server events
# =============================================================================


class SignalingEvent(BaseModel):
    """Base server-to-client event."""

    type: EventType
    timestamp: str = Field(default_factory=_utc_timestamp)
    data: Dict[str, Any] = Field(default_factory=dict)


class RegisteredEvent(SignalingEvent):
    """Acknowledges ``register``."""

    type: EventType = EventType.REGISTERED

    def __init__(self, socket_id: str, **kwargs: Any):
        super().__init__(data={"socketId": socket_id, "success": True}, **kwargs)


class RoomUsersEvent(SignalingEvent):
    """Other members of the room, sent to a joining connection."""

    type: EventType = EventType.ROOM_USERS

    def __init__(self, users: List[Dict[str, Optional[str]]], **kwargs: Any):
        """Initialize room users event.

        Args:
            users: ``[{"socketId": ..., "userId": ...}]`` for each other member
            **kwargs: Additional fields
        """
        super().__init__(data={"users": users}, **kwargs)


class UserJoinedEvent(SignalingEvent):
    """A connection joined the room."""

    type: EventType = EventType.USER_JOINED

    def __init__(self, socket_id: str, user_id: Optional[str], **kwargs: Any):
        super().__init__(data={"socketId": socket_id, "userId": user_id}, **kwargs)


class UserLeftEvent(SignalingEvent):
    """A connection left the room (explicitly or by disconnecting)."""

    type: EventType = EventType.USER_LEFT

    def __init__(self, socket_id: str, **kwargs: Any):
        super().__init__(data={"socketId": socket_id}, **kwargs)


class RelayedEvent(SignalingEvent):
    """Any message forwarded from one client to others.

    The relay never interprets ``data`` beyond attaching the sender.
    """

    def __init__(self, event_type: EventType, data: Dict[str, Any], **kwargs: Any):
        super().__init__(type=event_type, data=data, **kwargs)


class ErrorEvent(SignalingEvent):
    """Tells a client its message was rejected."""

    type: EventType = EventType.ERROR

    def __init__(self, message: str, request_type: Optional[str] = None, **kwargs: Any):
        data: Dict[str, Any] = {"message": message}
        if request_type:
            data["requestType"] = request_type
        super().__init__(data=data, **kwargs)


class ServerShutdownEvent(SignalingEvent):
    """Sent to every connection before the server closes its sockets."""

    type: EventType = EventType.SERVER_SHUTDOWN

    def __init__(self, message: str = "Server is shutting down", **kwargs: Any):
        super().__init__(data={"message": message, "timestamp": _utc_timestamp()}, **kwargs)
