"""Client-side call control."""

from callbridge.call.controller import CallController, CallListener, create_controller
from callbridge.call.media import MediaDevice, MediaHandle
from callbridge.call.session import (
    AgentProfile,
    CallDirection,
    CallSession,
    CallState,
    RegistrationStatus,
)

__all__ = [
    "AgentProfile",
    "CallController",
    "CallDirection",
    "CallListener",
    "CallSession",
    "CallState",
    "MediaDevice",
    "MediaHandle",
    "RegistrationStatus",
    "create_controller",
]
