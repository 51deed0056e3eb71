"""Call session model: states, legal transitions and the agent profile."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from callbridge.errors import CallStateError
from callbridge.transport.base import TransportKind

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Call control states."""

    IDLE = "idle"  # No call
    CALLING = "calling"  # Outgoing call being set up
    INCOMING = "incoming"  # Incoming call waiting for accept/reject
    CONNECTED = "connected"  # Media flowing
    ON_HOLD = "on_hold"  # Connected but held
    ENDED = "ended"  # Terminal


_TRANSITIONS: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset({CallState.CALLING, CallState.INCOMING}),
    CallState.CALLING: frozenset({CallState.CONNECTED, CallState.ENDED}),
    CallState.INCOMING: frozenset({CallState.CONNECTED, CallState.ENDED}),
    CallState.CONNECTED: frozenset({CallState.ON_HOLD, CallState.ENDED}),
    CallState.ON_HOLD: frozenset({CallState.CONNECTED, CallState.ENDED}),
    CallState.ENDED: frozenset(),
}

LIVE_STATES = frozenset(
    {CallState.CALLING, CallState.INCOMING, CallState.CONNECTED, CallState.ON_HOLD}
)
IN_CALL_STATES = frozenset({CallState.CONNECTED, CallState.ON_HOLD})


def can_transition(current: CallState, target: CallState) -> bool:
    """Whether ``current -> target`` is a legal transition."""
    return target in _TRANSITIONS[current]


class CallDirection(Enum):
    """Who placed the call."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"


class RegistrationStatus(Enum):
    """Trunk registration status of a logged-in agent."""

    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
    UNKNOWN = "unknown"


@dataclass
class AgentProfile:
    """The logged-in agent."""

    agent_id: str
    extension: Optional[str] = None
    trunk_username: Optional[str] = None
    trunk_password: Optional[str] = field(default=None, repr=False)
    display_name: Optional[str] = None
    registration: RegistrationStatus = RegistrationStatus.UNKNOWN

    @property
    def has_trunk_credentials(self) -> bool:
        """Whether trunk credentials were supplied at login."""
        return bool(self.trunk_username and self.trunk_password)


@dataclass
class CallSession:  # pylint: disable=too-many-instance-attributes
    """One call as seen by the call controller.

    ``session_id`` is the room id in peer mode and the backend call id in
    trunk mode.
    """

    session_id: str
    transport: TransportKind
    direction: CallDirection
    remote_party: Optional[str] = None
    state: CallState = CallState.IDLE
    muted: bool = False
    video_enabled: bool = True
    held: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    connected_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    @property
    def is_live(self) -> bool:
        """Whether the session has not reached a terminal state."""
        return self.state in LIVE_STATES

    def transition(self, target: CallState, reason: Optional[str] = None) -> CallState:
        """Move to ``target``.

        Args:
            target: New state
            reason: End reason, recorded when ``target`` is ENDED

        Returns:
            The previous state

        Raises:
            CallStateError: If the transition is not legal
        """
        previous = self.state
        if not can_transition(previous, target):
            raise CallStateError(f"Cannot go from {previous.value} to {target.value}")

        self.state = target
        now = datetime.now(timezone.utc)
        if target == CallState.CONNECTED and self.connected_at is None:
            self.connected_at = now
        elif target == CallState.ENDED:
            self.ended_at = now
            self.end_reason = reason
        logger.debug("Session %s: %s -> %s", self.session_id, previous.value, target.value)
        return previous

    @property
    def duration_seconds(self) -> Optional[int]:
        """Connected duration, once the call has connected."""
        if self.connected_at is None:
            return None
        end = self.ended_at or datetime.now(timezone.utc)
        return int((end - self.connected_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "transport": self.transport.value,
            "direction": self.direction.value,
            "remoteParty": self.remote_party,
            "muted": self.muted,
            "videoEnabled": self.video_enabled,
            "held": self.held,
            "startedAt": self.started_at.isoformat(),
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "endReason": self.end_reason,
            "durationSeconds": self.duration_seconds,
        }
