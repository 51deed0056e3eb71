"""Transport adapter contract shared by the peer and trunk variants.

The call controller drives a call only through this interface. Which variant
is in use is carried by ``Transport.kind``; callers never inspect the
concrete type.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from callbridge.errors import TransportError

if TYPE_CHECKING:
    from callbridge.call.media import MediaHandle
    from callbridge.call.session import AgentProfile, CallState

logger = logging.getLogger(__name__)


class TransportKind(Enum):
    """Transport variants."""

    PEER = "peer"  # Media negotiated peer to peer through the signaling relay
    TRUNK = "trunk"  # Call routed through a SIP registrar/trunk


class TransportObserver(ABC):
    """Receives asynchronous events from a transport.

    Passed to the transport constructor. Every method receives the transport
    that raised the event so an observer can ignore stale transports.
    """

    async def on_transport_connected(self, transport: "Transport") -> None:
        """Media is flowing with the remote party."""

    async def on_transport_ended(self, transport: "Transport", reason: str) -> None:
        """The remote party hung up or the transport failed."""

    async def on_incoming_call(
        self, transport: "Transport", remote_party: str, call_id: str
    ) -> None:
        """A remote party is calling this agent."""

    async def on_remote_notice(
        self, transport: "Transport", event: str, data: Dict[str, Any]
    ) -> None:
        """The remote party changed its own call state (mute, hold, video, transfer)."""


class Transport(ABC):
    """Call transport capability set."""

    kind: TransportKind

    def __init__(self, observer: TransportObserver) -> None:
        self._observer = observer

    @abstractmethod
    async def register(self, profile: "AgentProfile") -> None:
        """Make the agent reachable on this transport.

        Raises:
            BackendUnavailable: If the backend refuses or does not answer
        """

    @abstractmethod
    async def unregister(self) -> None:
        """Drop the registration made by ``register``."""

    @abstractmethod
    async def start(self, destination: str, media: "MediaHandle") -> str:
        """Place a call.

        Args:
            destination: Room id (peer) or extension/number (trunk)
            media: Local media to send

        Returns:
            Session id of the new call

        Raises:
            NotRegistered: If ``register`` has not completed
            InvalidDestination: If the destination is malformed
            TransportError: If the backend fails to place the call
        """

    @abstractmethod
    async def accept_incoming(self, media: "MediaHandle") -> None:
        """Answer the ringing incoming call."""

    @abstractmethod
    async def reject_incoming(self) -> None:
        """Decline the ringing incoming call."""

    @abstractmethod
    async def end(self) -> None:
        """Tear down the current call. Idempotent."""

    @abstractmethod
    async def set_muted(self, muted: bool) -> bool:
        """Mute or unmute local audio.

        Returns:
            True if the transport applied the change
        """

    async def set_video_enabled(self, enabled: bool) -> bool:
        """Enable or disable local video.

        Returns:
            True if the transport applied the change
        """
        return False

    @abstractmethod
    async def hold(self, held: bool) -> None:
        """Hold or resume the current call.

        Raises:
            NoActiveSession: If there is no call to hold
            TransportError: If the backend refuses
        """

    @abstractmethod
    async def transfer(self, target: str) -> None:
        """Hand the current call to ``target``.

        Raises:
            InvalidTarget: If the target is malformed
            NoActiveSession: If there is no call to transfer
        """

    async def send_dtmf(self, tone: str) -> None:
        """Send a DTMF tone on the current call."""
        raise TransportError(f"DTMF is not supported on {self.kind.value} calls")

    async def publish_state(
        self, state: "CallState", session_id: str, interaction_id: Optional[str] = None
    ) -> None:
        """Tell interested parties about a local call state change."""

    @abstractmethod
    def get_remote_stream_handle(self) -> Optional[Any]:
        """Remote media stream of the current call, if any."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether this transport has what it needs to place calls."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether this transport is registered and usable."""

    @abstractmethod
    def is_in_call(self) -> bool:
        """Whether a call is active on this transport."""
