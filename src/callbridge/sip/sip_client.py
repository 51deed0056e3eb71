"""Abstract SIP client interface for trunk calling.

This module provides an abstract base class for SIP clients, allowing
for different implementations (pyVoIP, mock/in-memory, etc.). All
operations are coroutines; callbacks are coroutine functions passed to the
constructor.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

IncomingCallCallback = Callable[[str, str], Awaitable[None]]
CallAnsweredCallback = Callable[[str], Awaitable[None]]
CallEndedCallback = Callable[[str, str], Awaitable[None]]

DTMF_TONES = frozenset("0123456789*#ABCD")


class CallState(Enum):
    """SIP call states."""

    IDLE = "idle"  # Not registered
    REGISTERING = "registering"  # Registering with SIP server
    REGISTERED = "registered"  # Registered and ready for calls
    CALLING = "calling"  # Outgoing call in progress (dialing)
    RINGING = "ringing"  # Incoming call ringing
    CONNECTED = "connected"  # Call is active (connected)
    ON_HOLD = "on_hold"  # Call is active but held
    DISCONNECTED = "disconnected"  # Call ended/failed


ACTIVE_CALL_STATES = (CallState.CALLING, CallState.RINGING, CallState.CONNECTED, CallState.ON_HOLD)


class SIPError(Exception):
    """Raised when the SIP backend refuses or fails an operation."""


class SIPClient(ABC):
    """Abstract base class for SIP client implementations.

    Provides a clean interface for SIP registration, making calls,
    and handling incoming calls.
    """

    def __init__(
        self,
        on_incoming_call: Optional[IncomingCallCallback] = None,
        on_call_answered: Optional[CallAnsweredCallback] = None,
        on_call_ended: Optional[CallEndedCallback] = None,
    ) -> None:
        """Initialize the SIP client.

        Args:
            on_incoming_call: Awaited when an incoming call arrives (caller ID, call ID)
            on_call_answered: Awaited when a call is answered (call ID)
            on_call_ended: Awaited when a call ends (call ID, reason)
        """
        self._on_incoming_call = on_incoming_call
        self._on_call_answered = on_call_answered
        self._on_call_ended = on_call_ended
        self._call_state = CallState.IDLE
        self._call_id: Optional[str] = None

    @abstractmethod
    async def register(self, account_uri: str, username: str, password: str) -> None:
        """Register with SIP server.

        Args:
            account_uri: SIP account URI (e.g., "sip:user@domain.com")
            username: SIP username
            password: SIP password

        Raises:
            SIPError: If the registrar refuses or cannot be reached
        """

    @abstractmethod
    async def unregister(self) -> None:
        """Unregister from SIP server."""

    @abstractmethod
    async def make_call(self, destination: str) -> str:
        """Initiate an outgoing call.

        Args:
            destination: Destination SIP URI

        Returns:
            Backend call ID
        """

    @abstractmethod
    async def answer_call(self) -> None:
        """Answer an incoming call."""

    @abstractmethod
    async def reject_call(self) -> None:
        """Reject an incoming call without answering."""

    @abstractmethod
    async def hangup(self) -> None:
        """Hang up the current call."""

    @abstractmethod
    async def hold(self) -> None:
        """Put the current call on hold."""

    @abstractmethod
    async def unhold(self) -> None:
        """Resume a held call."""

    @abstractmethod
    async def transfer(self, target: str) -> None:
        """Blind-transfer the current call to ``target`` (a SIP URI)."""

    @abstractmethod
    async def set_muted(self, muted: bool) -> None:
        """Stop or resume sending local audio."""

    @abstractmethod
    async def send_dtmf(self, tone: str) -> None:
        """Send one DTMF tone on the current call."""

    def get_call_state(self) -> CallState:
        """Get the current call state.

        Returns:
            Current call state
        """
        return self._call_state

    def is_registered(self) -> bool:
        """Whether the client holds a registration (in or out of a call)."""
        return self._call_state not in (CallState.IDLE, CallState.REGISTERING)

    def in_call(self) -> bool:
        """Whether a call is ringing, dialing or up."""
        return self._call_state in ACTIVE_CALL_STATES

    @property
    def current_call_id(self) -> Optional[str]:
        """Backend ID of the current call, if any."""
        return self._call_id

    def get_current_call(self) -> Optional[Any]:
        """Backend call object carrying the remote audio, if the client has one."""
        return None

    def _set_call_state(self, state: CallState) -> None:
        """Set the call state (for use by subclasses).

        Args:
            state: New call state
        """
        old_state = self._call_state
        self._call_state = state
        logger.debug("Call state changed: %s -> %s", old_state.value, state.value)

    async def _notify_incoming(self, caller_id: str, call_id: str) -> None:
        if self._on_incoming_call:
            await self._on_incoming_call(caller_id, call_id)

    async def _notify_answered(self, call_id: str) -> None:
        if self._on_call_answered:
            await self._on_call_answered(call_id)

    async def _notify_ended(self, call_id: str, reason: str) -> None:
        if self._on_call_ended:
            await self._on_call_ended(call_id, reason)
