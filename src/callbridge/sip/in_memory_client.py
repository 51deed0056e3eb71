"""In-memory SIP client implementation for testing.

This module provides a mock SIP client that simulates a registrar and remote
parties without requiring a real SIP server.
"""

import asyncio
import logging
import uuid
from typing import Any, Coroutine, List, Optional

from callbridge.sip.sip_client import (
    ACTIVE_CALL_STATES,
    DTMF_TONES,
    CallAnsweredCallback,
    CallEndedCallback,
    CallState,
    IncomingCallCallback,
    SIPClient,
    SIPError,
)

logger = logging.getLogger(__name__)


class InMemorySIPClient(SIPClient):  # pylint: disable=too-many-instance-attributes
    """In-memory SIP client for testing without a real SIP server.

    This client simulates SIP behavior in memory, allowing testing of
    call flows without network dependencies. Remote answers are scheduled as
    tasks on the running loop, so they never fire inside ``make_call``.
    """

    def __init__(
        self,
        on_incoming_call: Optional[IncomingCallCallback] = None,
        on_call_answered: Optional[CallAnsweredCallback] = None,
        on_call_ended: Optional[CallEndedCallback] = None,
        *,
        registration_delay: float = 0.0,
        call_connect_delay: Optional[float] = 0.0,
        fail_registration: bool = False,
    ) -> None:
        """Initialize the in-memory SIP client.

        Args:
            on_incoming_call: Callback when incoming call arrives
            on_call_answered: Callback when call is answered
            on_call_ended: Callback when call ends
            registration_delay: Simulated delay for registration (seconds)
            call_connect_delay: Simulated delay before the remote party
                answers (seconds); None means never answer automatically
            fail_registration: Make the simulated registrar refuse registration
        """
        super().__init__(on_incoming_call, on_call_answered, on_call_ended)
        self._registration_delay = registration_delay
        self._call_connect_delay = call_connect_delay
        self._fail_registration = fail_registration
        self._account_uri: Optional[str] = None
        self._username: Optional[str] = None
        self._current_call_destination: Optional[str] = None
        self._current_call_caller: Optional[str] = None
        self._timer: Optional["asyncio.Task[None]"] = None
        self.muted = False
        self.transferred_to: Optional[str] = None
        self.dtmf_sent: List[str] = []

    async def register(self, account_uri: str, username: str, password: str) -> None:
        """Register with SIP server (simulated).

        Args:
            account_uri: SIP account URI
            username: SIP username
            password: SIP password (ignored in mock)

        Raises:
            SIPError: If configured to fail registration
        """
        if self._call_state != CallState.IDLE:
            logger.warning("Cannot register while in state: %s", self._call_state.value)
            return

        self._account_uri = account_uri
        self._username = username
        self._set_call_state(CallState.REGISTERING)
        logger.info("Registering: %s (user: %s)", account_uri, username)

        if self._registration_delay > 0:
            await asyncio.sleep(self._registration_delay)

        if self._fail_registration:
            self._set_call_state(CallState.IDLE)
            logger.warning("Registration refused: %s", account_uri)
            raise SIPError(f"Registration refused for {username}")

        if self._call_state == CallState.REGISTERING:
            self._set_call_state(CallState.REGISTERED)
            logger.info("Registration complete: %s", self._account_uri)

    async def unregister(self) -> None:
        """Unregister from SIP server (simulated)."""
        if self._call_state == CallState.IDLE:
            logger.debug("Already unregistered")
            return

        self._cancel_timer()
        logger.info("Unregistering: %s", self._account_uri)
        self._account_uri = None
        self._username = None
        self._clear_call()
        self._set_call_state(CallState.IDLE)

    async def make_call(self, destination: str) -> str:
        """Initiate an outgoing call (simulated).

        Args:
            destination: Destination SIP URI

        Returns:
            Simulated call ID

        Raises:
            SIPError: If not registered or already in a call
        """
        if self._call_state != CallState.REGISTERED:
            raise SIPError(f"Cannot make call in state: {self._call_state.value}")

        call_id = uuid.uuid4().hex
        self._call_id = call_id
        self._current_call_destination = destination
        self._set_call_state(CallState.CALLING)
        logger.info("Making call to: %s (call %s)", destination, call_id)

        if self._call_connect_delay is not None:
            self._schedule(self._complete_outgoing_call(call_id, self._call_connect_delay))
        return call_id

    async def _complete_outgoing_call(self, call_id: str, delay: float) -> None:
        """Complete outgoing call connection (simulate remote party answering)."""
        await asyncio.sleep(delay)
        if self._call_state != CallState.CALLING or self._call_id != call_id:
            return
        self._timer = None
        self._set_call_state(CallState.CONNECTED)
        logger.info("Call connected: %s", self._current_call_destination)
        await self._notify_answered(call_id)

    async def answer_call(self) -> None:
        """Answer an incoming call (simulated)."""
        if self._call_state != CallState.RINGING or self._call_id is None:
            raise SIPError(f"Cannot answer call in state: {self._call_state.value}")

        self._set_call_state(CallState.CONNECTED)
        logger.info("Call answered from: %s", self._current_call_caller)
        await self._notify_answered(self._call_id)

    async def reject_call(self) -> None:
        """Reject an incoming call without answering (simulated)."""
        if self._call_state != CallState.RINGING:
            logger.debug("No incoming call to reject")
            return

        logger.info("Rejecting incoming call from: %s", self._current_call_caller)
        await self._finish_call("rejected")

    async def hangup(self) -> None:
        """Hang up the current call (simulated)."""
        if self._call_state not in ACTIVE_CALL_STATES:
            logger.debug("No active call to hang up")
            return

        logger.info("Hanging up call")
        self._cancel_timer()
        await self._finish_call("local-hangup")

    async def hold(self) -> None:
        """Put the current call on hold (simulated)."""
        if self._call_state != CallState.CONNECTED:
            raise SIPError(f"Cannot hold call in state: {self._call_state.value}")
        self._set_call_state(CallState.ON_HOLD)
        logger.info("Call on hold")

    async def unhold(self) -> None:
        """Resume a held call (simulated)."""
        if self._call_state != CallState.ON_HOLD:
            raise SIPError(f"Cannot resume call in state: {self._call_state.value}")
        self._set_call_state(CallState.CONNECTED)
        logger.info("Call resumed")

    async def transfer(self, target: str) -> None:
        """Blind-transfer the current call (simulated).

        The local leg is released once the transfer is accepted.
        """
        if self._call_state not in (CallState.CONNECTED, CallState.ON_HOLD):
            raise SIPError(f"Cannot transfer call in state: {self._call_state.value}")
        logger.info("Transferring call to: %s", target)
        self.transferred_to = target
        self._clear_call()
        self._set_call_state(CallState.REGISTERED)

    async def set_muted(self, muted: bool) -> None:
        """Mute or unmute the local audio (simulated)."""
        if self._call_state not in (CallState.CONNECTED, CallState.ON_HOLD):
            raise SIPError(f"Cannot mute in state: {self._call_state.value}")
        self.muted = muted
        logger.info("Audio %s", "muted" if muted else "unmuted")

    async def send_dtmf(self, tone: str) -> None:
        """Record a DTMF tone (simulated)."""
        if self._call_state != CallState.CONNECTED:
            raise SIPError(f"Cannot send DTMF in state: {self._call_state.value}")
        if tone not in DTMF_TONES:
            raise SIPError(f"Invalid DTMF tone: {tone!r}")
        self.dtmf_sent.append(tone)

    def get_current_call_info(self) -> Optional[str]:
        """Get information about the current call.

        Returns:
            Destination (for outgoing) or caller ID (for incoming), or None if no call
        """
        if self._current_call_destination:
            return self._current_call_destination
        if self._current_call_caller:
            return self._current_call_caller
        return None

    async def simulate_incoming_call(self, caller_id: str) -> Optional[str]:
        """Simulate an incoming call (for testing).

        Args:
            caller_id: Caller ID to simulate

        Returns:
            The call ID, or None if the client cannot take a call right now
        """
        if self._call_state != CallState.REGISTERED:
            logger.warning(
                "Cannot receive call in state: %s (must be REGISTERED)",
                self._call_state.value,
            )
            return None

        call_id = uuid.uuid4().hex
        self._call_id = call_id
        self._current_call_caller = caller_id
        self._set_call_state(CallState.RINGING)
        logger.info("Incoming call from: %s", caller_id)
        await self._notify_incoming(caller_id, call_id)
        return call_id

    async def simulate_call_answered(self) -> None:
        """Simulate the remote party answering the call (for testing)."""
        if self._call_state != CallState.CALLING or self._call_id is None:
            logger.warning(
                "Cannot answer call in state: %s (must be CALLING)",
                self._call_state.value,
            )
            return

        self._cancel_timer()
        self._set_call_state(CallState.CONNECTED)
        logger.info("Call answered (simulated)")
        await self._notify_answered(self._call_id)

    async def simulate_call_ended(self, reason: str = "remote-hangup") -> None:
        """Simulate the call ending from remote side (for testing)."""
        if self._call_state not in ACTIVE_CALL_STATES:
            logger.warning("No active call to end in state: %s", self._call_state.value)
            return

        logger.info("Call ended (simulated)")
        self._cancel_timer()
        await self._finish_call(reason)

    async def _finish_call(self, reason: str) -> None:
        call_id = self._call_id
        self._clear_call()
        # Transition through DISCONNECTED to REGISTERED
        self._set_call_state(CallState.DISCONNECTED)
        self._set_call_state(CallState.REGISTERED)
        if call_id is not None:
            await self._notify_ended(call_id, reason)

    def _clear_call(self) -> None:
        self._call_id = None
        self._current_call_destination = None
        self._current_call_caller = None
        self.muted = False

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(coro)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
