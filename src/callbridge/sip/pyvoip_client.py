"""PyVoIP-based SIP client implementation for real trunk calling.

This module provides a SIP client implementation using the pyVoIP library.
pyVoIP is thread based: blocking calls run in worker threads and its
callbacks are marshalled back onto the event loop that registered.
"""

import asyncio
import logging
import uuid
from typing import Optional, Tuple

from pyVoIP.VoIP import CallState as PyVoIPCallState
from pyVoIP.VoIP import PhoneStatus as PyVoIPPhoneStatus
from pyVoIP.VoIP import VoIPCall, VoIPPhone

from callbridge.sip.sip_client import (
    CallAnsweredCallback,
    CallEndedCallback,
    CallState,
    IncomingCallCallback,
    SIPClient,
    SIPError,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class PyVoIPClient(SIPClient):
    """Real SIP client using pyVoIP library for trunk calling.

    This client wraps the pyVoIP.VoIPPhone class to implement the
    SIPClient interface. pyVoIP has no hold, transfer or outbound DTMF
    support, so those operations raise ``SIPError``.
    """

    def __init__(
        self,
        on_incoming_call: Optional[IncomingCallCallback] = None,
        on_call_answered: Optional[CallAnsweredCallback] = None,
        on_call_ended: Optional[CallEndedCallback] = None,
        *,
        registration_timeout: float = 5.0,
    ) -> None:
        """Initialize the PyVoIP SIP client.

        Args:
            on_incoming_call: Callback when incoming call arrives
            on_call_answered: Callback when call is answered
            on_call_ended: Callback when call ends
            registration_timeout: Seconds to wait for the registrar
        """
        super().__init__(on_incoming_call, on_call_answered, on_call_ended)
        self._registration_timeout = registration_timeout
        self._phone: Optional[VoIPPhone] = None
        self._current_call: Optional[VoIPCall] = None
        self._monitor: Optional["asyncio.Task[None]"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.muted = False

    async def register(self, account_uri: str, username: str, password: str) -> None:
        """Register with SIP server.

        Args:
            account_uri: SIP server URI (e.g., "sip.example.com" or "192.168.1.1:5060")
            username: SIP username
            password: SIP password

        Raises:
            SIPError: If the phone cannot start or registration fails or times out
        """
        if self._phone is not None:
            logger.warning("Already registered, ignoring register request")
            return

        server, port = self._parse_server_uri(account_uri)
        self._loop = asyncio.get_running_loop()
        self._set_call_state(CallState.REGISTERING)
        logger.info("Registering with SIP server: %s:%d (user: %s)", server, port, username)

        try:
            # sipPort=0 lets the OS assign a free local port
            self._phone = VoIPPhone(
                server=server,
                port=port,
                username=username,
                password=password,
                callCallback=self._on_incoming_call_internal,
                sipPort=0,
            )
            await asyncio.to_thread(self._phone.start)
        except Exception as e:
            logger.error("Registration failed: %s", e)
            self._phone = None
            self._set_call_state(CallState.IDLE)
            raise SIPError(f"Could not start SIP phone: {e}") from e

        await self._wait_for_registration()

    @staticmethod
    def _parse_server_uri(uri: str) -> Tuple[str, int]:
        """Parse SIP server URI to extract server and port.

        Args:
            uri: Server URI (e.g., "sip.example.com" or "192.168.1.1:5060")

        Returns:
            Tuple of (server, port)
        """
        if uri.startswith("sip:"):
            uri = uri[4:]
        if "@" in uri:
            uri = uri.split("@", 1)[1]

        if ":" in uri:
            server, port = uri.split(":", 1)
            return server, int(port)
        return uri, 5060

    async def _wait_for_registration(self) -> None:
        """Poll the phone status until registered, failed or timed out."""
        elapsed = 0.0
        while elapsed < self._registration_timeout:
            status = self._phone.get_status() if self._phone else PyVoIPPhoneStatus.FAILED
            if status == PyVoIPPhoneStatus.REGISTERED:
                self._set_call_state(CallState.REGISTERED)
                logger.info("Registration successful")
                return
            if status == PyVoIPPhoneStatus.FAILED:
                break
            await asyncio.sleep(POLL_INTERVAL)
            elapsed += POLL_INTERVAL

        logger.error("Registration failed or timed out")
        await self._stop_phone()
        raise SIPError("Registration failed or timed out")

    async def _stop_phone(self) -> None:
        phone, self._phone = self._phone, None
        self._set_call_state(CallState.IDLE)
        if phone is None:
            return
        try:
            await asyncio.to_thread(phone.stop)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Error stopping phone: %s", e)

    async def unregister(self) -> None:
        """Unregister from SIP server."""
        if self._phone is None:
            logger.debug("Already unregistered")
            return

        logger.info("Unregistering from SIP server")
        if self._current_call is not None:
            try:
                await asyncio.to_thread(self._current_call.hangup)
            except Exception as e:  # pylint: disable=broad-except
                logger.warning("Error hanging up call during unregister: %s", e)
            self._release_call()

        await self._stop_phone()

    async def make_call(self, destination: str) -> str:
        """Initiate an outgoing call.

        Args:
            destination: Destination number or SIP URI

        Returns:
            Backend call ID

        Raises:
            SIPError: If not registered, already in a call, or pyVoIP fails
        """
        if self._phone is None or self._call_state != CallState.REGISTERED:
            raise SIPError(f"Cannot make call in state: {self._call_state.value}")
        if self._current_call is not None:
            raise SIPError("Already in a call")

        self._set_call_state(CallState.CALLING)
        logger.info("Making call to: %s", destination)
        try:
            call = await asyncio.to_thread(self._phone.call, self._dial_string(destination))
        except Exception as e:
            logger.error("Error making call: %s", e)
            self._set_call_state(CallState.REGISTERED)
            raise SIPError(f"Call to {destination} failed: {e}") from e

        self._track_call(call)
        return self._call_id or ""

    @staticmethod
    def _dial_string(destination: str) -> str:
        """pyVoIP dials a user part, not a full URI."""
        if destination.startswith("sip:"):
            destination = destination[4:]
        return destination.split("@", 1)[0]

    def _track_call(self, call: VoIPCall) -> None:
        self._current_call = call
        self._call_id = str(getattr(call, "call_id", None) or uuid.uuid4().hex)
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_call(call))

    def _release_call(self) -> None:
        if self._monitor is not None and self._monitor is not asyncio.current_task():
            self._monitor.cancel()
        self._monitor = None
        self._current_call = None
        self._call_id = None
        self.muted = False

    async def _monitor_call(self, call: VoIPCall) -> None:
        """Poll the pyVoIP call state and report answer and hang-up."""
        while self._current_call is call:
            state = call.state
            if state == PyVoIPCallState.ANSWERED and self._call_state == CallState.CALLING:
                logger.info("Call answered")
                self._set_call_state(CallState.CONNECTED)
                await self._notify_answered(self._call_id or "")
            elif state == PyVoIPCallState.ENDED:
                logger.info("Call ended")
                call_id = self._call_id or ""
                self._release_call()
                self._set_call_state(CallState.DISCONNECTED)
                self._set_call_state(CallState.REGISTERED)
                await self._notify_ended(call_id, "remote-hangup")
                return
            await asyncio.sleep(POLL_INTERVAL)

    async def answer_call(self) -> None:
        """Answer an incoming call."""
        if self._current_call is None or self._call_state != CallState.RINGING:
            raise SIPError(f"Cannot answer call in state: {self._call_state.value}")

        logger.info("Answering call")
        try:
            await asyncio.to_thread(self._current_call.answer)
        except Exception as e:
            logger.error("Error answering call: %s", e)
            raise SIPError(f"Answer failed: {e}") from e
        self._set_call_state(CallState.CONNECTED)
        await self._notify_answered(self._call_id or "")

    async def reject_call(self) -> None:
        """Reject an incoming call without answering."""
        if self._current_call is None or self._call_state != CallState.RINGING:
            logger.debug("No incoming call to reject")
            return

        call = self._current_call
        call_id = self._call_id or ""
        self._release_call()
        try:
            await asyncio.to_thread(call.deny)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Error rejecting call: %s", e)
        self._set_call_state(CallState.REGISTERED)
        await self._notify_ended(call_id, "rejected")

    async def hangup(self) -> None:
        """Hang up the current call.

        pyVoIP can only hang up answered calls, so a call still ringing is
        denied instead.
        """
        if self._current_call is None:
            logger.debug("No active call to hang up")
            return

        call = self._current_call
        call_id = self._call_id or ""
        ringing = self._call_state == CallState.RINGING
        logger.info("%s call", "Denying ringing" if ringing else "Hanging up")
        self._release_call()
        try:
            await asyncio.to_thread(call.deny if ringing else call.hangup)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Error hanging up call: %s", e)

        self._set_call_state(CallState.DISCONNECTED)
        self._set_call_state(CallState.REGISTERED)
        await self._notify_ended(call_id, "local-hangup")

    async def hold(self) -> None:
        raise SIPError("Hold is not supported by the pyVoIP backend")

    async def unhold(self) -> None:
        raise SIPError("Hold is not supported by the pyVoIP backend")

    async def transfer(self, target: str) -> None:
        raise SIPError("Transfer is not supported by the pyVoIP backend")

    async def send_dtmf(self, tone: str) -> None:
        raise SIPError("Sending DTMF is not supported by the pyVoIP backend")

    async def set_muted(self, muted: bool) -> None:
        """Mute or unmute local audio.

        No local audio is written to pyVoIP calls, so only the flag changes.
        """
        if self._current_call is None:
            raise SIPError("No active call")
        self.muted = muted

    def get_current_call(self) -> Optional[VoIPCall]:
        """Get the current pyVoIP call object for audio handling."""
        return self._current_call

    def _on_incoming_call_internal(self, call: VoIPCall) -> None:
        """pyVoIP thread callback for incoming calls.

        Args:
            call: Incoming VoIPCall object
        """
        if self._loop is None:
            call.deny()
            return
        asyncio.run_coroutine_threadsafe(self._handle_incoming(call), self._loop)

    async def _handle_incoming(self, call: VoIPCall) -> None:
        if self._current_call is not None or self._call_state != CallState.REGISTERED:
            logger.warning("Already in a call, denying incoming call")
            await asyncio.to_thread(call.deny)
            return

        caller_id = self._extract_caller_id(call)
        logger.info("Incoming call from: %s", caller_id)
        self._set_call_state(CallState.RINGING)
        self._track_call(call)
        await self._notify_incoming(caller_id, self._call_id or "")

    @staticmethod
    def _extract_caller_id(call: VoIPCall) -> str:
        """Extract caller ID from VoIPCall.

        Args:
            call: VoIPCall object

        Returns:
            Caller ID string
        """
        try:
            if hasattr(call, "request") and hasattr(call.request, "headers"):
                from_header = call.request.headers.get("From", "Unknown")
                if isinstance(from_header, dict):
                    # pyVoIP parses From into {"raw", "tag", "address", "number", ...}
                    return str(from_header.get("address") or from_header.get("raw") or "Unknown")
                from_header = str(from_header)
                # e.g. "Alice <sip:alice@example.com>"
                if "<" in from_header:
                    start = from_header.index("<") + 1
                    end = from_header.index(">")
                    return from_header[start:end]
                return from_header
        except Exception as e:  # pylint: disable=broad-except
            logger.warning("Error extracting caller ID: %s", e)

        return "Unknown"
