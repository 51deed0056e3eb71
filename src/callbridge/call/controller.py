"""Call controller: one call-control surface over the peer and trunk transports.

This module provides the CallController class which drives a CallSession
through its lifecycle in response to user commands (start, accept, reject,
end, mute, video, hold, transfer, DTMF) and transport events (connected,
ended, incoming call, remote notices).

State is guarded by a single ``asyncio.Lock``. Transport operations are
awaited outside the lock, so a remote hang-up can be processed while a
command is in flight; a command's result is discarded if its session ended
in the meantime.
"""

import asyncio
import logging
from abc import ABC
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from callbridge.call.media import MediaDevice, MediaHandle
from callbridge.call.session import (
    IN_CALL_STATES,
    AgentProfile,
    CallDirection,
    CallSession,
    CallState,
    RegistrationStatus,
)
from callbridge.config.config_manager import ConfigManager
from callbridge.errors import (
    CallControlError,
    CallStateError,
    InvalidDestination,
    NoActiveSession,
    NotRegistered,
)
from callbridge.sip.sip_client import DTMF_TONES, SIPClient
from callbridge.transport.base import Transport, TransportObserver
from callbridge.transport.media_engine import InMemoryMediaEngine, MediaEngine
from callbridge.transport.peer import PeerTransport
from callbridge.transport.signaling_client import SignalingChannel
from callbridge.transport.trunk import TrunkConfig, TrunkTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[TransportObserver], Transport]

# (session, previous state, new state, transport to publish on)
_StateEvent = Tuple[CallSession, CallState, CallState, Optional[Transport]]


class CallListener(ABC):
    """Receives call events for the UI. All methods are optional."""

    async def on_state_changed(self, session: CallSession, previous: CallState) -> None:
        """``session.state`` changed from ``previous``."""

    async def on_session_updated(self, session: CallSession) -> None:
        """A call flag (muted, video) changed without a state change."""

    async def on_incoming_call(self, session: CallSession) -> None:
        """A call is waiting for ``accept`` or ``reject``."""

    async def on_remote_notice(
        self, session: CallSession, event: str, data: Dict[str, Any]
    ) -> None:
        """The remote party muted, held, toggled video or transferred."""


class CallController(TransportObserver):  # pylint: disable=too-many-instance-attributes
    """Drives one agent's calls over the peer transport or the trunk.

    The trunk is used when the agent supplied trunk credentials at login and
    the registrar accepted them; otherwise calls go over the peer transport.
    A failed trunk registration disables the trunk until the next login.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        peer_factory: TransportFactory,
        trunk_factory: Optional[TransportFactory] = None,
        *,
        media_device: Optional[MediaDevice] = None,
        listener: Optional[CallListener] = None,
        call_attempt_timeout: Optional[float] = 60.0,
    ) -> None:
        """Initialize the call controller.

        Args:
            peer_factory: Builds the peer transport with this controller as observer
            trunk_factory: Builds the trunk transport (None when no trunk exists)
            media_device: Local capture device (a default one if omitted)
            listener: Receives state changes and incoming calls
            call_attempt_timeout: Seconds an outgoing call may stay unanswered;
                None disables the timeout
        """
        self._peer = peer_factory(self)
        self._trunk = trunk_factory(self) if trunk_factory is not None else None
        self._media = media_device if media_device is not None else MediaDevice()
        self._listener = listener
        self._call_attempt_timeout = call_attempt_timeout

        self._lock = asyncio.Lock()
        self._profile: Optional[AgentProfile] = None
        self._trunk_disabled = False
        self._session: Optional[CallSession] = None
        self._last_session: Optional[CallSession] = None
        self._transport: Optional[Transport] = None
        self._media_handle: Optional[MediaHandle] = None
        self._start_task: Optional["asyncio.Task[str]"] = None
        self._attempt_timer: Optional["asyncio.Task[None]"] = None
        self._pending_op: Optional[str] = None
        self._events: List[_StateEvent] = []

        logger.debug("CallController initialized")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def state(self) -> CallState:
        """State of the live session, IDLE when there is none."""
        return self._session.state if self._session is not None else CallState.IDLE

    @property
    def session(self) -> Optional[CallSession]:
        """The live session, if any."""
        return self._session

    @property
    def last_session(self) -> Optional[CallSession]:
        """The most recently ended session."""
        return self._last_session

    @property
    def profile(self) -> Optional[AgentProfile]:
        return self._profile

    @property
    def peer(self) -> Transport:
        return self._peer

    @property
    def trunk(self) -> Optional[Transport]:
        return self._trunk

    @property
    def active_transport(self) -> Optional[Transport]:
        """Transport carrying the live session."""
        return self._transport

    @property
    def trunk_available(self) -> bool:
        """Whether the next call would go over the trunk."""
        return (
            self._trunk is not None
            and not self._trunk_disabled
            and self._profile is not None
            and self._profile.has_trunk_credentials
            and self._profile.registration == RegistrationStatus.REGISTERED
            and self._trunk.is_connected()
        )

    def get_remote_stream_handle(self) -> Optional[Any]:
        """Remote media of the live session."""
        if self._transport is None:
            return None
        return self._transport.get_remote_stream_handle()

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    async def login(self, profile: AgentProfile) -> None:
        """Register the agent with the relay and, if possible, the trunk.

        A trunk registration failure is logged and disables the trunk for
        this login; it never fails the login itself.

        Raises:
            CallStateError: If an agent is already logged in
            BackendUnavailable: If the signaling relay cannot be reached
        """
        async with self._lock:
            if self._profile is not None:
                raise CallStateError(f"Agent {self._profile.agent_id} is already logged in")
            self._profile = profile
            self._trunk_disabled = False
            profile.registration = RegistrationStatus.UNKNOWN

        try:
            await self._peer.register(profile)
        except CallControlError:
            async with self._lock:
                self._profile = None
            raise
        logger.info("Agent %s logged in", profile.agent_id)

        if not profile.has_trunk_credentials:
            profile.registration = RegistrationStatus.NOT_REGISTERED
            return
        if self._trunk is None or not self._trunk.is_configured():
            logger.info("Trunk credentials supplied but no trunk configured, using peer calls")
            profile.registration = RegistrationStatus.NOT_REGISTERED
            return

        try:
            await self._trunk.register(profile)
        except CallControlError as e:
            logger.warning(
                "Trunk registration failed for %s, falling back to peer calls: %s",
                profile.agent_id,
                e.reason,
            )
            profile.registration = RegistrationStatus.NOT_REGISTERED
            self._trunk_disabled = True
            return
        profile.registration = RegistrationStatus.REGISTERED
        logger.info("Agent %s registered with trunk", profile.agent_id)

    async def logout(self) -> None:
        """End any call and drop all registrations."""
        if self._session is not None:
            await self.end()

        async with self._lock:
            profile, self._profile = self._profile, None
            self._trunk_disabled = False
        if profile is None:
            return

        transports = [self._peer] + ([self._trunk] if self._trunk is not None else [])
        for transport in transports:
            try:
                await transport.unregister()
            except CallControlError as e:
                logger.warning(
                    "Error unregistering %s transport: %s", transport.kind.value, e.reason
                )
        profile.registration = RegistrationStatus.NOT_REGISTERED
        logger.info("Agent %s logged out", profile.agent_id)

    def _select_transport(self) -> Transport:
        if self.trunk_available and self._trunk is not None:
            return self._trunk
        return self._peer

    # -------------------------------------------------------------------------
    # Call lifecycle
    # -------------------------------------------------------------------------

    async def start(self, destination: str) -> CallSession:
        """Place a call.

        Args:
            destination: Room id (peer) or extension/number (trunk)

        Returns:
            The new session (CALLING, or already CONNECTED)

        Raises:
            NotRegistered: If no agent is logged in
            CallStateError: If a call is already live, or it was ended before
                it could be placed
            MediaAcquisitionFailed: If the local device is unavailable
            CallControlError: Any transport failure; state is back to IDLE
        """
        async with self._lock:
            if self._profile is None:
                raise NotRegistered("Log in before placing calls")
            if self._session is not None:
                raise CallStateError("A call is already in progress")
            if not destination or not destination.strip():
                raise InvalidDestination("Destination must not be empty")

            transport = self._select_transport()
            handle = self._media.acquire(owner=destination)
            session = CallSession(
                session_id=destination,
                transport=transport.kind,
                direction=CallDirection.OUTBOUND,
                remote_party=destination,
            )
            self._attach(session, transport, handle)
            self._transition(session, CallState.CALLING)
            task = asyncio.get_running_loop().create_task(transport.start(destination, handle))
            self._start_task = task
            logger.info("Calling %s over %s transport", destination, transport.kind.value)

        await self._flush_events()
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await self._abandon(session, "cancelled")
            raise

        async with self._lock:
            if self._start_task is task:
                self._start_task = None
            if task.cancelled():
                raise CallStateError("Call was ended before it was established")
            error = task.exception()
            if error is not None:
                if self._session is session:
                    self._rollback(session, transport)
            else:
                if self._session is session:
                    session.session_id = task.result()
                    if session.state == CallState.CALLING:
                        self._arm_attempt_timer(session)
        await self._flush_events()

        if error is not None:
            logger.warning("Call to %s failed: %s", destination, error)
            raise error
        return session

    async def accept(self) -> CallSession:
        """Answer the ringing incoming call.

        Raises:
            NoActiveSession: If there is no call
            CallStateError: If the call is not ringing
            MediaAcquisitionFailed: If the local device is unavailable
        """
        async with self._lock:
            session = self._require_session()
            if session.state != CallState.INCOMING:
                raise CallStateError(f"Cannot accept a call that is {session.state.value}")
            self._begin_op("accept")
            transport = self._require_transport()
            try:
                handle = self._media.acquire(owner=session.session_id)
            except CallControlError:
                self._pending_op = None
                raise
            self._media_handle = handle

        try:
            await transport.accept_incoming(handle)
        except CallControlError:
            async with self._lock:
                if self._session is session:
                    self._pending_op = None
                    self._media.release(handle)
                    self._media_handle = None
            raise

        async with self._lock:
            if self._session is session:
                self._pending_op = None
                if session.state == CallState.INCOMING:
                    self._transition(session, CallState.CONNECTED)
        await self._flush_events()
        return session

    async def reject(self) -> None:
        """Decline the ringing incoming call.

        Raises:
            NoActiveSession: If there is no call
            CallStateError: If the call is not ringing
        """
        async with self._lock:
            session = self._require_session()
            if session.state != CallState.INCOMING:
                raise CallStateError(f"Cannot reject a call that is {session.state.value}")
            transport = self._require_transport()
            self._finish(session, "rejected")

        try:
            await transport.reject_incoming()
        except CallControlError as e:
            logger.warning("Reject failed, call dropped locally: %s", e.reason)
        await self._flush_events()

    async def end(self) -> None:
        """Hang up. Local state is ENDED even if the remote teardown fails.

        A start still in flight is cancelled.

        Raises:
            NoActiveSession: If there is no call
        """
        async with self._lock:
            session = self._require_session()
            transport = self._transport
            task, self._start_task = self._start_task, None
            self._finish(session, "local-hangup")

        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        elif transport is not None:
            await self._end_transport(transport)
        await self._flush_events()

    # -------------------------------------------------------------------------
    # In-call controls
    # -------------------------------------------------------------------------

    async def toggle_mute(self) -> bool:
        """Mute or unmute local audio.

        Returns:
            The muted flag after the operation
        """
        session, transport = await self._begin_control("mute")
        desired = not session.muted
        try:
            applied = await transport.set_muted(desired)
        finally:
            await self._end_control(session)

        async with self._lock:
            if self._session is session and applied:
                session.muted = desired
        await self._notify_updated(session)
        return session.muted

    async def toggle_video(self) -> bool:
        """Enable or disable local video.

        Returns:
            The video-enabled flag after the operation (unchanged if the call
            has no video)
        """
        session, transport = await self._begin_control("video")
        desired = not session.video_enabled
        try:
            applied = await transport.set_video_enabled(desired)
        finally:
            await self._end_control(session)

        async with self._lock:
            if self._session is session and applied:
                session.video_enabled = desired
        if not applied:
            logger.info("Video not available on this call")
        await self._notify_updated(session)
        return session.video_enabled

    async def toggle_hold(self) -> bool:
        """Hold or resume the call.

        The hold flag and state change only once the transport confirms.

        Returns:
            The held flag after the operation
        """
        session, transport = await self._begin_control("hold")
        desired = not session.held
        try:
            await transport.hold(desired)
        finally:
            await self._end_control(session)

        async with self._lock:
            if self._session is session and session.is_live:
                session.held = desired
                self._transition(session, CallState.ON_HOLD if desired else CallState.CONNECTED)
        await self._flush_events()
        return session.held

    async def transfer(self, target: str) -> None:
        """Hand the call to another agent or number.

        The local session ends as soon as the transport reports the transfer
        done.

        Raises:
            InvalidTarget: If the target is malformed
        """
        session, transport = await self._begin_control("transfer")
        try:
            await transport.transfer(target)
        finally:
            await self._end_control(session)

        async with self._lock:
            if self._session is not session:
                return
            self._finish(session, "transferred")
        logger.info("Call %s transferred to %s", session.session_id, target)
        await self._end_transport(transport)
        await self._flush_events()

    async def send_dtmf(self, tone: str) -> None:
        """Send one DTMF tone (trunk calls only).

        Raises:
            InvalidDestination: If ``tone`` is not one of 0-9, *, #, A-D
            TransportError: On a peer call
        """
        if tone not in DTMF_TONES:
            raise InvalidDestination(f"Invalid DTMF tone: {tone!r}")
        async with self._lock:
            session = self._require_session()
            if session.state != CallState.CONNECTED:
                raise CallStateError(f"Cannot send DTMF while {session.state.value}")
            transport = self._require_transport()
        await transport.send_dtmf(tone)

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    async def on_transport_connected(self, transport: Transport) -> None:
        async with self._lock:
            session = self._session
            if session is None or transport is not self._transport:
                logger.debug("Ignoring connected event from inactive transport")
                return
            if session.state in (CallState.CALLING, CallState.INCOMING):
                self._cancel_attempt_timer()
                self._transition(session, CallState.CONNECTED)
        await self._flush_events()

    async def on_transport_ended(self, transport: Transport, reason: str) -> None:
        async with self._lock:
            session = self._session
            if session is None or transport is not self._transport:
                logger.debug("Ignoring ended event (%s) from inactive transport", reason)
                return
            task, self._start_task = self._start_task, None
            self._finish(session, reason)

        if task is not None and not task.done():
            task.cancel()
        await self._end_transport(transport)
        await self._flush_events()

    async def on_incoming_call(self, transport: Transport, remote_party: str, call_id: str) -> None:
        async with self._lock:
            busy = self._session is not None or self._profile is None
            if not busy:
                session = CallSession(
                    session_id=call_id,
                    transport=transport.kind,
                    direction=CallDirection.INBOUND,
                    remote_party=remote_party,
                )
                self._attach(session, transport, None)
                self._transition(session, CallState.INCOMING)

        if busy:
            logger.info("Rejecting incoming call from %s: busy", remote_party)
            try:
                await transport.reject_incoming()
            except CallControlError as e:
                logger.warning("Could not reject call from %s: %s", remote_party, e.reason)
            return

        logger.info("Incoming call from %s", remote_party)
        await self._flush_events()
        if self._listener is not None:
            await self._safe(self._listener.on_incoming_call(session))

    async def on_remote_notice(
        self, transport: Transport, event: str, data: Dict[str, Any]
    ) -> None:
        session = self._session
        if session is None or transport is not self._transport:
            return
        logger.debug("Remote notice %s: %s", event, data)
        if self._listener is not None:
            await self._safe(self._listener.on_remote_notice(session, event, data))

    # -------------------------------------------------------------------------
    # Internals (the ``_locked`` helpers must be called with the lock held)
    # -------------------------------------------------------------------------

    def _require_session(self) -> CallSession:
        if self._session is None:
            raise NoActiveSession()
        return self._session

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise NoActiveSession()
        return self._transport

    def _begin_op(self, name: str) -> None:
        if self._pending_op is not None:
            raise CallStateError(f"Cannot {name} while {self._pending_op} is in progress")
        self._pending_op = name

    async def _begin_control(self, name: str) -> Tuple[CallSession, Transport]:
        async with self._lock:
            session = self._require_session()
            if session.state not in IN_CALL_STATES:
                raise CallStateError(f"Cannot {name} while {session.state.value}")
            transport = self._require_transport()
            self._begin_op(name)
            return session, transport

    async def _end_control(self, session: CallSession) -> None:
        async with self._lock:
            if self._session is session:
                self._pending_op = None

    def _attach(
        self, session: CallSession, transport: Transport, handle: Optional[MediaHandle]
    ) -> None:
        self._session = session
        self._transport = transport
        self._media_handle = handle
        self._pending_op = None

    def _transition(
        self, session: CallSession, target: CallState, reason: Optional[str] = None
    ) -> None:
        previous = session.transition(target, reason)
        logger.info(
            "Call %s: %s -> %s%s",
            session.session_id,
            previous.value,
            target.value,
            f" ({reason})" if reason else "",
        )
        self._events.append((session, previous, target, self._transport))

    def _finish(self, session: CallSession, reason: str) -> None:
        """Move to ENDED and release everything the session held."""
        if session.state != CallState.ENDED:
            self._transition(session, CallState.ENDED, reason)
        self._detach(session)

    def _rollback(self, session: CallSession, transport: Transport) -> None:
        """Undo a failed start: back to IDLE as if it never happened."""
        previous = session.state
        session.state = CallState.IDLE
        session.end_reason = "failed"
        self._events.append((session, previous, CallState.IDLE, transport))
        self._detach(session)

    def _detach(self, session: CallSession) -> None:
        self._cancel_attempt_timer()
        self._media.release(self._media_handle)
        self._media_handle = None
        self._session = None
        self._transport = None
        self._pending_op = None
        self._last_session = session

    async def _abandon(self, session: CallSession, reason: str) -> None:
        """Drop a session whose ``start`` caller was cancelled."""
        async with self._lock:
            if self._session is session:
                self._start_task = None
                self._finish(session, reason)
        await self._flush_events()

    async def _end_transport(self, transport: Transport) -> None:
        try:
            await transport.end()
        except CallControlError as e:
            logger.warning("Remote teardown failed, call ended locally: %s", e.reason)

    def _arm_attempt_timer(self, session: CallSession) -> None:
        if self._call_attempt_timeout is None:
            return
        self._cancel_attempt_timer()
        self._attempt_timer = asyncio.get_running_loop().create_task(
            self._on_call_attempt_timeout(session)
        )
        logger.debug("Call attempt timeout set for %.1f seconds", self._call_attempt_timeout)

    def _cancel_attempt_timer(self) -> None:
        timer, self._attempt_timer = self._attempt_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _on_call_attempt_timeout(self, session: CallSession) -> None:
        """Remote party never answered."""
        await asyncio.sleep(self._call_attempt_timeout or 0)
        async with self._lock:
            if self._session is not session or session.state != CallState.CALLING:
                return
            logger.warning("Call attempt timed out after %.1f seconds", self._call_attempt_timeout)
            transport = self._transport
            self._finish(session, "no-answer")
        if transport is not None:
            await self._end_transport(transport)
        await self._flush_events()

    async def _flush_events(self) -> None:
        """Deliver queued state changes to the listener and the transport."""
        while self._events:
            session, previous, state, transport = self._events.pop(0)
            if self._listener is not None:
                await self._safe(self._listener.on_state_changed(session, previous))
            if transport is not None:
                await transport.publish_state(state, session.session_id)

    async def _notify_updated(self, session: CallSession) -> None:
        if self._listener is not None:
            await self._safe(self._listener.on_session_updated(session))

    @staticmethod
    async def _safe(callback: Awaitable[None]) -> None:
        try:
            await callback
        except Exception:  # pylint: disable=broad-except
            logger.exception("Call listener failed")


def create_controller(
    config: ConfigManager,
    signaling: SignalingChannel,
    *,
    engine: Optional[MediaEngine] = None,
    sip_client_factory: Optional[Callable[..., SIPClient]] = None,
    media_device: Optional[MediaDevice] = None,
    listener: Optional[CallListener] = None,
) -> CallController:
    """Build a controller from the ``trunk`` and ``timing`` config sections.

    Args:
        config: Loaded configuration
        signaling: Channel to the signaling relay
        engine: Media engine for peer calls (simulated if omitted)
        sip_client_factory: SIP client class for the trunk; no trunk is
            created when omitted or when the registrar is not configured
        media_device: Local capture device
        listener: Receives call events

    Returns:
        A controller ready for ``login``
    """
    timing = config.get_timing_config()
    trunk = config.get_trunk_config()
    request_timeout = float(timing.get("join_timeout", 10.0))
    media_engine = engine if engine is not None else InMemoryMediaEngine()

    def peer_factory(observer: TransportObserver) -> Transport:
        return PeerTransport(observer, signaling, media_engine, request_timeout=request_timeout)

    trunk_factory: Optional[TransportFactory] = None
    trunk_config = TrunkConfig(
        registrar=trunk.get("registrar"),
        realm=trunk.get("realm"),
        port=int(trunk.get("port", 5060)),
        registration_timeout=float(timing.get("registration_timeout", 10.0)),
    )
    if sip_client_factory is not None and trunk_config.is_configured:
        client_factory = sip_client_factory

        def build_trunk(observer: TransportObserver) -> Transport:
            return TrunkTransport(observer, trunk_config, client_factory)

        trunk_factory = build_trunk

    return CallController(
        peer_factory,
        trunk_factory,
        media_device=media_device,
        listener=listener,
        call_attempt_timeout=timing.get("call_attempt_timeout", 60.0),
    )
