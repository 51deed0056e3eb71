"""Peer transport: media negotiated directly between agents via the relay.

The party that joins an empty room waits for an offer; the party that finds
members already in the room creates the offer (first joiner is not the
initiator). Once the remote socket is known, negotiation messages are sent
directed at it.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from callbridge.errors import (
    BackendUnavailable,
    CallControlError,
    InvalidDestination,
    InvalidTarget,
    NoActiveSession,
    NotRegistered,
    TransportError,
)
from callbridge.transport.base import Transport, TransportKind, TransportObserver
from callbridge.transport.media_engine import (
    STATE_CONNECTED,
    STATE_FAILED,
    MediaEngine,
    MediaEventSink,
)
from callbridge.transport.signaling_client import SignalingChannel

if TYPE_CHECKING:
    from callbridge.call.media import MediaHandle
    from callbridge.call.session import AgentProfile, CallState

logger = logging.getLogger(__name__)

REMOTE_NOTICES = frozenset(
    {
        "user-audio-muted",
        "user-video-toggled",
        "call-held",
        "call-transfer-initiated",
        "call-state-update",
    }
)


class PeerTransport(Transport, MediaEventSink):  # pylint: disable=too-many-instance-attributes
    """Transport that joins a relay room and negotiates media with its peer."""

    kind = TransportKind.PEER

    def __init__(
        self,
        observer: TransportObserver,
        signaling: SignalingChannel,
        engine: MediaEngine,
        *,
        request_timeout: float = 10.0,
    ) -> None:
        """Initialize the peer transport.

        Args:
            observer: Receives connected/ended/notice events
            signaling: Channel to the signaling relay
            engine: Media negotiation capability
            request_timeout: Seconds to wait for relay replies (register, join)
        """
        super().__init__(observer)
        self._signaling = signaling
        self._engine = engine
        self._request_timeout = request_timeout
        self.socket_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.remote_socket_id: Optional[str] = None
        self.initiator = False
        self._in_call = False
        self._media_connected = False
        self._muted = False
        self._held = False
        signaling.add_handler(self._on_signal)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register(self, profile: "AgentProfile") -> None:
        try:
            reply = await self._signaling.request(
                "register",
                {
                    "userId": profile.agent_id,
                    "agentId": profile.agent_id,
                    "extension": profile.extension,
                },
                "registered",
                self._request_timeout,
            )
        except TransportError as e:
            raise BackendUnavailable(f"Signaling relay unavailable: {e.reason}") from e
        self.socket_id = reply.get("socketId")
        self.user_id = profile.agent_id
        logger.info("Registered with relay as %s (socket %s)", profile.agent_id, self.socket_id)

    async def unregister(self) -> None:
        await self.end()
        self.socket_id = None
        self.user_id = None

    # -------------------------------------------------------------------------
    # Call lifecycle
    # -------------------------------------------------------------------------

    async def start(self, destination: str, media: "MediaHandle") -> str:
        if self.socket_id is None:
            raise NotRegistered("Not registered with the signaling relay")
        room_id = destination.strip() if destination else ""
        if not room_id:
            raise InvalidDestination("Room id must not be empty")
        if self._in_call:
            raise TransportError("Peer transport is already in a call")

        await self._engine.open(media, self)
        self.room_id = room_id
        self._in_call = True
        try:
            reply = await self._signaling.request(
                "join-room",
                {"roomId": room_id, "userId": self.user_id},
                "room-users",
                self._request_timeout,
            )
            users = reply.get("users") or []
            if users:
                self.initiator = True
                self.remote_socket_id = users[0].get("socketId")
                logger.info(
                    "Joined room %s as initiator, calling %s", room_id, self.remote_socket_id
                )
                offer = await self._engine.create_offer()
                await self._signaling.send(
                    "offer",
                    {"offer": offer, "roomId": room_id, "targetSocketId": self.remote_socket_id},
                )
            else:
                logger.info("Joined empty room %s, waiting for peer", room_id)
        except (Exception, asyncio.CancelledError):
            await self._teardown(notify_relay=True, quiet=True)
            raise
        return room_id

    async def accept_incoming(self, media: "MediaHandle") -> None:
        raise NoActiveSession("Peer calls are joined through a room, not answered")

    async def reject_incoming(self) -> None:
        raise NoActiveSession("Peer calls are joined through a room, not answered")

    async def end(self) -> None:
        if not self._in_call:
            return
        await self._teardown(notify_relay=True)

    async def _teardown(self, notify_relay: bool, quiet: bool = False) -> None:
        """Release local call state, then leave the room on the relay."""
        room_id = self.room_id
        self._in_call = False
        self._media_connected = False
        self.room_id = None
        self.remote_socket_id = None
        self.initiator = False
        self._muted = False
        self._held = False
        await self._engine.close()

        if notify_relay and room_id:
            try:
                await self._signaling.send("leave-room", {"roomId": room_id})
            except TransportError as e:
                if not quiet:
                    raise
                logger.warning("Could not leave room %s: %s", room_id, e.reason)

    async def _remote_ended(self, reason: str) -> None:
        if not self._in_call:
            return
        logger.info("Peer call in room %s ended: %s", self.room_id, reason)
        await self._teardown(notify_relay=True, quiet=True)
        await self._observer.on_transport_ended(self, reason)

    # -------------------------------------------------------------------------
    # Call controls
    # -------------------------------------------------------------------------

    def _require_call(self) -> str:
        if not self._in_call or self.room_id is None:
            raise NoActiveSession()
        return self.room_id

    async def set_muted(self, muted: bool) -> bool:
        room_id = self._require_call()
        await self._signaling.send("mute-audio", {"roomId": room_id, "muted": muted})
        self._muted = muted
        self._engine.set_audio_enabled(not (muted or self._held))
        return True

    async def set_video_enabled(self, enabled: bool) -> bool:
        room_id = self._require_call()
        if not self._engine.set_video_enabled(enabled):
            return False
        try:
            await self._signaling.send("toggle-video", {"roomId": room_id, "enabled": enabled})
        except TransportError:
            self._engine.set_video_enabled(not enabled)
            raise
        return True

    async def hold(self, held: bool) -> None:
        room_id = self._require_call()
        await self._signaling.send("hold-call", {"roomId": room_id, "held": held})
        self._held = held
        self._engine.set_audio_enabled(not (held or self._muted))

    async def transfer(self, target: str) -> None:
        room_id = self._require_call()
        target = target.strip() if target else ""
        if not target:
            raise InvalidTarget("Transfer target must not be empty")
        await self._signaling.send(
            "transfer-call", {"roomId": room_id, "targetAgent": target, "callId": room_id}
        )
        logger.info("Transfer of room %s to %s initiated", room_id, target)

    async def publish_state(
        self, state: "CallState", session_id: str, interaction_id: Optional[str] = None
    ) -> None:
        if self.socket_id is None:
            return
        try:
            await self._signaling.send(
                "call-state-update",
                {
                    "state": state.value,
                    "callId": session_id,
                    "roomId": self.room_id,
                    "interactionId": interaction_id,
                },
            )
        except TransportError as e:
            logger.warning("Could not publish call state %s: %s", state.value, e.reason)

    # -------------------------------------------------------------------------
    # Relay and media events
    # -------------------------------------------------------------------------

    async def _on_signal(self, event: str, data: Dict[str, Any]) -> None:
        if not self._in_call:
            return
        if event in ("offer", "answer", "ice-candidate") and data.get("roomId") != self.room_id:
            return

        try:
            if event == "offer":
                await self._handle_offer(data)
            elif event == "answer":
                if data.get("fromSocketId") == self.remote_socket_id:
                    await self._engine.accept_answer(data["answer"])
            elif event == "ice-candidate":
                await self._engine.add_candidate(data["candidate"])
            elif event == "user-joined":
                if self.remote_socket_id is None:
                    self.remote_socket_id = data.get("socketId")
                    logger.info("Peer %s joined room %s", data.get("userId"), self.room_id)
            elif event == "user-left":
                if data.get("socketId") == self.remote_socket_id:
                    await self._remote_ended("remote-hangup")
            elif event in REMOTE_NOTICES:
                await self._observer.on_remote_notice(self, event, data)
        except CallControlError as e:
            logger.warning("Negotiation failed on %s: %s", event, e.reason)
            await self._remote_ended("negotiation-failed")

    async def _handle_offer(self, data: Dict[str, Any]) -> None:
        sender = data.get("fromSocketId")
        if self.initiator and sender != self.remote_socket_id:
            logger.debug("Ignoring offer from %s while initiating", sender)
            return
        self.remote_socket_id = sender
        answer = await self._engine.accept_offer(data["offer"])
        await self._signaling.send(
            "answer", {"answer": answer, "roomId": self.room_id, "targetSocketId": sender}
        )

    async def on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.room_id is None:
            return
        payload: Dict[str, Any] = {"candidate": candidate, "roomId": self.room_id}
        if self.remote_socket_id:
            payload["targetSocketId"] = self.remote_socket_id
        try:
            await self._signaling.send("ice-candidate", payload)
        except TransportError as e:
            logger.warning("Could not send candidate: %s", e.reason)

    async def on_connection_state(self, state: str) -> None:
        if state == STATE_CONNECTED and not self._media_connected:
            self._media_connected = True
            await self._observer.on_transport_connected(self)
        elif state == STATE_FAILED:
            await self._remote_ended("media-failed")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_remote_stream_handle(self) -> Optional[Any]:
        if not self._in_call:
            return None
        return self._engine.remote_stream()

    def is_configured(self) -> bool:
        return True

    def is_connected(self) -> bool:
        return self.socket_id is not None

    def is_in_call(self) -> bool:
        return self._in_call
