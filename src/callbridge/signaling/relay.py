"""Signaling relay: room bookkeeping and message routing between agents.

The relay never interprets negotiation payloads. It validates the envelope,
updates the connection registry and room directory, and forwards messages
either to one target connection (directed) or to the rest of a room
(room-broadcast).
"""

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from callbridge.signaling.events import (
    REQUEST_MODELS,
    AnswerRequest,
    CallStateUpdateRequest,
    ClientMessage,
    ErrorEvent,
    EventType,
    HoldCallRequest,
    IceCandidateRequest,
    JoinRoomRequest,
    LeaveRoomRequest,
    MuteAudioRequest,
    OfferRequest,
    RegisteredEvent,
    RegisterRequest,
    RelayedEvent,
    RoomUsersEvent,
    ServerShutdownEvent,
    SignalingEvent,
    SignalingPayload,
    ToggleVideoRequest,
    TransferCallRequest,
    UserJoinedEvent,
    UserLeftEvent,
)
from callbridge.signaling.manager import ConnectionManager
from callbridge.signaling.registry import ConnectionRegistry, UserProfile
from callbridge.signaling.rooms import RoomDirectory

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[None]]


@dataclass
class RelayStats:
    """Counters exposed by ``/api/health`` and ``/api/stats``."""

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    total_connections: int = 0
    total_calls: int = 0

    @property
    def uptime(self) -> int:
        """Seconds since the relay was created."""
        return int(time.monotonic() - self.started_monotonic)


@dataclass
class _RoomLock:
    """Serializes membership changes of one room."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SignalingRelay:
    """Processes client messages for every connection of one server process.

    Membership changes (join, leave, disconnect) of one room run one at a
    time under that room's lock, so concurrent joins cannot race to create
    the room twice and a leave cannot orphan an empty room. Rooms do not wait
    on each other. Forwarding of negotiation messages takes no lock.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        registry: Optional[ConnectionRegistry] = None,
        rooms: Optional[RoomDirectory] = None,
    ) -> None:
        """Initialize the relay.

        Args:
            connections: Delivers events to open sockets
            registry: Connection registry (a fresh one if omitted)
            rooms: Room directory (a fresh one delivering through
                ``connections`` if omitted)
        """
        self.connections = connections
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.rooms = rooms if rooms is not None else RoomDirectory(deliver=connections.send)
        self.stats = RelayStats()
        self._room_locks: Dict[str, _RoomLock] = {}
        self._shutting_down = False
        self._handlers: Dict[EventType, Handler] = {
            EventType.REGISTER: self._on_register,
            EventType.JOIN_ROOM: self._on_join_room,
            EventType.LEAVE_ROOM: self._on_leave_room,
            EventType.OFFER: self._on_offer,
            EventType.ANSWER: self._on_answer,
            EventType.ICE_CANDIDATE: self._on_ice_candidate,
            EventType.MUTE_AUDIO: self._on_mute_audio,
            EventType.TOGGLE_VIDEO: self._on_toggle_video,
            EventType.HOLD_CALL: self._on_hold_call,
            EventType.TRANSFER_CALL: self._on_transfer_call,
            EventType.CALL_STATE_UPDATE: self._on_call_state_update,
        }

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def on_connect(self, connection_id: str) -> None:
        """Start tracking a newly opened connection."""
        self.registry.connect(connection_id)
        self.stats.total_connections += 1

    async def on_disconnect(self, connection_id: str) -> None:
        """Clean up after a connection closed, leaving its room if any.

        Converges with ``leave-room`` on the same idempotent leave routine.
        """
        room_id = self.registry.remove(connection_id)
        if room_id:
            async with self._locked_rooms(room_id):
                await self._leave(connection_id, room_id)
        logger.info("Connection %s cleaned up (room: %s)", connection_id, room_id)

    @contextlib.asynccontextmanager
    async def _locked_rooms(self, *room_ids: Optional[str]) -> AsyncIterator[None]:
        """Hold the membership locks of the given rooms.

        Locks are taken in sorted room id order so two connections switching
        between the same pair of rooms cannot deadlock. A room's lock is
        forgotten once nobody holds or waits for it.
        """
        names = sorted({room_id for room_id in room_ids if room_id})
        entries = [self._room_locks.setdefault(name, _RoomLock()) for name in names]
        for entry in entries:
            entry.users += 1
        try:
            async with contextlib.AsyncExitStack() as stack:
                for entry in entries:
                    await stack.enter_async_context(entry.lock)
                yield
        finally:
            for name, entry in zip(names, entries):
                entry.users -= 1
                if entry.users == 0:
                    del self._room_locks[name]

    # -------------------------------------------------------------------------
    # Message dispatch
    # -------------------------------------------------------------------------

    async def handle_text(self, connection_id: str, text: str) -> None:
        """Decode a raw text frame and handle it."""
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON from %s: %s", connection_id, e)
            await self.connections.send(connection_id, ErrorEvent(f"Invalid JSON: {e.msg}"))
            return
        await self.handle_message(connection_id, raw)

    async def handle_message(self, connection_id: str, raw: Any) -> None:
        """Validate a decoded client message and route it to its handler.

        Malformed or unknown messages are answered with an ``error`` event;
        they never raise out of the relay.
        """
        try:
            message = ClientMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning("Malformed message from %s: %s", connection_id, e)
            await self.connections.send(connection_id, ErrorEvent("Malformed message"))
            return

        try:
            event_type = EventType(message.type)
            handler = self._handlers[event_type]
        except (ValueError, KeyError):
            logger.warning("Unknown message type from %s: %s", connection_id, message.type)
            await self.connections.send(
                connection_id, ErrorEvent("Unknown message type", request_type=message.type)
            )
            return

        model = REQUEST_MODELS[event_type]
        try:
            payload: SignalingPayload = model.model_validate(message.data)
        except ValidationError as e:
            logger.warning("Invalid %s payload from %s: %s", message.type, connection_id, e)
            await self.connections.send(
                connection_id,
                ErrorEvent(f"Invalid {message.type} payload", request_type=message.type),
            )
            return

        await handler(connection_id, payload)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _on_register(self, connection_id: str, request: RegisterRequest) -> None:
        profile = UserProfile(
            user_id=request.user_id or connection_id,
            agent_id=request.agent_id,
            extension=request.extension,
        )
        self.registry.register(connection_id, profile)
        await self.connections.send(connection_id, RegisteredEvent(socket_id=connection_id))

    async def _on_join_room(self, connection_id: str, request: JoinRoomRequest) -> None:
        room_id = request.room_id
        record = self.registry.get(connection_id)
        previous = record.room_id if record is not None and record.room_id != room_id else None
        async with self._locked_rooms(room_id, previous):
            if previous:
                logger.info("%s switching from room %s to %s", connection_id, previous, room_id)
                await self._leave(connection_id, previous)

            created = not self.rooms.exists(room_id)
            others = self.rooms.join(room_id, connection_id)
            self.registry.set_room(connection_id, room_id)
            if created:
                self.stats.total_calls += 1

            user_id = self.registry.user_id_of(connection_id) or request.user_id or connection_id
            logger.info(
                "User %s joined room %s (%d user(s))", user_id, room_id, len(others) + 1
            )

            await self.rooms.broadcast(
                room_id, connection_id, UserJoinedEvent(socket_id=connection_id, user_id=user_id)
            )
            users = [
                {"socketId": other, "userId": self.registry.user_id_of(other)} for other in others
            ]
            await self.connections.send(connection_id, RoomUsersEvent(users=users))

    async def _on_leave_room(self, connection_id: str, request: LeaveRoomRequest) -> None:
        async with self._locked_rooms(request.room_id):
            await self._leave(connection_id, request.room_id)

    async def _leave(self, connection_id: str, room_id: str) -> None:
        """Idempotent leave shared by ``leave-room`` and disconnect.

        Must be called with the room's membership lock held.
        """
        removed = await self.rooms.leave(
            room_id, connection_id, notice=UserLeftEvent(socket_id=connection_id)
        )
        self.registry.clear_room(connection_id, room_id)
        if removed:
            logger.info("%s left room %s", connection_id, room_id)

    async def _on_offer(self, connection_id: str, request: OfferRequest) -> None:
        logger.info("Offer received from %s for room %s", connection_id, request.room_id)
        await self._route(
            connection_id,
            request.room_id,
            request.target_socket_id,
            EventType.OFFER,
            {"offer": request.offer},
        )

    async def _on_answer(self, connection_id: str, request: AnswerRequest) -> None:
        logger.info("Answer received from %s for room %s", connection_id, request.room_id)
        await self._route(
            connection_id,
            request.room_id,
            request.target_socket_id,
            EventType.ANSWER,
            {"answer": request.answer},
        )

    async def _on_ice_candidate(self, connection_id: str, request: IceCandidateRequest) -> None:
        logger.debug("ICE candidate from %s for room %s", connection_id, request.room_id)
        await self._route(
            connection_id,
            request.room_id,
            request.target_socket_id,
            EventType.ICE_CANDIDATE,
            {"candidate": request.candidate},
        )

    async def _route(
        self,
        sender_id: str,
        room_id: str,
        target_id: Optional[str],
        event_type: EventType,
        payload: Dict[str, Any],
    ) -> None:
        """Deliver to ``target_id`` if given, otherwise to the rest of the room."""
        data = dict(payload)
        data["fromSocketId"] = sender_id
        data["roomId"] = room_id
        event = RelayedEvent(event_type, data)
        if target_id:
            await self.connections.send(target_id, event)
        else:
            await self.rooms.broadcast(room_id, sender_id, event)

    async def _on_mute_audio(self, connection_id: str, request: MuteAudioRequest) -> None:
        await self.rooms.broadcast(
            request.room_id,
            connection_id,
            RelayedEvent(
                EventType.USER_AUDIO_MUTED, {"socketId": connection_id, "muted": request.muted}
            ),
        )

    async def _on_toggle_video(self, connection_id: str, request: ToggleVideoRequest) -> None:
        await self.rooms.broadcast(
            request.room_id,
            connection_id,
            RelayedEvent(
                EventType.USER_VIDEO_TOGGLED,
                {"socketId": connection_id, "enabled": request.enabled},
            ),
        )

    async def _on_hold_call(self, connection_id: str, request: HoldCallRequest) -> None:
        await self.rooms.broadcast(
            request.room_id,
            connection_id,
            RelayedEvent(EventType.CALL_HELD, {"socketId": connection_id, "held": request.held}),
        )

    async def _on_transfer_call(self, connection_id: str, request: TransferCallRequest) -> None:
        logger.info(
            "Call transfer initiated by %s: target=%s call=%s",
            connection_id,
            request.target_agent,
            request.call_id,
        )
        await self.rooms.broadcast(
            request.room_id,
            connection_id,
            RelayedEvent(
                EventType.CALL_TRANSFER_INITIATED,
                {
                    "targetAgent": request.target_agent,
                    "callId": request.call_id,
                    "fromSocketId": connection_id,
                },
            ),
        )

    async def _on_call_state_update(
        self, connection_id: str, request: CallStateUpdateRequest
    ) -> None:
        logger.info(
            "Call state update from %s: state=%s call=%s interaction=%s",
            connection_id,
            request.state,
            request.call_id,
            request.interaction_id,
        )
        self.registry.update_call_state(
            connection_id, request.state, request.call_id, request.interaction_id
        )
        if request.room_id:
            await self.rooms.broadcast(
                request.room_id,
                connection_id,
                RelayedEvent(
                    EventType.CALL_STATE_UPDATE,
                    {
                        "state": request.state,
                        "callId": request.call_id,
                        "interactionId": request.interaction_id,
                        "fromSocketId": connection_id,
                    },
                ),
            )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def shutdown(self, message: str = "Server is shutting down") -> int:
        """Tell every open connection the server is going away, then close them.

        Only the first call notifies; later calls return 0.

        Returns:
            Number of connections the notice was delivered to
        """
        if self._shutting_down:
            return 0
        self._shutting_down = True

        connection_ids = self.connections.connection_ids()
        logger.info("Shutting down, notifying %d connection(s)", len(connection_ids))
        event = ServerShutdownEvent(message)
        delivered = 0
        for connection_id in connection_ids:
            if await self.connections.send(connection_id, event):
                delivered += 1
        await self.connections.close_all()
        return delivered

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Counters for ``/api/health``."""
        return {
            "uptime": self.stats.uptime,
            "connections": len(self.registry),
            "rooms": self.rooms.room_count,
            "stats": {
                "totalConnections": self.stats.total_connections,
                "totalCalls": self.stats.total_calls,
                "currentConnections": len(self.registry),
                "currentCalls": self.rooms.room_count,
            },
        }

    def detailed_stats(self) -> Dict[str, Any]:
        """Counters plus per-room membership for ``/api/stats``."""
        rooms = [
            {"roomId": room_id, "userCount": len(members), "users": members}
            for room_id, members in self.rooms.snapshot().items()
        ]
        return {
            "uptime": self.stats.uptime,
            "startTime": self.stats.start_time.isoformat(),
            "totalConnections": self.stats.total_connections,
            "totalCalls": self.stats.total_calls,
            "currentConnections": len(self.registry),
            "currentCalls": self.rooms.room_count,
            "rooms": rooms,
        }
