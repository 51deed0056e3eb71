"""Room directory for the signaling relay.

A room exists exactly while it has members: it is created by the first join
and deleted in the same critical section that removes its last member.
"""

import logging
import threading
from typing import Awaitable, Callable, Dict, List, Optional, Set

from callbridge.signaling.events import SignalingEvent

logger = logging.getLogger(__name__)

DeliverFn = Callable[[str, SignalingEvent], Awaitable[bool]]


class RoomDirectory:
    """Room id to member connection ids.

    Members are plain ids: the directory never owns a connection's lifecycle,
    it only knows who to deliver room messages to.
    """

    def __init__(self, deliver: DeliverFn) -> None:
        """Initialize the room directory.

        Args:
            deliver: Coroutine delivering an event to one connection, returning
                False when the connection can no longer be reached
        """
        self._deliver = deliver
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def join(self, room_id: str, connection_id: str) -> List[str]:
        """Add a member, creating the room if needed.

        Args:
            room_id: Room to join
            connection_id: Joining connection

        Returns:
            The other members of the room at join time
        """
        with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                members = set()
                self._rooms[room_id] = members
                logger.info("Room %s created", room_id)
            members.add(connection_id)
            others = [member for member in members if member != connection_id]
            logger.debug("Room %s now has %d member(s)", room_id, len(members))
            return others

    async def leave(
        self,
        room_id: str,
        connection_id: str,
        notice: Optional[SignalingEvent] = None,
    ) -> bool:
        """Remove a member; delete the room if it became empty.

        Leaving a room that does not exist, or that the connection is not in,
        is a no-op.

        Args:
            room_id: Room to leave
            connection_id: Leaving connection
            notice: Event broadcast to the remaining members, if any remain

        Returns:
            True if the connection was a member and has been removed
        """
        with self._lock:
            members = self._rooms.get(room_id)
            if members is None or connection_id not in members:
                return False
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
                logger.info("Room %s deleted (empty)", room_id)
                return True
            remaining = list(members)

        if notice is not None:
            await self._send_all(remaining, notice)
        return True

    async def broadcast(
        self, room_id: str, except_connection_id: Optional[str], message: SignalingEvent
    ) -> int:
        """Deliver a message to every member except the sender.

        Args:
            room_id: Target room
            except_connection_id: Member to skip (normally the sender)
            message: Event to deliver

        Returns:
            Number of members the message was delivered to
        """
        recipients = self.members(room_id, exclude=except_connection_id)
        if not recipients:
            return 0
        return await self._send_all(recipients, message)

    async def _send_all(self, recipients: List[str], message: SignalingEvent) -> int:
        delivered = 0
        for connection_id in recipients:
            if await self._deliver(connection_id, message):
                delivered += 1
        return delivered

    def members(self, room_id: str, exclude: Optional[str] = None) -> List[str]:
        """Snapshot of the members of a room (empty if the room does not exist)."""
        with self._lock:
            members = self._rooms.get(room_id, set())
            return [member for member in members if member != exclude]

    def exists(self, room_id: str) -> bool:
        """Whether the room currently exists (i.e. has at least one member)."""
        with self._lock:
            return room_id in self._rooms

    def is_member(self, room_id: str, connection_id: str) -> bool:
        """Whether ``connection_id`` is in ``room_id``."""
        with self._lock:
            return connection_id in self._rooms.get(room_id, set())

    @property
    def room_count(self) -> int:
        """Number of live rooms."""
        with self._lock:
            return len(self._rooms)

    def snapshot(self) -> Dict[str, List[str]]:
        """Copy of the whole directory, room id to sorted member ids."""
        with self._lock:
            return {room_id: sorted(members) for room_id, members in self._rooms.items()}
