"""Connection registry for the signaling relay.

Maps a live connection id to the agent registered on it and the room it is
currently in. The registry is the only owner of ``Connection`` records.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "available"
STATUS_IN_CALL = "in-call"


@dataclass(frozen=True)
class UserProfile:
    """Agent identity bound to a connection by ``register``."""

    user_id: str
    agent_id: Optional[str] = None
    extension: Optional[str] = None


@dataclass
class Connection:  # pylint: disable=too-many-instance-attributes
    """State the relay keeps about one live connection."""

    connection_id: str
    user: Optional[UserProfile] = None
    room_id: Optional[str] = None
    status: str = STATUS_AVAILABLE
    call_state: Optional[Any] = None
    call_id: Optional[str] = None
    interaction_id: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        """User id announced to other members (falls back to the connection id)."""
        if self.user is not None:
            return self.user.user_id
        return self.connection_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "socketId": self.connection_id,
            "userId": self.user_id,
            "agentId": self.user.agent_id if self.user else None,
            "extension": self.user.extension if self.user else None,
            "roomId": self.room_id,
            "status": self.status,
            "callState": self.call_state,
            "callId": self.call_id,
            "connectedAt": self.connected_at.isoformat(),
        }


class ConnectionRegistry:
    """Thread-safe map of connection id to ``Connection``."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.RLock()

    def connect(self, connection_id: str) -> Connection:
        """Create the record for a freshly opened connection.

        Args:
            connection_id: Id assigned by the transport layer

        Returns:
            The new (or already existing) record
        """
        with self._lock:
            existing = self._connections.get(connection_id)
            if existing is not None:
                return existing
            record = Connection(connection_id=connection_id)
            self._connections[connection_id] = record
            logger.debug("Connection tracked: %s", connection_id)
            return record

    def register(self, connection_id: str, profile: UserProfile) -> Connection:
        """Bind a user profile to a connection (last write wins).

        Args:
            connection_id: Connection to bind
            profile: Agent profile sent by the client

        Returns:
            Updated connection record
        """
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                record = Connection(connection_id=connection_id)
                self._connections[connection_id] = record
            record.user = profile
            logger.info(
                "User registered: %s (agent=%s, extension=%s) on %s",
                profile.user_id,
                profile.agent_id,
                profile.extension,
                connection_id,
            )
            return record

    def get(self, connection_id: str) -> Optional[Connection]:
        """Get a copy of the connection record, or None if not found."""
        with self._lock:
            record = self._connections.get(connection_id)
            return replace(record) if record is not None else None

    def get_profile(self, connection_id: str) -> Optional[UserProfile]:
        """Get the registered profile of a connection, or None."""
        with self._lock:
            record = self._connections.get(connection_id)
            return record.user if record is not None else None

    def user_id_of(self, connection_id: str) -> Optional[str]:
        """User id of a connection (connection id if unregistered), None if unknown."""
        with self._lock:
            record = self._connections.get(connection_id)
            return record.user_id if record is not None else None

    def set_room(self, connection_id: str, room_id: str) -> None:
        """Record that a connection is now in ``room_id``."""
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                return
            record.room_id = room_id
            record.status = STATUS_IN_CALL

    def clear_room(self, connection_id: str, room_id: str) -> None:
        """Forget the room of a connection if it is still ``room_id``."""
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None or record.room_id != room_id:
                return
            record.room_id = None
            record.status = STATUS_AVAILABLE

    def update_call_state(
        self,
        connection_id: str,
        state: Any,
        call_id: Optional[str] = None,
        interaction_id: Optional[str] = None,
    ) -> None:
        """Store the call state a client reported about itself."""
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                return
            record.call_state = state
            record.call_id = call_id
            record.interaction_id = interaction_id

    def remove(self, connection_id: str) -> Optional[str]:
        """Delete a connection record.

        Args:
            connection_id: Connection to delete

        Returns:
            The room the connection was in, so the caller can run leave cleanup
        """
        with self._lock:
            record = self._connections.pop(connection_id, None)
            if record is None:
                return None
            logger.debug("Connection removed: %s", connection_id)
            return record.room_id

    def connection_ids(self) -> List[str]:
        """Ids of all tracked connections."""
        with self._lock:
            return list(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
