"""WebSocket connection manager for the signaling relay."""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Dict, List

from fastapi import WebSocket, status

from callbridge.errors import DeliveryFailed

from .events import SignalingEvent

logger = logging.getLogger(__name__)


def new_connection_id() -> str:
    """Generate an opaque connection id."""
    return secrets.token_urlsafe(15)


class ConnectionManager:
    """Tracks open WebSockets by connection id and delivers events to them.

    Sends to one connection are serialized by a per-connection lock, so
    messages handed to ``send`` for the same recipient go out in call order.
    """

    def __init__(self) -> None:
        """Initialize connection manager."""
        self.active_connections: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        """Accept and register a new WebSocket connection.

        Args:
            websocket: WebSocket connection to register

        Returns:
            Id assigned to the connection
        """
        await websocket.accept()
        connection_id = new_connection_id()
        async with self._lock:
            self.active_connections[connection_id] = websocket
            self._send_locks[connection_id] = asyncio.Lock()
        logger.info(
            "Client connected: %s. Total connections: %d",
            connection_id,
            len(self.active_connections),
        )
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection (no-op if unknown).

        Args:
            connection_id: Connection to remove
        """
        async with self._lock:
            removed = self.active_connections.pop(connection_id, None)
            self._send_locks.pop(connection_id, None)
        if removed is not None:
            logger.info(
                "Client disconnected: %s. Total connections: %d",
                connection_id,
                len(self.active_connections),
            )

    async def send(self, connection_id: str, event: SignalingEvent) -> bool:
        """Send an event to one connection.

        A vanished or failing recipient is a non-fatal delivery failure: it is
        logged and the message is dropped.

        Args:
            connection_id: Recipient
            event: Event to send

        Returns:
            True if the event was written to the socket
        """
        websocket = self.active_connections.get(connection_id)
        send_lock = self._send_locks.get(connection_id)
        if websocket is None or send_lock is None:
            error = DeliveryFailed(f"{connection_id} is not connected")
            self._log_drop(connection_id, event, error)
            return False

        message = event.model_dump_json()
        try:
            async with send_lock:
                await websocket.send_text(message)
        except Exception as e:  # pylint: disable=broad-except
            self._log_drop(connection_id, event, DeliveryFailed(str(e)))
            await self.disconnect(connection_id)
            return False
        return True

    async def close_all(self, code: int = status.WS_1001_GOING_AWAY) -> None:
        """Close every open socket. Close errors are logged and ignored."""
        async with self._lock:
            websockets = list(self.active_connections.values())
        for websocket in websockets:
            try:
                await websocket.close(code=code)
            except Exception as e:  # pylint: disable=broad-except
                logger.debug("Error closing WebSocket: %s", e)

    @staticmethod
    def _log_drop(connection_id: str, event: SignalingEvent, error: DeliveryFailed) -> None:
        logger.warning(
            "Dropped %s for %s: %s", event.type.value, connection_id, error.reason
        )

    def is_connected(self, connection_id: str) -> bool:
        """Whether a connection is currently open."""
        return connection_id in self.active_connections

    def connection_ids(self) -> List[str]:
        """Ids of all open connections."""
        return list(self.active_connections)

    @property
    def connection_count(self) -> int:
        """Get the number of active connections.

        Returns:
            Number of active WebSocket connections
        """
        return len(self.active_connections)
