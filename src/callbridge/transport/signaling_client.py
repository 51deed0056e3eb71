"""Client side of the signaling relay."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from callbridge.errors import TransportError

logger = logging.getLogger(__name__)

SignalHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class SignalingChannel(ABC):
    """Sends client messages to the relay and dispatches server events.

    Handlers are coroutine functions ``handler(event_type, data)`` added with
    ``add_handler``. ``request`` sends a message and waits for a specific
    reply event (e.g. ``join-room`` then ``room-users``).
    """

    def __init__(self) -> None:
        self._handlers: List[SignalHandler] = []
        self._waiters: Dict[str, List["asyncio.Future[Dict[str, Any]]"]] = {}
        self._request_types: Dict["asyncio.Future[Dict[str, Any]]", str] = {}

    def add_handler(self, handler: SignalHandler) -> None:
        """Register a coroutine receiving every server event."""
        self._handlers.append(handler)

    def remove_handler(self, handler: SignalHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        """Send one client message.

        Raises:
            TransportError: If the channel is closed
        """
        await self._send_raw({"type": event, "data": data})

    async def request(
        self,
        event: str,
        data: Dict[str, Any],
        reply_event: str,
        timeout: float = 10.0,
    ) -> Dict[str, Any]:
        """Send a message and wait for the first ``reply_event`` after it.

        Args:
            event: Message type to send
            data: Message payload
            reply_event: Event type that answers the message
            timeout: Seconds to wait for the reply

        Returns:
            Payload of the reply

        Raises:
            TransportError: On timeout, on an ``error`` reply, or if the channel closes
        """
        future: "asyncio.Future[Dict[str, Any]]" = asyncio.get_running_loop().create_future()
        waiters = self._waiters.setdefault(reply_event, [])
        waiters.append(future)
        self._request_types[future] = event
        try:
            await self.send(event, data)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No {reply_event} reply to {event} within {timeout}s") from e
        finally:
            self._request_types.pop(future, None)
            if future in waiters:
                waiters.remove(future)

    async def _dispatch(self, event: str, data: Dict[str, Any]) -> None:
        """Resolve a pending request, then hand the event to every handler."""
        waiters = self._waiters.get(event)
        if waiters:
            future = waiters.pop(0)
            if not future.done():
                future.set_result(data)
        elif event == "error":
            self._fail_request(data)

        for handler in list(self._handlers):
            try:
                await handler(event, data)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Signal handler failed for %s", event)

    def _fail_request(self, data: Dict[str, Any]) -> None:
        """Fail the oldest pending request the relay rejected.

        The relay names the rejected message in ``requestType``; an error
        without one cannot be matched and fails nothing.
        """
        request_type = data.get("requestType")
        if not request_type:
            return
        message = str(data.get("message", "Rejected by relay"))
        for future, event in self._request_types.items():
            if event == request_type and not future.done():
                future.set_exception(TransportError(message))
                return

    def _fail_all(self, reason: str) -> None:
        for waiters in self._waiters.values():
            for future in waiters:
                if not future.done():
                    future.set_exception(TransportError(reason))
        self._waiters.clear()
        self._request_types.clear()

    @abstractmethod
    async def _send_raw(self, message: Dict[str, Any]) -> None:
        """Write one envelope to the relay."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel."""


class WebSocketSignalingClient(SignalingChannel):
    """Signaling channel over a WebSocket to the relay's ``/ws`` endpoint."""

    def __init__(self, url: str, *, ping_interval: float = 20.0) -> None:
        """Initialize the client.

        Args:
            url: Relay URL, e.g. ``ws://localhost:3000/ws``
            ping_interval: Keepalive ping interval in seconds
        """
        super().__init__()
        self.url = url
        self._ping_interval = ping_interval
        self._ws: Optional[Any] = None
        self._reader: Optional["asyncio.Task[None]"] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        """Open the WebSocket and start reading events.

        Raises:
            TransportError: If the relay cannot be reached
        """
        if self._ws is not None:
            return
        try:
            self._ws = await websockets.connect(
                self.url, ping_interval=self._ping_interval, ping_timeout=self._ping_interval
            )
        except (OSError, websockets.WebSocketException) as e:
            raise TransportError(f"Cannot reach signaling relay at {self.url}: {e}") from e
        logger.info("Connected to signaling relay: %s", self.url)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                try:
                    envelope = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Non-JSON message from relay: %r", message)
                    continue
                await self._dispatch(envelope.get("type", ""), envelope.get("data") or {})
        except websockets.ConnectionClosed as e:
            logger.warning("Signaling connection closed: %s", e)
        finally:
            self._ws = None
            self._fail_all("Signaling connection closed")

    async def _send_raw(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("Signaling channel is not connected")
        try:
            await self._ws.send(json.dumps(message))
        except websockets.ConnectionClosed as e:
            raise TransportError(f"Signaling connection closed: {e}") from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
