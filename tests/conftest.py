"""Shared pytest fixtures for all tests."""

import asyncio
import json
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from callbridge.call.controller import CallListener
from callbridge.call.session import CallSession, CallState
from callbridge.errors import TransportError
from callbridge.signaling.manager import ConnectionManager
from callbridge.signaling.relay import SignalingRelay
from callbridge.transport.signaling_client import SignalingChannel


class MockWebSocket:
    """Mock WebSocket for testing."""

    def __init__(self, should_fail: bool = False) -> None:
        """Initialize mock WebSocket.

        Args:
            should_fail: If True, send_text will raise an exception
        """
        self.should_fail = should_fail
        self.accepted = False
        self.close_code: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None
        self.sent_messages: List[str] = []

    async def accept(self) -> None:
        """Accept the WebSocket connection."""
        self.accepted = True

    async def send_text(self, data: str) -> None:
        """Send text data over WebSocket."""
        if self.gate is not None:
            await self.gate.wait()
        if self.should_fail:
            raise ConnectionError("WebSocket disconnected")
        self.sent_messages.append(data)

    def events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Decoded events sent to this socket, optionally of one type."""
        decoded = [json.loads(message) for message in self.sent_messages]
        if event_type is None:
            return decoded
        return [event for event in decoded if event["type"] == event_type]

    async def close(self, code: int = 1000) -> None:
        """Close the WebSocket connection."""
        self.close_code = code

    def clear(self) -> None:
        self.sent_messages.clear()


OpenSocket = Callable[..., Awaitable[Tuple[str, MockWebSocket]]]


@pytest.fixture
def relay() -> SignalingRelay:
    """A relay with no open connections."""
    return SignalingRelay(ConnectionManager())


@pytest.fixture
def open_socket(relay: SignalingRelay) -> OpenSocket:
    """Open a MockWebSocket connection on the relay, returning (id, socket)."""

    async def _open(should_fail: bool = False) -> Tuple[str, MockWebSocket]:
        ws = MockWebSocket(should_fail=should_fail)
        connection_id = await relay.connections.connect(ws)
        await relay.on_connect(connection_id)
        return connection_id, ws

    return _open


async def send(relay: SignalingRelay, connection_id: str, event: str, **data: Any) -> None:
    """Deliver one client message to the relay as if it came off the wire."""
    await relay.handle_text(connection_id, json.dumps({"type": event, "data": data}))


class _LoopbackSocket:
    """Relay side of a LoopbackChannel: events land in the channel's inbox."""

    def __init__(self, inbox: "asyncio.Queue[str]") -> None:
        self._inbox = inbox

    async def accept(self) -> None:
        pass

    async def send_text(self, data: str) -> None:
        self._inbox.put_nowait(data)

    async def close(self, code: int = 1000) -> None:
        pass


class LoopbackChannel(SignalingChannel):
    """Signaling channel wired straight into an in-process relay.

    Outgoing messages are JSON-encoded and handed to the relay; incoming
    events are queued and dispatched by a reader task, like a real socket.
    """

    def __init__(self, relay: SignalingRelay) -> None:
        super().__init__()
        self._relay = relay
        self._inbox: "asyncio.Queue[str]" = asyncio.Queue()
        self._reader: Optional["asyncio.Task[None]"] = None
        self.connection_id: Optional[str] = None
        self.closed = False
        self.sent: List[Dict[str, Any]] = []
        self.received: List[Tuple[str, Dict[str, Any]]] = []

    async def open(self) -> None:
        self.connection_id = await self._relay.connections.connect(_LoopbackSocket(self._inbox))
        await self._relay.on_connect(self.connection_id)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def connect(self) -> None:
        """Same as ``open``, under the name the WebSocket client uses."""
        await self.open()

    async def _read_loop(self) -> None:
        while True:
            envelope = json.loads(await self._inbox.get())
            self.received.append((envelope["type"], envelope["data"]))
            await self._dispatch(envelope["type"], envelope["data"])

    def received_types(self) -> List[str]:
        return [event for event, _ in self.received]

    async def _send_raw(self, message: Dict[str, Any]) -> None:
        if self.closed or self.connection_id is None:
            raise TransportError("Loopback channel is closed")
        self.sent.append(message)
        await self._relay.handle_text(self.connection_id, json.dumps(message))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if self.connection_id is not None:
            await self._relay.connections.disconnect(self.connection_id)
            await self._relay.on_disconnect(self.connection_id)
        self._fail_all("Loopback channel closed")


@pytest_asyncio.fixture
async def channel_factory(
    relay: SignalingRelay,
) -> AsyncIterator[Callable[[], Awaitable[LoopbackChannel]]]:
    """Open loopback channels on the shared relay; all are closed on teardown."""
    channels: List[LoopbackChannel] = []

    async def _open() -> LoopbackChannel:
        channel = LoopbackChannel(relay)
        await channel.open()
        channels.append(channel)
        return channel

    yield _open

    for channel in channels:
        await channel.close()


class RecordingListener(CallListener):
    """Call listener that records everything it is told."""

    def __init__(self) -> None:
        self.states: List[Tuple[CallState, CallState]] = []
        self.updates: List[CallSession] = []
        self.incoming: List[CallSession] = []
        self.notices: List[Tuple[str, Dict[str, Any]]] = []

    async def on_state_changed(self, session: CallSession, previous: CallState) -> None:
        self.states.append((previous, session.state))

    async def on_session_updated(self, session: CallSession) -> None:
        self.updates.append(session)

    async def on_incoming_call(self, session: CallSession) -> None:
        self.incoming.append(session)

    async def on_remote_notice(
        self, session: CallSession, event: str, data: Dict[str, Any]
    ) -> None:
        self.notices.append((event, data))

    def notice_types(self) -> List[str]:
        return [event for event, _ in self.notices]


async def settle(rounds: int = 20) -> None:
    """Let already scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until ``predicate`` holds, failing the test after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(0.005)
