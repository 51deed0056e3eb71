"""Media negotiation capability used by the peer transport.

Offer/answer and candidate handling are delegated to a ``MediaEngine``; the
peer transport only moves the opaque blobs it produces through the relay.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from callbridge.errors import MediaAcquisitionFailed, TransportError

if TYPE_CHECKING:
    from callbridge.call.media import MediaHandle

logger = logging.getLogger(__name__)

# Connection states reported to the sink
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"
STATE_FAILED = "failed"


class MediaEventSink(ABC):
    """Receives asynchronous engine events."""

    @abstractmethod
    async def on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        """A local candidate must be sent to the remote party."""

    @abstractmethod
    async def on_connection_state(self, state: str) -> None:
        """The media connection changed state."""


class MediaEngine(ABC):
    """One media session with one remote party."""

    @abstractmethod
    async def open(self, media: "MediaHandle", sink: MediaEventSink) -> None:
        """Attach local media and start a new session.

        Raises:
            MediaAcquisitionFailed: If the local tracks cannot be attached
        """

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Create the local offer."""

    @abstractmethod
    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a remote offer and return the local answer."""

    @abstractmethod
    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        """Apply the remote answer to our offer."""

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply a remote candidate."""

    @abstractmethod
    def set_audio_enabled(self, enabled: bool) -> None:
        """Enable or disable the outgoing audio track."""

    @abstractmethod
    def set_video_enabled(self, enabled: bool) -> bool:
        """Enable or disable the outgoing video track; False if there is none."""

    @abstractmethod
    def remote_stream(self) -> Optional[Any]:
        """Remote media stream once connected."""

    @abstractmethod
    async def close(self) -> None:
        """Stop the session. Idempotent."""


class InMemoryMediaEngine(MediaEngine):  # pylint: disable=too-many-instance-attributes
    """Simulated media engine for tests and demos.

    The session counts as connected as soon as an answer has been produced
    or applied; one local candidate is emitted per negotiation.
    """

    def __init__(self, fail_open: bool = False) -> None:
        """Initialize the engine.

        Args:
            fail_open: Make ``open`` fail as if the tracks could not be attached
        """
        self._fail_open = fail_open
        self._sink: Optional[MediaEventSink] = None
        self._media: Optional["MediaHandle"] = None
        self._session_id: Optional[str] = None
        self.state = STATE_DISCONNECTED
        self.audio_enabled = True
        self.video_enabled = False
        self.remote_candidates: List[Dict[str, Any]] = []
        self.remote_description: Optional[Dict[str, Any]] = None

    async def open(self, media: "MediaHandle", sink: MediaEventSink) -> None:
        if self._fail_open:
            raise MediaAcquisitionFailed("Could not attach local tracks")
        self._media = media
        self._sink = sink
        self._session_id = uuid.uuid4().hex
        self.audio_enabled = media.audio
        self.video_enabled = media.video
        self.remote_candidates = []
        self.remote_description = None
        self.state = STATE_CONNECTING

    def _require_open(self) -> MediaEventSink:
        if self._sink is None:
            raise TransportError("Media session is not open")
        return self._sink

    async def create_offer(self) -> Dict[str, Any]:
        self._require_open()
        return {"type": "offer", "sdp": f"v=0 o=- {self._session_id} offer"}

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        sink = self._require_open()
        self.remote_description = offer
        answer = {"type": "answer", "sdp": f"v=0 o=- {self._session_id} answer"}
        await sink.on_local_candidate(self._local_candidate())
        await self._set_state(STATE_CONNECTED)
        return answer

    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        sink = self._require_open()
        self.remote_description = answer
        await sink.on_local_candidate(self._local_candidate())
        await self._set_state(STATE_CONNECTED)

    def _local_candidate(self) -> Dict[str, Any]:
        return {"candidate": f"candidate:{self._session_id}", "sdpMLineIndex": 0}

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        self._require_open()
        self.remote_candidates.append(candidate)

    def set_audio_enabled(self, enabled: bool) -> None:
        self.audio_enabled = enabled

    def set_video_enabled(self, enabled: bool) -> bool:
        if self._media is None or not self._media.video:
            return False
        self.video_enabled = enabled
        return True

    def remote_stream(self) -> Optional[Any]:
        if self.state != STATE_CONNECTED:
            return None
        return {"session": self._session_id, "remote": self.remote_description}

    async def simulate_failure(self) -> None:
        """Report a media failure (for testing)."""
        await self._set_state(STATE_FAILED)

    async def _set_state(self, state: str) -> None:
        if self.state == state:
            return
        self.state = state
        logger.debug("Media state: %s", state)
        if self._sink is not None:
            await self._sink.on_connection_state(state)

    async def close(self) -> None:
        self._sink = None
        self._media = None
        self.state = STATE_DISCONNECTED
