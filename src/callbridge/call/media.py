"""Exclusive local media device.

Only one call may hold the microphone/camera at a time. The handle must be
released before another session can acquire it.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from callbridge.errors import MediaAcquisitionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaHandle:
    """Local audio (and optionally video) stream owned by one session."""

    owner: str
    audio: bool = True
    video: bool = True


class MediaDevice:
    """The local capture device."""

    def __init__(self, available: bool = True, video: bool = True) -> None:
        """Initialize the device.

        Args:
            available: False simulates a missing or denied microphone
            video: Whether a camera is present
        """
        self.available = available
        self._video = video
        self._handle: Optional[MediaHandle] = None
        self._lock = threading.Lock()

    def acquire(self, owner: str) -> MediaHandle:
        """Take exclusive ownership of the device.

        Args:
            owner: Session taking the device

        Returns:
            The media handle

        Raises:
            MediaAcquisitionFailed: If the device is unavailable or held
        """
        with self._lock:
            if not self.available:
                raise MediaAcquisitionFailed("Microphone unavailable")
            if self._handle is not None:
                raise MediaAcquisitionFailed(f"Media device in use by {self._handle.owner}")
            self._handle = MediaHandle(owner=owner, video=self._video)
            logger.debug("Media acquired by %s", owner)
            return self._handle

    def release(self, handle: Optional[MediaHandle]) -> None:
        """Stop the handle's tracks. Releasing twice, or a stale handle, is a no-op."""
        if handle is None:
            return
        with self._lock:
            if self._handle is handle:
                self._handle = None
                logger.debug("Media released by %s", handle.owner)

    @property
    def in_use(self) -> bool:
        with self._lock:
            return self._handle is not None
