"""Error taxonomy shared by the relay and the call-control client.

Every error carries a short human-readable ``reason`` that the UI can show
as-is.
"""


class CallControlError(Exception):
    """Base class for failed call-control and signaling operations."""

    default_reason = "Call operation failed"

    def __init__(self, reason: str = "") -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class NotRegistered(CallControlError):
    """The operation needs a backend registration that has not completed."""

    default_reason = "Not registered"


class NoActiveSession(CallControlError):
    """A call-control operation was issued with no current call."""

    default_reason = "No active call"


class InvalidDestination(CallControlError):
    """Malformed call destination."""

    default_reason = "Invalid destination"


class InvalidTarget(CallControlError):
    """Malformed transfer target."""

    default_reason = "Invalid transfer target"


class MediaAcquisitionFailed(CallControlError):
    """The local audio/video device is unavailable or already in use."""

    default_reason = "Local media unavailable"


class DeliveryFailed(CallControlError):
    """The relay target is no longer connected.

    Never propagated to the sender of the message: the relay logs and drops it.
    """

    default_reason = "Delivery failed"


class BackendUnavailable(CallControlError):
    """The trunk registrar could not be reached or refused registration."""

    default_reason = "Trunk backend unavailable"


class TransportError(CallControlError):
    """A transport operation was attempted and failed."""

    default_reason = "Transport operation failed"


class CallStateError(CallControlError):
    """The command is not valid in the current call state."""

    default_reason = "Operation not allowed in the current call state"
