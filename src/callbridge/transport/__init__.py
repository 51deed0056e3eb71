"""Call transports: peer (via the signaling relay) and trunk (via SIP)."""

from callbridge.transport.base import Transport, TransportKind, TransportObserver
from callbridge.transport.media_engine import InMemoryMediaEngine, MediaEngine
from callbridge.transport.peer import PeerTransport
from callbridge.transport.signaling_client import SignalingChannel, WebSocketSignalingClient
from callbridge.transport.trunk import TrunkConfig, TrunkTransport

__all__ = [
    "InMemoryMediaEngine",
    "MediaEngine",
    "PeerTransport",
    "SignalingChannel",
    "Transport",
    "TransportKind",
    "TransportObserver",
    "TrunkConfig",
    "TrunkTransport",
    "WebSocketSignalingClient",
]
