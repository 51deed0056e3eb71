"""Signaling relay: connection registry, room directory and message routing."""

from callbridge.signaling.manager import ConnectionManager
from callbridge.signaling.registry import Connection, ConnectionRegistry, UserProfile
from callbridge.signaling.relay import RelayStats, SignalingRelay
from callbridge.signaling.rooms import RoomDirectory

__all__ = [
    "Connection",
    "ConnectionManager",
    "ConnectionRegistry",
    "RelayStats",
    "RoomDirectory",
    "SignalingRelay",
    "UserProfile",
]
