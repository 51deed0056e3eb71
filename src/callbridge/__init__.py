"""Signaling relay and unified call control for agent voice/video calls."""

from callbridge.config.config_manager import VERSION

__version__ = VERSION
