"""Web server for the signaling relay."""

from callbridge.web.app import create_app

__all__ = ["create_app"]
