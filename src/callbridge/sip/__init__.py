"""SIP client abstraction for trunk calling."""

from callbridge.sip.in_memory_client import InMemorySIPClient
from callbridge.sip.sip_client import CallState, SIPClient, SIPError

__all__ = ["CallState", "SIPClient", "SIPError", "InMemorySIPClient"]
