"""Trunk transport: calls routed through a SIP registrar.

Hold, mute and transfer are backend-native operations here; no relay notice
is sent because the trunk is the authority on call state.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from callbridge.errors import (
    BackendUnavailable,
    InvalidDestination,
    InvalidTarget,
    NoActiveSession,
    NotRegistered,
    TransportError,
)
from callbridge.sip.in_memory_client import InMemorySIPClient
from callbridge.sip.sip_client import CallState as SIPCallState
from callbridge.sip.sip_client import SIPClient, SIPError
from callbridge.transport.base import Transport, TransportKind, TransportObserver

if TYPE_CHECKING:
    from callbridge.call.media import MediaHandle
    from callbridge.call.session import AgentProfile

logger = logging.getLogger(__name__)

# Extension, E.164 number or SIP user part, optionally already a full URI
_USER_PART = r"\+?[A-Za-z0-9_.-]+"
_DESTINATION_RE = re.compile(
    rf"^(?:sips?:)?(?P<user>{_USER_PART})(?:@(?P<host>[A-Za-z0-9.-]+(?::\d+)?))?$"
)

SIPClientFactory = Callable[..., SIPClient]


@dataclass
class TrunkConfig:
    """Registrar settings, from the ``trunk`` and ``timing`` config sections."""

    registrar: Optional[str] = None
    realm: Optional[str] = None
    port: int = 5060
    registration_timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.registrar and self.realm)

    @property
    def registrar_uri(self) -> str:
        registrar = self.registrar or ""
        if ":" in registrar.split("@")[-1]:
            return registrar
        return f"{registrar}:{self.port}"


class TrunkTransport(Transport):
    """Transport backed by a SIP client registered with the trunk."""

    kind = TransportKind.TRUNK

    def __init__(
        self,
        observer: TransportObserver,
        config: TrunkConfig,
        client_factory: SIPClientFactory = InMemorySIPClient,
    ) -> None:
        """Initialize the trunk transport.

        Args:
            observer: Receives connected/ended/incoming events
            config: Registrar settings
            client_factory: Builds the SIP client; called with the
                ``on_incoming_call``, ``on_call_answered`` and
                ``on_call_ended`` keyword callbacks
        """
        super().__init__(observer)
        self._config = config
        self._client = client_factory(
            on_incoming_call=self._handle_incoming_call,
            on_call_answered=self._handle_call_answered,
            on_call_ended=self._handle_call_ended,
        )
        self._registered = False
        self._call_id: Optional[str] = None

    @property
    def sip_client(self) -> SIPClient:
        return self._client

    def to_sip_uri(self, destination: str) -> Optional[str]:
        """Normalize an extension or number to ``sip:<user>@<realm>``.

        Returns:
            The URI, or None if ``destination`` is malformed
        """
        match = _DESTINATION_RE.match(destination.strip()) if destination else None
        if match is None:
            return None
        host = match.group("host") or self._config.realm
        return f"sip:{match.group('user')}@{host}"

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register(self, profile: "AgentProfile") -> None:
        if not self._config.is_configured:
            raise BackendUnavailable("Trunk registrar is not configured")
        if not profile.has_trunk_credentials:
            raise NotRegistered("No trunk credentials")

        account_uri = f"sip:{profile.trunk_username}@{self._config.realm}"
        try:
            await asyncio.wait_for(
                self._client.register(
                    self._config.registrar_uri,
                    profile.trunk_username or "",
                    profile.trunk_password or "",
                ),
                self._config.registration_timeout,
            )
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(
                f"Registrar {self._config.registrar} did not answer within "
                f"{self._config.registration_timeout}s"
            ) from e
        except SIPError as e:
            raise BackendUnavailable(f"Registration refused: {e}") from e

        self._registered = True
        logger.info("Registered %s with trunk %s", account_uri, self._config.registrar)

    async def unregister(self) -> None:
        self._registered = False
        self._call_id = None
        await self._client.unregister()

    # -------------------------------------------------------------------------
    # Call lifecycle
    # -------------------------------------------------------------------------

    async def start(self, destination: str, media: "MediaHandle") -> str:
        if not self.is_connected():
            raise NotRegistered("Not registered with the trunk")
        uri = self.to_sip_uri(destination)
        if uri is None:
            raise InvalidDestination(f"Invalid destination: {destination!r}")

        try:
            self._call_id = await self._client.make_call(uri)
        except SIPError as e:
            raise TransportError(f"Call to {uri} failed: {e}") from e
        except asyncio.CancelledError:
            await self._client.hangup()
            raise
        logger.info("Trunk call %s to %s started", self._call_id, uri)
        return self._call_id

    async def accept_incoming(self, media: "MediaHandle") -> None:
        if self._client.get_call_state() != SIPCallState.RINGING:
            raise NoActiveSession("No incoming call to accept")
        try:
            await self._client.answer_call()
        except SIPError as e:
            raise TransportError(f"Could not answer: {e}") from e

    async def reject_incoming(self) -> None:
        if self._client.get_call_state() != SIPCallState.RINGING:
            raise NoActiveSession("No incoming call to reject")
        self._call_id = None
        await self._client.reject_call()

    async def end(self) -> None:
        self._call_id = None
        if not self._client.in_call():
            return
        try:
            await self._client.hangup()
        except SIPError as e:
            raise TransportError(f"Hangup failed: {e}") from e

    # -------------------------------------------------------------------------
    # Call controls
    # -------------------------------------------------------------------------

    def _require_call(self) -> None:
        if self._call_id is None or not self._client.in_call():
            raise NoActiveSession()

    async def set_muted(self, muted: bool) -> bool:
        self._require_call()
        try:
            await self._client.set_muted(muted)
        except SIPError as e:
            raise TransportError(f"Mute failed: {e}") from e
        return True

    async def hold(self, held: bool) -> None:
        self._require_call()
        try:
            if held:
                await self._client.hold()
            else:
                await self._client.unhold()
        except SIPError as e:
            raise TransportError(f"{'Hold' if held else 'Resume'} failed: {e}") from e

    async def transfer(self, target: str) -> None:
        self._require_call()
        uri = self.to_sip_uri(target)
        if uri is None:
            raise InvalidTarget(f"Invalid transfer target: {target!r}")
        try:
            await self._client.transfer(uri)
        except SIPError as e:
            raise TransportError(f"Transfer failed: {e}") from e
        self._call_id = None
        logger.info("Trunk call transferred to %s", uri)

    async def send_dtmf(self, tone: str) -> None:
        self._require_call()
        try:
            await self._client.send_dtmf(tone)
        except SIPError as e:
            raise TransportError(f"DTMF failed: {e}") from e

    # -------------------------------------------------------------------------
    # SIP client callbacks
    # -------------------------------------------------------------------------

    async def _handle_incoming_call(self, caller_id: str, call_id: str) -> None:
        self._call_id = call_id
        await self._observer.on_incoming_call(self, caller_id, call_id)

    async def _handle_call_answered(self, call_id: str) -> None:
        if call_id != self._call_id:
            return
        await self._observer.on_transport_connected(self)

    async def _handle_call_ended(self, call_id: str, reason: str) -> None:
        if call_id != self._call_id:
            # Our own hangup/reject already cleared the call
            return
        self._call_id = None
        await self._observer.on_transport_ended(self, reason)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_remote_stream_handle(self) -> Optional[Any]:
        return self._client.get_current_call()

    def is_configured(self) -> bool:
        return self._config.is_configured

    def is_connected(self) -> bool:
        return self._registered and self._client.is_registered()

    def is_in_call(self) -> bool:
        return self._client.in_call()
