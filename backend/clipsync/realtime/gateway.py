"""
ClipSync Backend — Connection Gateway
======================================

What:  Owns the lifecycle of every realtime connection.
How:   One GatewaySession per transport connection, driven through

           CONNECTING ──authenticate()──▶ AUTHENTICATED ──go_live()──▶ LIVE
               │                               │                        │
               └────────── close() / auth failure ─────────────────────▶ CLOSED

       A session that fails authentication goes straight to CLOSED and is
       never registered. close() runs its side effects exactly once, however
       many times (and from however many tasks) it is called.
Who:   The /ws route drives one session per socket; SyncCore owns the gateway.
When:  Reconnection is always a brand new session.

Presence notifications are per device: device.online is sent when a device
gains its first live connection, device.offline when it loses its last.
"""

import enum
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from clipsync.exceptions import AuthError, ClipSyncError
from clipsync.realtime.broadcaster import FanoutBroadcaster
from clipsync.realtime.channels import Channel
from clipsync.realtime.presence import Connection, PresenceRegistry
from clipsync.schemas.events import DeviceOffline, DeviceOnline, SessionReady
from clipsync.services.identity import Identity, IdentityService

logger = logging.getLogger(__name__)

LiveHook = Callable[[Connection], Awaitable[object]]

# Application close codes (4000-4999 are free for application use)
CLOSE_AUTH_FAILED = 4401
CLOSE_SESSION_REVOKED = 4403
CLOSE_GOING_AWAY = 1001


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    LIVE = "live"
    CLOSED = "closed"


class GatewaySession:
    """State machine of one realtime connection."""

    def __init__(self, gateway: "ConnectionGateway", channel: Channel):
        self._gateway = gateway
        self.channel = channel
        self.state = SessionState.CONNECTING
        self.identity: Optional[Identity] = None
        self.connection: Optional[Connection] = None

    @property
    def connection_id(self) -> Optional[str]:
        return self.connection.connection_id if self.connection else None

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """
        Resolve the credential into (user, device).

        Raises:
            AuthError: The credential was refused. The channel is closed with
                       4401 and the session is CLOSED.
        """
        if self.state is not SessionState.CONNECTING:
            raise RuntimeError(f"Cannot authenticate a session in state {self.state.value}")
        try:
            if not credential:
                raise AuthError("Missing credential")
            identity = await self._gateway.identity.resolve(credential)
        except AuthError as e:
            self.state = SessionState.CLOSED
            logger.info("Realtime handshake refused: %s", e.message)
            await self.channel.close(code=CLOSE_AUTH_FAILED, reason=e.message)
            raise

        self.identity = identity
        self.state = SessionState.AUTHENTICATED
        return identity

    async def go_live(self) -> Connection:
        """
        Register with presence and announce the connection.

        Order: register → session.ready to this connection → device.online to
        the user's other connections (first connection of the device only) →
        on_live hooks (catch-up). A failing hook is logged; the session stays live.
        """
        if self.state is not SessionState.AUTHENTICATED or self.identity is None:
            raise RuntimeError(f"Cannot go live from state {self.state.value}")

        gateway = self._gateway
        user_id, device_id = self.identity.user_id, self.identity.device_id
        first_for_device = not gateway.registry.is_device_live(user_id, device_id)

        connection_id = gateway.registry.register(user_id, device_id, self.channel)
        self.connection = gateway.registry.get(connection_id)
        gateway._sessions[connection_id] = self
        self.state = SessionState.LIVE
        logger.info(
            "Connection %s live (user=%s, device=%s)", connection_id, user_id, device_id
        )

        await gateway.broadcaster.deliver(
            self.connection,
            SessionReady(connection_id=connection_id, device_id=device_id),
        )
        if first_for_device:
            await gateway.broadcaster.notify(
                user_id, DeviceOnline(device_id=device_id), excluding_connection_id=connection_id
            )

        for hook in gateway.on_live:
            try:
                await hook(self.connection)
            except ClipSyncError as e:
                logger.warning(
                    "on_live hook failed for connection %s: %s", connection_id, e.message
                )
        return self.connection

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Move to CLOSED. Only the first call has any effect."""
        if self.state is SessionState.CLOSED:
            return
        was_live = self.state is SessionState.LIVE
        self.state = SessionState.CLOSED

        gateway = self._gateway
        if self.connection is not None:
            gateway.registry.unregister(self.connection.connection_id)
            gateway._sessions.pop(self.connection.connection_id, None)

        await self.channel.close(code=code, reason=reason)

        if not was_live or self.identity is None:
            return
        logger.info("Connection %s closed (code=%d)", self.connection_id, code)
        user_id, device_id = self.identity.user_id, self.identity.device_id
        if not gateway.closing and not gateway.registry.is_device_live(user_id, device_id):
            await gateway.broadcaster.notify(user_id, DeviceOffline(device_id=device_id))


class ConnectionGateway:
    """Factory and index of GatewaySessions."""

    def __init__(
        self,
        identity: IdentityService,
        registry: PresenceRegistry,
        broadcaster: FanoutBroadcaster,
        on_live: Sequence[LiveHook] = (),
    ):
        self.identity = identity
        self.registry = registry
        self.broadcaster = broadcaster
        self.on_live: List[LiveHook] = list(on_live)
        self.closing = False
        self._sessions: Dict[str, GatewaySession] = {}

    def open_session(self, channel: Channel) -> GatewaySession:
        return GatewaySession(self, channel)

    def session(self, connection_id: str) -> Optional[GatewaySession]:
        return self._sessions.get(connection_id)

    async def evict_device(self, user_id: uuid.UUID, device_id: uuid.UUID) -> int:
        """Force-close every live connection of one device (after logout). Returns the count."""
        evicted = 0
        for connection in self.registry.live_connections(user_id):
            if connection.device_id != device_id:
                continue
            session = self._sessions.get(connection.connection_id)
            if session is None:
                continue
            await session.close(code=CLOSE_SESSION_REVOKED, reason="Session revoked")
            evicted += 1
        if evicted:
            logger.info("Evicted %d connection(s) of device %s", evicted, device_id)
        return evicted

    async def shutdown(self) -> None:
        """Close every session. No device.offline events are sent during shutdown."""
        self.closing = True
        sessions = list(self._sessions.values())
        for session in sessions:
            await session.close(code=CLOSE_GOING_AWAY, reason="Server shutting down")
        if sessions:
            logger.info("Closed %d realtime session(s) on shutdown", len(sessions))
