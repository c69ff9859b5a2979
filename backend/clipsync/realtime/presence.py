"""
ClipSync Backend — Presence Registry
=====================================

What:  In-memory map of which devices of which user hold a live connection.
How:   userId → {connectionId → Connection}, insertion ordered, guarded by a
       threading.Lock. Every read returns a snapshot tuple, so callers iterate
       and send without holding the lock.
Who:   Owned by SyncCore; written by the Connection Gateway, read by the
       Fan-out Broadcaster and the presence route.

Presence is process-local and never persisted. A restart empties it; clients
reconnect and catch up from the Sync Ledger.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from clipsync.realtime.channels import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connection:
    """One live realtime connection of one device."""

    connection_id: str
    user_id: uuid.UUID
    device_id: uuid.UUID
    channel: Channel = field(compare=False, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.channel.closed


class PresenceRegistry:
    """
    Thread-safe registry of live connections.

    A device may hold several connections at once (browser tabs, a desktop
    app and its tray helper); each is a separate delivery target.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[uuid.UUID, Dict[str, Connection]] = {}
        self._by_id: Dict[str, Connection] = {}

    def register(self, user_id: uuid.UUID, device_id: uuid.UUID, channel: Channel) -> str:
        """Add a connection and return its new connection id."""
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            user_id=user_id,
            device_id=device_id,
            channel=channel,
        )
        with self._lock:
            self._by_user.setdefault(user_id, {})[connection.connection_id] = connection
            self._by_id[connection.connection_id] = connection
        logger.debug(
            "Registered connection %s (user=%s, device=%s)",
            connection.connection_id, user_id, device_id,
        )
        return connection.connection_id

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection. Returns it, or None if it was not registered."""
        with self._lock:
            connection = self._by_id.pop(connection_id, None)
            if connection is None:
                return None
            user_connections = self._by_user.get(connection.user_id)
            if user_connections is not None:
                user_connections.pop(connection_id, None)
                if not user_connections:
                    del self._by_user[connection.user_id]
        logger.debug("Unregistered connection %s", connection_id)
        return connection

    def live_connections(
        self,
        user_id: uuid.UUID,
        excluding_device_id: Optional[uuid.UUID] = None,
    ) -> Tuple[Connection, ...]:
        """Snapshot of the user's connections in connect order, optionally minus one device."""
        with self._lock:
            connections = tuple(self._by_user.get(user_id, {}).values())
        if excluding_device_id is None:
            return connections
        return tuple(c for c in connections if c.device_id != excluding_device_id)

    def is_device_live(self, user_id: uuid.UUID, device_id: uuid.UUID) -> bool:
        return any(c.device_id == device_id for c in self.live_connections(user_id))

    def live_devices(self, user_id: uuid.UUID) -> Set[uuid.UUID]:
        return {c.device_id for c in self.live_connections(user_id)}

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._by_id.get(connection_id)

    def connections(self) -> Tuple[Connection, ...]:
        """Every registered connection of every user."""
        with self._lock:
            return tuple(self._by_id.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
