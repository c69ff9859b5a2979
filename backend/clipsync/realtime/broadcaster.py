"""
ClipSync Backend — Fan-out Broadcaster
=======================================

What:  Delivers one realtime event to every other live connection of a user
       and reports a per-connection outcome.
How:   Snapshot targets from the Presence Registry, then send to all of them
       concurrently with asyncio.gather. Every send is bounded by
       ws_send_timeout and isolated: one failing or slow target never affects
       the others.
Who:   The Clipboard Event Pipeline (live fan-out and catch-up), the
       Connection Gateway (presence notifications) and the dispatcher
       (direct replies).

The broadcaster never writes the Sync Ledger. It only reports who received
the event; the pipeline decides what that means for the sync records.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from clipsync.exceptions import DeliveryError
from clipsync.realtime.presence import Connection, PresenceRegistry
from clipsync.schemas.events import RealtimeEvent

logger = logging.getLogger(__name__)

Message = Union[RealtimeEvent, Dict[str, Any]]


@dataclass(frozen=True)
class DeliveryOutcome:
    connection_id: str
    device_id: uuid.UUID
    delivered: bool


def delivered_devices(outcomes: Iterable[DeliveryOutcome]) -> Set[uuid.UUID]:
    """Devices with at least one connection that received the event."""
    return {o.device_id for o in outcomes if o.delivered}


def _render(event: Message) -> Dict[str, Any]:
    if isinstance(event, RealtimeEvent):
        return event.envelope()
    return event


class FanoutBroadcaster:
    """
    At-most-one delivery attempt per connection per call.

    A target counts as delivered only if its channel accepted the message and
    was still open once the send returned. A connection that closes while
    the send is in flight is reported as not delivered, which keeps its sync
    record pending for catch-up.
    """

    def __init__(self, registry: PresenceRegistry, send_timeout: float = 5.0):
        self.registry = registry
        self.send_timeout = send_timeout

    async def broadcast(
        self,
        user_id: uuid.UUID,
        origin_device_id: uuid.UUID,
        event: Message,
    ) -> List[DeliveryOutcome]:
        """Send `event` to all live connections of `user_id` except the origin device's."""
        targets = self.registry.live_connections(user_id, excluding_device_id=origin_device_id)
        if not targets:
            return []

        message = _render(event)
        results = await asyncio.gather(*(self._send(c, message) for c in targets))
        outcomes = [
            DeliveryOutcome(connection_id=c.connection_id, device_id=c.device_id, delivered=ok)
            for c, ok in zip(targets, results)
        ]
        logger.info(
            "Broadcast %s for user %s: %d/%d connections delivered",
            message.get("event"), user_id,
            sum(1 for o in outcomes if o.delivered), len(outcomes),
        )
        return outcomes

    async def deliver(self, connection: Connection, event: Message) -> bool:
        """Single-target send. Returns True if the connection received the event."""
        return await self._send(connection, _render(event))

    async def notify(
        self,
        user_id: uuid.UUID,
        event: Message,
        excluding_connection_id: Optional[str] = None,
    ) -> int:
        """Best-effort send to every live connection of the user; returns how many received it."""
        targets = [
            c for c in self.registry.live_connections(user_id)
            if c.connection_id != excluding_connection_id
        ]
        if not targets:
            return 0
        message = _render(event)
        results = await asyncio.gather(*(self._send(c, message) for c in targets))
        return sum(1 for ok in results if ok)

    async def _send(self, connection: Connection, message: Dict[str, Any]) -> bool:
        if not connection.is_open:
            return False
        try:
            await asyncio.wait_for(connection.channel.send(message), timeout=self.send_timeout)
        except DeliveryError as e:
            logger.info(
                "Delivery to connection %s failed: %s", connection.connection_id, e.message
            )
            return False
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery to connection %s timed out after %.1fs",
                connection.connection_id, self.send_timeout,
            )
            return False
        except Exception as e:
            logger.error(
                "Unexpected error delivering to connection %s: %s",
                connection.connection_id, str(e),
                exc_info=True,
            )
            return False
        return connection.is_open
