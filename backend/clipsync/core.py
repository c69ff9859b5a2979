"""
ClipSync Backend — Sync Core Wiring
====================================

What:  Builds and owns every long-lived component of the sync core.
How:   SyncCore.build() constructs the object graph once; the app lifespan
       calls start() and shutdown(). Routes reach it through app.state.core.

Object graph:
    PresenceRegistry ◀── FanoutBroadcaster ◀── ClipboardPipeline ◀── RealtimeDispatcher
           ▲                    ▲                  │   │
           └──── ConnectionGateway ── on_live ─────┘   ├── ClipboardStore
                        │                              └── SyncLedger
                        └── SessionIdentityService

Presence is therefore an explicit object whose lifetime is the app's, not a
module global.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipsync.config import Settings
from clipsync.database import utcnow
from clipsync.exceptions import PersistenceError
from clipsync.realtime.broadcaster import FanoutBroadcaster
from clipsync.realtime.dispatcher import RealtimeDispatcher
from clipsync.realtime.gateway import ConnectionGateway
from clipsync.realtime.presence import PresenceRegistry
from clipsync.services.clipboard_store import ClipboardStore
from clipsync.services.identity import SessionIdentityService
from clipsync.services.pipeline import ClipboardPipeline
from clipsync.services.sync_ledger import SyncLedger

logger = logging.getLogger(__name__)


@dataclass
class SyncCore:
    settings: Settings
    registry: PresenceRegistry
    broadcaster: FanoutBroadcaster
    identity: SessionIdentityService
    store: ClipboardStore
    ledger: SyncLedger
    pipeline: ClipboardPipeline
    gateway: ConnectionGateway
    dispatcher: RealtimeDispatcher
    _sweeper: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "SyncCore":
        registry = PresenceRegistry()
        broadcaster = FanoutBroadcaster(registry, send_timeout=settings.ws_send_timeout)
        identity = SessionIdentityService(session_factory, ttl_seconds=settings.session_ttl_seconds)
        store = ClipboardStore(session_factory)
        ledger = SyncLedger(session_factory, settings)
        pipeline = ClipboardPipeline(store, ledger, broadcaster, settings)
        gateway = ConnectionGateway(
            identity, registry, broadcaster, on_live=[pipeline.reconcile]
        )
        dispatcher = RealtimeDispatcher(pipeline, broadcaster)
        return cls(
            settings=settings,
            registry=registry,
            broadcaster=broadcaster,
            identity=identity,
            store=store,
            ledger=ledger,
            pipeline=pipeline,
            gateway=gateway,
            dispatcher=dispatcher,
        )

    async def start(self) -> None:
        max_age = self.settings.sync_pending_max_age_seconds
        if max_age is None:
            return
        self._sweeper = asyncio.create_task(self._sweep_stale(max_age))
        logger.info(
            "Stale sync sweeper enabled: pending > %ds → failed, every %ds",
            max_age, self.settings.sync_sweep_interval_seconds,
        )

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.gateway.shutdown()

    async def _sweep_stale(self, max_age_seconds: int) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_sweep_interval_seconds)
            cutoff = utcnow() - timedelta(seconds=max_age_seconds)
            try:
                await self.ledger.fail_stale_pending(cutoff)
            except PersistenceError as e:
                logger.warning("Stale sync sweep failed: %s", e.message)
