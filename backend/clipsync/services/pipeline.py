"""
ClipSync Backend — Clipboard Event Pipeline
============================================

What:  Drives one clipboard push from receipt to per-device outcome, and
       replays the backlog of a reconnecting device.
How:   Composes ClipboardStore, SyncLedger and FanoutBroadcaster.

Publish flow:
    ┌──────────┐   ┌───────────┐   ┌──────────────┐   ┌────────────┐   ┌───────────┐
    │ Received │──▶│ Persisted │──▶│ Ledger rows  │──▶│ Broadcast  │──▶│ Reconcile │
    │ validate │   │ store     │   │ pending for  │   │ live subset│   │ synced for│
    │          │   │ .create() │   │ every target │   │ of targets │   │ delivered │
    └──────────┘   └───────────┘   └──────────────┘   └────────────┘   └───────────┘

    On failure:
    - validation → ValidationError, nothing stored
    - store      → PersistenceError, no ledger rows
    - ledger     → item deleted again, PersistenceError
    - delivery   → never an error: the target stays pending for catch-up

Pending rows are committed before the broadcast starts, so a device that
receives an item always has a record that can move to synced.

Catch-up (reconcile):
    Run when a connection goes live and on `sync.request`. The device's
    pending items are sent over that connection oldest first; each confirmed
    delivery is marked synced. The first failed delivery stops the replay and
    leaves the remaining records pending.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional, Union
from urllib.parse import urlparse

from pydantic import ValidationError as PydanticValidationError

from clipsync.config import Settings, settings as default_settings
from clipsync.database import utcnow
from clipsync.exceptions import PersistenceError, ValidationError
from clipsync.models.clipboard import ClipboardItem, ContentType
from clipsync.models.sync import SyncStatus
from clipsync.realtime.broadcaster import FanoutBroadcaster, delivered_devices
from clipsync.realtime.presence import Connection
from clipsync.schemas.clipboard import (
    ClipboardItemResponse,
    ClipboardPush,
    DeliveryReport,
    PublishResponse,
)
from clipsync.schemas.events import ClipboardNew
from clipsync.services.clipboard_store import ClipboardStore
from clipsync.services.sync_ledger import PendingSync, SyncLedger

logger = logging.getLogger(__name__)

ALLOWED_URL_SCHEMES = {"http", "https", "ftp"}


@dataclass
class PublishResult:
    item: ClipboardItem
    deliveries: List[DeliveryReport] = field(default_factory=list)

    def to_response(self) -> PublishResponse:
        return PublishResponse(
            clipboard=ClipboardItemResponse.model_validate(self.item),
            deliveries=self.deliveries,
        )


class ClipboardPipeline:
    """
    Orchestrates store, ledger and broadcaster for every clipboard event.

    Stateless apart from its collaborators; safe to share across all
    connections and requests.
    """

    def __init__(
        self,
        store: ClipboardStore,
        ledger: SyncLedger,
        broadcaster: FanoutBroadcaster,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.settings = settings or default_settings

    # ── Received ──────────────────────────────────────────────────────────

    def validate(
        self,
        payload: Union[ClipboardPush, Mapping[str, Any]],
        origin_device_id: uuid.UUID,
    ) -> ClipboardPush:
        """
        Check a push before anything is stored.

        Raises:
            ValidationError: With `field` naming the offending wire field.
        """
        if isinstance(payload, ClipboardPush):
            push = payload
        else:
            try:
                push = ClipboardPush.model_validate(payload)
            except PydanticValidationError as e:
                first = e.errors()[0]
                location = ".".join(str(part) for part in first.get("loc", ()))
                raise ValidationError(
                    f"Invalid clipboard push: {first.get('msg', 'malformed payload')}",
                    field=location or None,
                ) from e

        if push.origin_device_id is not None and push.origin_device_id != origin_device_id:
            raise ValidationError(
                "originDeviceId does not match the authenticated device",
                field="originDeviceId",
            )

        content = push.payload_ref or ""
        if push.content_type.requires_payload and not content.strip():
            raise ValidationError(
                f"A {push.content_type.value} clipboard item needs a non-empty payload",
                field="payloadRef",
            )

        if push.content_type is ContentType.URL:
            parsed = urlparse(content.strip())
            if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
                raise ValidationError(
                    "payloadRef is not a valid http(s) or ftp URL",
                    field="payloadRef",
                )

        size = len(content.encode("utf-8"))
        if size > self.settings.max_payload_size:
            raise ValidationError(
                f"Payload is {size} bytes; the limit is {self.settings.max_payload_size} bytes",
                field="payloadRef",
                context={"size": size, "limit": self.settings.max_payload_size},
            )
        return push

    def _expiry_for(self, push: ClipboardPush, now: datetime) -> Optional[datetime]:
        ttl = push.expires_in or self.settings.clipboard_default_ttl_seconds
        return now + timedelta(seconds=ttl) if ttl else None

    # ── Publish ───────────────────────────────────────────────────────────

    async def publish(
        self,
        user_id: uuid.UUID,
        origin_device_id: uuid.UUID,
        payload: Union[ClipboardPush, Mapping[str, Any]],
    ) -> PublishResult:
        """
        Store a push, record it for every other device, and fan it out.

        Returns:
            PublishResult with one DeliveryReport per target device, in a
            stable order (by device id).

        Raises:
            ValidationError:  Rejected before any side effect.
            PersistenceError: Store or ledger write failed; nothing is left behind.
        """
        push = self.validate(payload, origin_device_id)

        # ── Persisted ─────────────────────────────────────────────────────
        item = await self.store.create(
            user_id=user_id,
            origin_device_id=origin_device_id,
            content_type=push.content_type,
            payload_ref=push.payload_ref,
            file_name=push.file_name,
            file_size=push.file_size,
            expire_at=self._expiry_for(push, utcnow()),
        )

        # ── Ledger rows, committed before anything is sent ────────────────
        try:
            known = await self.store.list_devices_for_user(user_id)
            targets = sorted(known - {origin_device_id}, key=str)
            await self.ledger.create_pending_for(item.id, targets)
        except PersistenceError:
            await self._discard(item)
            raise

        # ── Fanned-out ────────────────────────────────────────────────────
        outcomes = await self.broadcaster.broadcast(
            user_id, origin_device_id, ClipboardNew.from_item(item)
        )
        delivered = delivered_devices(outcomes)

        reports = []
        for device_id in targets:
            status = SyncStatus.PENDING
            if device_id in delivered:
                status = await self._confirm(item.id, device_id)
            reports.append(
                DeliveryReport(
                    device_id=device_id,
                    delivered=device_id in delivered,
                    status=status,
                )
            )

        logger.info(
            "Published clipboard %s from device %s: %d target(s), %d delivered live",
            item.id, origin_device_id, len(targets),
            sum(1 for r in reports if r.delivered),
        )
        return PublishResult(item=item, deliveries=reports)

    async def _confirm(self, clipboard_id: uuid.UUID, device_id: uuid.UUID) -> SyncStatus:
        """Mark a delivered target synced and return the record's resulting status."""
        try:
            if await self.ledger.mark_synced(clipboard_id, device_id):
                return SyncStatus.SYNCED
            record = await self.ledger.get(clipboard_id, device_id)
        except PersistenceError:
            logger.warning(
                "Delivered clipboard %s to device %s but could not mark it synced; "
                "it stays pending and will be replayed",
                clipboard_id, device_id,
            )
            return SyncStatus.PENDING
        return record.sync_status if record else SyncStatus.PENDING

    async def _discard(self, item: ClipboardItem) -> None:
        try:
            await self.store.delete(item.id)
        except PersistenceError:
            logger.error(
                "Could not remove clipboard %s after a failed ledger write", item.id
            )

    # ── Reconciled ────────────────────────────────────────────────────────

    async def reconcile(self, connection: Connection) -> int:
        """
        Replay the device's backlog over one connection.

        Returns:
            Number of items delivered and marked synced.
        """
        backlog = await self.ledger.pending_for(
            connection.device_id, limit=self.settings.catchup_batch_limit
        )
        if not backlog:
            return 0

        replayed = 0
        for index, entry in enumerate(backlog):
            event = ClipboardNew.from_item(entry.item, replay=True)
            if not await self.broadcaster.deliver(connection, event):
                logger.info(
                    "Catch-up for device %s stopped at clipboard %s; %d item(s) left pending",
                    connection.device_id, entry.item.id, len(backlog) - index,
                )
                break
            try:
                await self.ledger.mark_synced(entry.item.id, connection.device_id)
            except PersistenceError:
                logger.warning(
                    "Replayed clipboard %s to device %s but could not mark it synced",
                    entry.item.id, connection.device_id,
                )
                continue
            replayed += 1

        logger.info(
            "Catch-up for device %s on connection %s: %d/%d replayed",
            connection.device_id, connection.connection_id, replayed, len(backlog),
        )
        return replayed

    # ── Explicit client decisions ─────────────────────────────────────────

    async def acknowledge(self, device_id: uuid.UUID, clipboard_id: uuid.UUID) -> bool:
        """The client confirms it applied the item."""
        return await self.ledger.mark_synced(clipboard_id, device_id)

    async def skip(self, device_id: uuid.UUID, clipboard_id: uuid.UUID) -> bool:
        """The client declines the item (e.g. a content type it cannot show)."""
        return await self.ledger.mark_skipped(clipboard_id, device_id)

    async def backlog(self, device_id: uuid.UUID) -> List[PendingSync]:
        return await self.ledger.pending_for(device_id, limit=self.settings.catchup_batch_limit)
