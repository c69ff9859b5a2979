"""
ClipSync Backend — Clipboard Store
===================================

What:  Durable storage of clipboard item metadata and of the user's devices.
How:   One short transaction per call through the injected session factory.
       SQLAlchemy errors are wrapped into PersistenceError at this boundary;
       the client never sees driver messages.
Who:   The Clipboard Event Pipeline (create, compensating delete, target
       devices) and the clipboard routes (get, history).

Expiry:
    Items whose expire_at has passed are invisible to get() and
    list_for_user(). Nothing here deletes them; a periodic purge is an
    operational concern outside the service.

Creation is never retried here: a retried INSERT after an ambiguous failure
could duplicate an item. Retrying a failed push is the caller's decision.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Set, Tuple

from sqlalchemy import and_, delete, desc, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipsync.database import as_utc, utcnow
from clipsync.exceptions import NotFoundError, PersistenceError, ValidationError
from clipsync.models.clipboard import ClipboardItem, ContentType
from clipsync.models.device import Device, DeviceType

logger = logging.getLogger(__name__)


def not_expired(now: datetime):
    """SQL filter: the item has no expiry or expires after `now`."""
    return or_(ClipboardItem.expire_at.is_(None), ClipboardItem.expire_at > now)


def _make_cursor(item: ClipboardItem) -> str:
    return f"{as_utc(item.created_at).isoformat()},{item.id}"


def _parse_cursor(cursor: str) -> Tuple[datetime, uuid.UUID]:
    created_at, _, item_id = cursor.partition(",")
    try:
        return datetime.fromisoformat(created_at), uuid.UUID(item_id)
    except ValueError:
        raise ValidationError("Invalid pagination cursor", field="cursor")


class ClipboardStore:
    """Clipboard items and device list of each user."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Clipboard items ───────────────────────────────────────────────────

    async def create(
        self,
        user_id: uuid.UUID,
        origin_device_id: uuid.UUID,
        content_type: ContentType,
        payload_ref: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        expire_at: Optional[datetime] = None,
    ) -> ClipboardItem:
        """
        Persist a new clipboard item.

        Raises:
            PersistenceError: The row could not be written. Nothing was stored.
        """
        item = ClipboardItem(
            id=uuid.uuid4(),
            user_id=user_id,
            origin_device_id=origin_device_id,
            content_type=ContentType(content_type).value,
            payload_ref=payload_ref,
            file_name=file_name,
            file_size=file_size,
            created_at=utcnow(),
            expire_at=expire_at,
        )
        try:
            async with self.session_factory() as db:
                db.add(item)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to store clipboard item for user %s: %s", user_id, str(e)
            )
            raise PersistenceError(
                context={"operation": "create_clipboard", "user_id": str(user_id)}
            ) from e

        logger.info(
            "Stored clipboard %s (type=%s, origin=%s)",
            item.id, item.content_type, origin_device_id,
        )
        return item

    async def get(
        self, clipboard_id: uuid.UUID, user_id: Optional[uuid.UUID] = None
    ) -> ClipboardItem:
        """
        Fetch one visible item, optionally scoped to its owner.

        Raises:
            NotFoundError: Unknown, expired, or owned by another user.
        """
        query = select(ClipboardItem).where(
            ClipboardItem.id == clipboard_id, not_expired(utcnow())
        )
        if user_id is not None:
            query = query.where(ClipboardItem.user_id == user_id)
        try:
            async with self.session_factory() as db:
                item = (await db.execute(query)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to load clipboard %s: %s", clipboard_id, str(e))
            raise PersistenceError(context={"operation": "get_clipboard"}) from e

        if item is None:
            raise NotFoundError("clipboard item", str(clipboard_id))
        return item

    async def delete(self, clipboard_id: uuid.UUID) -> bool:
        """Remove an item (and, by cascade, its sync records). Used to undo a failed push."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    delete(ClipboardItem).where(ClipboardItem.id == clipboard_id)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete clipboard %s: %s", clipboard_id, str(e))
            raise PersistenceError(context={"operation": "delete_clipboard"}) from e
        return result.rowcount > 0

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ClipboardItem], Optional[str], bool]:
        """
        Visible items of the user, newest first, cursor paginated.

        The cursor is "<ISO created_at>,<id>" of the last item of the
        previous page; the id breaks ties between items created in the same
        instant. An unparseable cursor is rejected rather than ignored.

        Returns:
            (items, next_cursor, has_more)
        """
        query = select(ClipboardItem).where(
            ClipboardItem.user_id == user_id, not_expired(utcnow())
        )
        if cursor:
            cursor_dt, cursor_id = _parse_cursor(cursor)
            query = query.where(
                or_(
                    ClipboardItem.created_at < cursor_dt,
                    and_(ClipboardItem.created_at == cursor_dt, ClipboardItem.id < cursor_id),
                )
            )

        # One extra row tells us whether another page exists
        query = query.order_by(
            desc(ClipboardItem.created_at), desc(ClipboardItem.id)
        ).limit(limit + 1)
        try:
            async with self.session_factory() as db:
                rows = list((await db.execute(query)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list clipboard of user %s: %s", user_id, str(e))
            raise PersistenceError(context={"operation": "list_clipboard"}) from e

        has_more = len(rows) > limit
        items = rows[:limit]
        next_cursor = _make_cursor(items[-1]) if has_more and items else None
        return items, next_cursor, has_more

    # ── Devices ───────────────────────────────────────────────────────────

    async def list_devices_for_user(self, user_id: uuid.UUID) -> Set[uuid.UUID]:
        """Ids of the user's active devices, i.e. every possible sync target."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Device.id).where(Device.user_id == user_id, Device.is_active.is_(True))
                )
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list devices of user %s: %s", user_id, str(e))
            raise PersistenceError(context={"operation": "list_devices"}) from e

    async def register_device(
        self,
        user_id: uuid.UUID,
        device_identifier: str,
        device_name: str,
        device_type: DeviceType = DeviceType.WEB,
    ) -> Device:
        """
        Register a device, or re-activate and rename it if the identifier is known.

        Raises:
            ValidationError: The identifier is already registered to another user.
        """
        try:
            async with self.session_factory() as db:
                device = (
                    await db.execute(
                        select(Device).where(Device.device_identifier == device_identifier)
                    )
                ).scalar_one_or_none()

                if device is not None and device.user_id != user_id:
                    raise ValidationError(
                        "Device identifier is registered to another account",
                        field="deviceIdentifier",
                    )
                if device is None:
                    device = Device(
                        id=uuid.uuid4(),
                        user_id=user_id,
                        device_identifier=device_identifier,
                        created_at=utcnow(),
                    )
                    db.add(device)
                device.device_name = device_name
                device.device_type = DeviceType(device_type).value
                device.is_active = True
                device.last_active = utcnow()
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to register device %s: %s", device_identifier, str(e))
            raise PersistenceError(context={"operation": "register_device"}) from e

        logger.info("Registered device %s for user %s", device.id, user_id)
        return device
