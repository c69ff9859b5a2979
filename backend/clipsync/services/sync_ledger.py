"""
ClipSync Backend — Sync Ledger
===============================

What:  Durable per-(clipboard item, target device) delivery state.
How:   Every write is one transaction, retried with tenacity on transient
       database errors, and every write is idempotent so retrying is safe:

           create_pending_for   INSERT ... ON CONFLICT DO NOTHING
           mark_synced          UPDATE ... SET status='synced', synced_at=now
                                WHERE status='pending'
           mark_failed          UPDATE ... SET status='failed'  WHERE status='pending'
           mark_skipped         UPDATE ... SET status='skipped' WHERE status='pending'

       The conditional UPDATE is the compare-and-set that keeps transitions
       monotonic: whichever transition commits first wins, later ones match
       zero rows and report False.
Who:   Only the Clipboard Event Pipeline writes; routes read through it.

Retry policy (settings.ledger_retry_*):
    OperationalError / InterfaceError → up to N attempts, exponential backoff
    with jitter. Anything else, or the last failure, becomes PersistenceError.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import asc, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from clipsync.config import Settings, settings as default_settings
from clipsync.database import utcnow
from clipsync.exceptions import PersistenceError
from clipsync.models.clipboard import ClipboardItem
from clipsync.models.sync import SyncRecord, SyncStatus
from clipsync.services.clipboard_store import not_expired

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class PendingSync:
    """A pending sync record together with the clipboard item it delivers."""

    record: SyncRecord
    item: ClipboardItem


class SyncLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings

    # ── Writes ────────────────────────────────────────────────────────────

    async def create_pending_for(
        self, clipboard_id: uuid.UUID, target_device_ids: Iterable[uuid.UUID]
    ) -> int:
        """
        Create one pending record per target in a single transaction.

        Existing (clipboard, device) pairs are left untouched, whatever their
        status. Returns the number of rows actually inserted.
        """
        targets = list(dict.fromkeys(target_device_ids))
        if not targets:
            return 0

        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "clipboard_id": clipboard_id,
                "target_device_id": device_id,
                "status": SyncStatus.PENDING.value,
                "created_at": now,
            }
            for device_id in targets
        ]

        async def work(db: AsyncSession) -> int:
            dialect = db.get_bind().dialect.name
            insert = _INSERTS.get(dialect)
            if insert is None:
                raise PersistenceError(
                    message="Unsupported database backend",
                    context={"dialect": dialect},
                )
            stmt = (
                insert(SyncRecord)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["clipboard_id", "target_device_id"])
            )
            result = await db.execute(stmt)
            return result.rowcount

        inserted = await self._run("create_pending_for", work, clipboard_id=str(clipboard_id))
        logger.debug(
            "Pending records for clipboard %s: %d target(s), %d new",
            clipboard_id, len(targets), inserted,
        )
        return inserted

    async def mark_synced(self, clipboard_id: uuid.UUID, target_device_id: uuid.UUID) -> bool:
        """pending → synced, stamping synced_at. False if the record was not pending."""
        return await self._transition(
            clipboard_id, target_device_id, SyncStatus.SYNCED, synced_at=utcnow()
        )

    async def mark_failed(self, clipboard_id: uuid.UUID, target_device_id: uuid.UUID) -> bool:
        return await self._transition(clipboard_id, target_device_id, SyncStatus.FAILED)

    async def mark_skipped(self, clipboard_id: uuid.UUID, target_device_id: uuid.UUID) -> bool:
        return await self._transition(clipboard_id, target_device_id, SyncStatus.SKIPPED)

    async def fail_stale_pending(self, older_than: datetime) -> int:
        """Move every record still pending since before `older_than` to failed."""

        async def work(db: AsyncSession) -> int:
            result = await db.execute(
                update(SyncRecord)
                .where(
                    SyncRecord.status == SyncStatus.PENDING.value,
                    SyncRecord.created_at < older_than,
                )
                .values(status=SyncStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        failed = await self._run("fail_stale_pending", work)
        if failed:
            logger.info("Marked %d stale pending record(s) as failed", failed)
        return failed

    # ── Reads ─────────────────────────────────────────────────────────────

    async def pending_for(
        self, target_device_id: uuid.UUID, limit: Optional[int] = None
    ) -> List[PendingSync]:
        """
        The device's backlog: pending records of visible items, oldest item first.

        Expired items are excluded in the query itself, never post-filtered.
        """

        async def work(db: AsyncSession) -> List[PendingSync]:
            query = (
                select(SyncRecord, ClipboardItem)
                .join(ClipboardItem, ClipboardItem.id == SyncRecord.clipboard_id)
                .where(
                    SyncRecord.target_device_id == target_device_id,
                    SyncRecord.status == SyncStatus.PENDING.value,
                    not_expired(utcnow()),
                )
                .order_by(asc(ClipboardItem.created_at), asc(ClipboardItem.id))
            )
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return [PendingSync(record=record, item=item) for record, item in result.all()]

        return await self._run("pending_for", work, device_id=str(target_device_id))

    async def get(
        self, clipboard_id: uuid.UUID, target_device_id: uuid.UUID
    ) -> Optional[SyncRecord]:
        async def work(db: AsyncSession) -> Optional[SyncRecord]:
            result = await db.execute(
                select(SyncRecord).where(
                    SyncRecord.clipboard_id == clipboard_id,
                    SyncRecord.target_device_id == target_device_id,
                )
            )
            return result.scalar_one_or_none()

        return await self._run("get", work)

    async def records_for(self, clipboard_id: uuid.UUID) -> List[SyncRecord]:
        """All records of one clipboard item, one per target device."""

        async def work(db: AsyncSession) -> List[SyncRecord]:
            result = await db.execute(
                select(SyncRecord)
                .where(SyncRecord.clipboard_id == clipboard_id)
                .order_by(asc(SyncRecord.created_at), asc(SyncRecord.target_device_id))
            )
            return list(result.scalars().all())

        return await self._run("records_for", work)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _transition(
        self,
        clipboard_id: uuid.UUID,
        target_device_id: uuid.UUID,
        status: SyncStatus,
        **values: Any,
    ) -> bool:
        async def work(db: AsyncSession) -> bool:
            result = await db.execute(
                update(SyncRecord)
                .where(
                    SyncRecord.clipboard_id == clipboard_id,
                    SyncRecord.target_device_id == target_device_id,
                    SyncRecord.status == SyncStatus.PENDING.value,
                )
                .values(status=status.value, **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        changed = await self._run(
            f"mark_{status.value}",
            work,
            clipboard_id=str(clipboard_id),
            device_id=str(target_device_id),
        )
        if changed:
            logger.debug("Sync %s → %s for device %s", clipboard_id, status.value, target_device_id)
        return changed

    def _backoff(self) -> wait_base:
        """min_wait * 2^n capped at max_wait, plus up to min_wait of jitter."""
        return wait_exponential(
            multiplier=self.settings.ledger_retry_min_wait,
            max=self.settings.ledger_retry_max_wait,
        ) + wait_random(0, self.settings.ledger_retry_min_wait)

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        **context: Any,
    ) -> T:
        """Run `work` in its own transaction, retrying transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((OperationalError, InterfaceError)),
            stop=stop_after_attempt(self.settings.ledger_retry_attempts),
            wait=self._backoff(),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self.session_factory() as db:
                        async with db.begin():
                            result = await work(db)
        except SQLAlchemyError as e:
            logger.error(
                "Sync ledger %s failed: %s | Context: %s", operation, str(e), context
            )
            raise PersistenceError(context={"operation": operation, **context}) from e
        return result
