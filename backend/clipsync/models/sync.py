"""
ClipSync Backend — Sync Record SQLAlchemy Model
================================================

What:  ORM model for the `sync_records` table: the durable delivery
       obligation of one clipboard item towards one target device.
Who:   Written only through SyncLedger (which the pipeline drives).

Invariants:
    - Exactly one row per (clipboard_id, target_device_id), enforced by
      uq_sync_records_clipboard_device.
    - status moves pending → synced | failed | skipped and never back.
      SyncLedger implements every transition as a single conditional UPDATE
      (... WHERE status = 'pending'), so concurrent transitions race safely:
      the first one wins, the rest update zero rows.
    - synced_at is written together with the move into `synced`, once.

    Index on (target_device_id, status):
        Serves pending_for(device), the catch-up query run on every reconnect.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from clipsync.database import Base, utcnow


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.PENDING


class SyncRecord(Base):
    """Delivery obligation of one clipboard item to one target device."""

    __tablename__ = "sync_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    clipboard_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clipboards.id", ondelete="CASCADE"),
        nullable=False,
    )

    target_device_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SyncStatus.PENDING.value,
        comment="pending, synced, failed, skipped",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the obligation was created; age for the stale sweeper",
    )

    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set exactly once, on the transition into synced",
    )

    __table_args__ = (
        UniqueConstraint(
            "clipboard_id", "target_device_id", name="uq_sync_records_clipboard_device"
        ),
        Index("idx_sync_records_target_status", "target_device_id", "status"),
        CheckConstraint(
            "status IN ('pending', 'synced', 'failed', 'skipped')",
            name="ck_sync_records_status",
        ),
    )

    @property
    def sync_status(self) -> SyncStatus:
        return SyncStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<SyncRecord(clipboard_id={self.clipboard_id}, "
            f"target={self.target_device_id}, status='{self.status}')>"
        )
