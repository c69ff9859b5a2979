"""
ClipSync Backend — Clipboard Item SQLAlchemy Model
===================================================

What:  ORM model for the `clipboards` table: one row per pushed clipboard
       snapshot.
Who:   Written only by ClipboardStore.create(); read by the store and joined
       by SyncLedger.pending_for().

Table Design Rationale:
    - payload_ref holds the text itself for text/url items and a reference
      (storage key, URL) for image/file items. File bytes never live here.
    - expire_at is optional. Expired rows are filtered out of every read
      rather than deleted eagerly.
    - Rows are immutable after insert; there is no updated_at column.

    Index on (user_id, created_at):
        Serves the "recent clipboard history" listing.
    Index on expire_at:
        Serves the expiry filter applied to every read.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from clipsync.database import Base, utcnow


class ContentType(str, enum.Enum):
    """
    Closed set of clipboard content kinds.

    Adding a kind is a code change here (and in the check constraint), never
    a silently accepted string.
    """

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    URL = "url"

    @property
    def requires_payload(self) -> bool:
        """text and url items carry their content inline and may not be empty."""
        return self in (ContentType.TEXT, ContentType.URL)


class ClipboardItem(Base):
    """
    A clipboard snapshot pushed from one device.

    Visibility:
        Visible while expire_at is NULL or in the future. Every store and
        ledger query applies this filter.
    """

    __tablename__ = "clipboards"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Clipboard id; also the client-side idempotency key",
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    origin_device_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="Device the snapshot was copied on; never a sync target",
    )

    content_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="text, image, file or url",
    )

    payload_ref: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Inline text/url, or a reference for image/file content",
    )

    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    file_size: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Size in bytes of the referenced file, if any",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the snapshot was pushed (UTC); catch-up order",
    )

    expire_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="After this instant the item is invisible to every read",
    )

    __table_args__ = (
        Index("idx_clipboards_user_created", "user_id", "created_at"),
        Index("idx_clipboards_expire_at", "expire_at"),
        CheckConstraint(
            "content_type IN ('text', 'image', 'file', 'url')",
            name="ck_clipboards_content_type",
        ),
        CheckConstraint("file_size IS NULL OR file_size >= 0", name="ck_clipboards_file_size"),
    )

    def __repr__(self) -> str:
        return (
            f"<ClipboardItem(id={self.id}, type='{self.content_type}', "
            f"origin={self.origin_device_id})>"
        )
