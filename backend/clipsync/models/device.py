"""
ClipSync Backend — Device and Session SQLAlchemy Models
========================================================

What:  ORM models for the `devices` and `device_sessions` tables.
Who:   Device rows are read by ClipboardStore.list_devices_for_user() (the set
       of sync targets) and written by ClipboardStore.register_device().
       DeviceSession rows back SessionIdentityService.

Table Design:
    devices
        - device_identifier is unique across all users: a physical install
          (app instance, browser profile) registers exactly once.
        - is_active=False removes a device from every future fan-out without
          deleting its history.
    device_sessions
        - token_hash is sha256(token); the raw credential is never stored.
        - revoked_at is set on logout; expired and revoked rows are refused
          by the identity service but kept for auditing.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from clipsync.database import Base, utcnow


class DeviceType(str, enum.Enum):
    """Closed set of device platforms accepted at registration."""

    ANDROID = "android"
    IOS = "ios"
    WEB = "web"
    DESKTOP = "desktop"


class Device(Base):
    """
    A client installation belonging to one user.

    Lifecycle:
        1. Registered (or re-activated) when the user signs in on it
        2. last_active bumped whenever one of its credentials is resolved
        3. Deactivated, never deleted, when the user removes it
    """

    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique device identifier",
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="Owning user (users live in the external identity system)",
    )

    device_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Human readable name shown on the user's other devices",
    )

    device_identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Client-generated stable install identifier",
    )

    device_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=DeviceType.ANDROID.value,
        comment="Platform: android, ios, web, desktop",
    )

    last_active: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time a credential for this device was resolved (UTC)",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive devices receive no sync records",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the device was registered (UTC)",
    )

    __table_args__ = (
        Index("idx_devices_user_id", "user_id"),
        CheckConstraint(
            "device_type IN ('android', 'ios', 'web', 'desktop')",
            name="ck_devices_device_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Device(id={self.id}, user_id={self.user_id}, "
            f"type='{self.device_type}', active={self.is_active})>"
        )


class DeviceSession(Base):
    """An issued credential for one (user, device) pair."""

    __tablename__ = "device_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="sha256 hex digest of the bearer credential",
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    device_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set on logout; a revoked credential never resolves again",
    )

    __table_args__ = (
        Index("idx_device_sessions_user_device", "user_id", "device_id"),
    )

    def __repr__(self) -> str:
        return f"<DeviceSession(id={self.id}, device_id={self.device_id})>"
