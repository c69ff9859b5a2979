"""Create devices, sessions, clipboards and sync records

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Initial schema of the sync core: the user's devices and their bearer
       sessions, clipboard items, and the per-device sync ledger.
How:   PostgreSQL UUID primary keys, TIMESTAMP WITH TIME ZONE everywhere.
       Column docs live on the models in clipsync/models/.

Rollback: downgrade() drops all four tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── devices ───────────────────────────────────────────────────────────
    op.create_table(
        "devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("device_name", sa.String(100), nullable=False),
        sa.Column("device_identifier", sa.String(255), nullable=False,
                  comment="Client-generated stable install identifier"),
        sa.Column("device_type", sa.String(50), nullable=False,
                  server_default=sa.text("'android'")),
        sa.Column("last_active", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_identifier", name="uq_devices_device_identifier"),
        sa.CheckConstraint(
            "device_type IN ('android', 'ios', 'web', 'desktop')",
            name="ck_devices_device_type",
        ),
    )
    op.create_index("idx_devices_user_id", "devices", ["user_id"])

    # ── device_sessions ───────────────────────────────────────────────────
    op.create_table(
        "device_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("token_hash", sa.String(64), nullable=False,
                  comment="sha256 hex digest of the bearer credential"),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("revoked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash", name="uq_device_sessions_token_hash"),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "idx_device_sessions_user_device", "device_sessions", ["user_id", "device_id"]
    )

    # ── clipboards ────────────────────────────────────────────────────────
    op.create_table(
        "clipboards",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("origin_device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("content_type", sa.String(20), nullable=False),
        sa.Column("payload_ref", sa.Text(), nullable=True,
                  comment="Inline text/url, or a reference for image/file content"),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("expire_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "content_type IN ('text', 'image', 'file', 'url')",
            name="ck_clipboards_content_type",
        ),
        sa.CheckConstraint("file_size IS NULL OR file_size >= 0", name="ck_clipboards_file_size"),
    )
    op.create_index("idx_clipboards_user_created", "clipboards", ["user_id", "created_at"])
    op.create_index("idx_clipboards_expire_at", "clipboards", ["expire_at"])

    # ── sync_records ──────────────────────────────────────────────────────
    op.create_table(
        "sync_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("clipboard_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False,
                  server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["clipboard_id"], ["clipboards.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_device_id"], ["devices.id"], ondelete="CASCADE"),
        # The ON CONFLICT target of SyncLedger.create_pending_for()
        sa.UniqueConstraint(
            "clipboard_id", "target_device_id", name="uq_sync_records_clipboard_device"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'synced', 'failed', 'skipped')",
            name="ck_sync_records_status",
        ),
    )
    op.create_index(
        "idx_sync_records_target_status", "sync_records", ["target_device_id", "status"]
    )


def downgrade() -> None:
    op.drop_index("idx_sync_records_target_status", table_name="sync_records")
    op.drop_table("sync_records")
    op.drop_index("idx_clipboards_expire_at", table_name="clipboards")
    op.drop_index("idx_clipboards_user_created", table_name="clipboards")
    op.drop_table("clipboards")
    op.drop_index("idx_device_sessions_user_device", table_name="device_sessions")
    op.drop_table("device_sessions")
    op.drop_index("idx_devices_user_id", table_name="devices")
    op.drop_table("devices")
