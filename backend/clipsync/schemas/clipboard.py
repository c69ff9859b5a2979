"""
ClipSync Backend — Pydantic Request/Response Schemas
=====================================================

What:  Pydantic models defining the HTTP contract and the shared wire shapes
       used by realtime events.
How:   Field names are snake_case in Python and camelCase on the wire
       (`alias_generator=to_camel`); FastAPI serializes responses by alias.
Who:   Route handlers, the pipeline (validation of pushes), and
       clipsync.schemas.events.

Schemas are separate from the SQLAlchemy models: the wire never exposes
user_id or internal row ids other than the clipboard id.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from clipsync.database import as_utc
from clipsync.models.clipboard import ContentType
from clipsync.models.device import DeviceType
from clipsync.models.sync import SyncStatus


class WireModel(BaseModel):
    """Base for every model that crosses the wire: camelCase aliases, ORM input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ClipboardPush(WireModel):
    """
    What:  A clipboard snapshot pushed by a device.
    Who:   Body of POST /api/clipboard and data of the `clipboard.push` event.

    Shape only. The business rules (non-empty text/url, URL format, size,
    origin match) are enforced by ClipboardPipeline.validate().
    """

    content_type: ContentType = Field(description="text, image, file or url")
    payload_ref: Optional[str] = Field(
        default=None,
        description="Inline text/url, or a storage reference for image/file items",
    )
    origin_device_id: Optional[uuid.UUID] = Field(
        default=None,
        description="Must equal the authenticated device when present",
    )
    file_name: Optional[str] = Field(default=None, max_length=255)
    file_size: Optional[int] = Field(default=None, ge=0)
    expires_in: Optional[int] = Field(
        default=None,
        ge=1,
        description="Seconds until the item expires (server default when omitted)",
    )


class DeviceRegistration(WireModel):
    """
    Body of POST /api/devices.

    user_id is required with a provisioning key; with a bearer token the
    device joins the token's account and user_id, if given, must match it.
    """

    user_id: Optional[uuid.UUID] = None
    device_identifier: str = Field(min_length=1, max_length=255)
    device_name: str = Field(min_length=1, max_length=100)
    device_type: DeviceType = DeviceType.WEB


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ClipboardItemResponse(WireModel):
    """Full representation of a stored clipboard item."""

    id: uuid.UUID
    origin_device_id: uuid.UUID
    content_type: ContentType
    payload_ref: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime
    expire_at: Optional[datetime] = None

    @field_validator("created_at", "expire_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class DeliveryReport(WireModel):
    """
    Outcome of one push for one target device.

    delivered: the device received the item over a live connection.
    status:    the device's sync record after the pipeline run
               (synced when delivered, pending otherwise).
    """

    device_id: uuid.UUID
    delivered: bool
    status: SyncStatus


class PublishResponse(WireModel):
    """Returned by POST /api/clipboard with HTTP 201."""

    clipboard: ClipboardItemResponse
    deliveries: List[DeliveryReport] = Field(default_factory=list)


class BacklogEntry(WireModel):
    """One pending sync obligation of the calling device, oldest first."""

    sync_id: uuid.UUID
    status: SyncStatus
    clipboard: ClipboardItemResponse


class BacklogResponse(WireModel):
    """Catch-up query result for GET /api/sync/pending."""

    device_id: uuid.UUID
    items: List[BacklogEntry]
    count: int


class SyncActionResponse(WireModel):
    """
    Result of an explicit ack/skip.

    changed is False when the record was already terminal (or absent); the
    call is still successful because transitions are idempotent.
    """

    clipboard_id: uuid.UUID
    device_id: uuid.UUID
    changed: bool
    status: Optional[SyncStatus] = None


class ClipboardListResponse(WireModel):
    """
    Cursor-paginated clipboard history, newest first.

    next_cursor is "<ISO created_at>,<id>" of the last item; pass it back as
    `cursor` to get the next page.
    """

    items: List[ClipboardItemResponse]
    next_cursor: Optional[str] = None
    has_more: bool


class DeviceCredentialResponse(WireModel):
    """The registered device and a fresh bearer token for it (shown once)."""

    device_id: uuid.UUID
    user_id: uuid.UUID
    token: str
    expires_in: int


class PresenceResponse(WireModel):
    """Devices of the calling user that currently hold a live connection."""

    devices: List[uuid.UUID]
    connections: int


# ══════════════════════════════════════════════════════════════════════════
# Error / Health
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    Standardized error body for every HTTP error.

    Example:
        {
            "error": "validation_error",
            "message": "A url clipboard item needs a non-empty payload",
            "details": {"field": "payloadRef"},
            "request_id": "a1b2c3d4"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="healthy or unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="connected or disconnected")
    live_connections: int = Field(description="Realtime connections held by this process")
    uptime_seconds: float = Field(description="Seconds since service started")
