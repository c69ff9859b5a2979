"""
ClipSync Backend — Realtime Event Types
========================================

What:  The explicit message types exchanged over the realtime channel.
How:   Every message is an envelope `{"event": <name>, "data": {...}}`.
       Outbound events subclass RealtimeEvent and render themselves with
       envelope(); inbound envelopes are parsed into Envelope and their data
       into the matching request model.

Server → client:
    session.ready        {connectionId, deviceId}
    clipboard.new        {clipboardId, deviceId, contentType, payloadRef, ...}
    clipboard.delivered  {clipboardId, deliveries}     (ack to the origin)
    clipboard.error      {code, message, details}
    device.online        {deviceId}
    device.offline       {deviceId}
    clipboard.user-typing {deviceId, isTyping}      (to the user's other connections)
    pong                 {}

Client → server:
    clipboard.push       ClipboardPush
    clipboard.ack        {clipboardId}
    clipboard.skip       {clipboardId}
    sync.request         {}
    clipboard.typing     {isTyping}
    ping                 {}
"""

import enum
import uuid
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from clipsync.database import as_utc
from clipsync.models.clipboard import ClipboardItem, ContentType
from clipsync.schemas.clipboard import DeliveryReport, WireModel


class EventName(str, enum.Enum):
    SESSION_READY = "session.ready"
    CLIPBOARD_PUSH = "clipboard.push"
    CLIPBOARD_NEW = "clipboard.new"
    CLIPBOARD_DELIVERED = "clipboard.delivered"
    CLIPBOARD_ACK = "clipboard.ack"
    CLIPBOARD_SKIP = "clipboard.skip"
    CLIPBOARD_ERROR = "clipboard.error"
    SYNC_REQUEST = "sync.request"
    DEVICE_ONLINE = "device.online"
    DEVICE_OFFLINE = "device.offline"
    CLIPBOARD_TYPING = "clipboard.typing"
    CLIPBOARD_USER_TYPING = "clipboard.user-typing"
    PING = "ping"
    PONG = "pong"


class Envelope(BaseModel):
    """An inbound message before its data is interpreted."""

    event: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class RealtimeEvent(WireModel):
    """Base of every outbound event."""

    event: ClassVar[EventName]

    def envelope(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "data": self.model_dump(mode="json", by_alias=True),
        }


# ── Outbound ──────────────────────────────────────────────────────────────


class SessionReady(RealtimeEvent):
    event: ClassVar[EventName] = EventName.SESSION_READY

    connection_id: str
    device_id: uuid.UUID


class ClipboardNew(RealtimeEvent):
    """
    A clipboard item delivered to a target connection.

    replay is True when the item comes from the catch-up backlog rather than
    a live fan-out. Clients dedupe on clipboard_id either way.
    """

    event: ClassVar[EventName] = EventName.CLIPBOARD_NEW

    clipboard_id: uuid.UUID
    device_id: uuid.UUID
    content_type: ContentType
    payload_ref: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime
    replay: bool = False

    @classmethod
    def from_item(cls, item: ClipboardItem, replay: bool = False) -> "ClipboardNew":
        return cls(
            clipboard_id=item.id,
            device_id=item.origin_device_id,
            content_type=ContentType(item.content_type),
            payload_ref=item.payload_ref,
            file_name=item.file_name,
            file_size=item.file_size,
            created_at=as_utc(item.created_at),
            replay=replay,
        )


class ClipboardDelivered(RealtimeEvent):
    event: ClassVar[EventName] = EventName.CLIPBOARD_DELIVERED

    clipboard_id: uuid.UUID
    deliveries: List[DeliveryReport] = Field(default_factory=list)


class ClipboardError(RealtimeEvent):
    event: ClassVar[EventName] = EventName.CLIPBOARD_ERROR

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DeviceOnline(RealtimeEvent):
    event: ClassVar[EventName] = EventName.DEVICE_ONLINE

    device_id: uuid.UUID


class DeviceOffline(RealtimeEvent):
    event: ClassVar[EventName] = EventName.DEVICE_OFFLINE

    device_id: uuid.UUID


class UserTyping(RealtimeEvent):
    """Relayed typing indicator; not persisted, not part of the ledger."""

    event: ClassVar[EventName] = EventName.CLIPBOARD_USER_TYPING

    device_id: uuid.UUID
    is_typing: bool


class Pong(RealtimeEvent):
    event: ClassVar[EventName] = EventName.PONG


# ── Inbound ───────────────────────────────────────────────────────────────


class ClipboardReference(WireModel):
    """Data of clipboard.ack and clipboard.skip."""

    clipboard_id: uuid.UUID


class TypingState(WireModel):
    """Data of clipboard.typing."""

    is_typing: bool
