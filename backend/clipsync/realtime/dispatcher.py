"""
ClipSync Backend — Realtime Message Dispatcher
===============================================

What:  Routes inbound realtime envelopes from a live connection to the pipeline.
How:   Envelope → handler lookup by event name → reply on the same connection.
       Application errors become `clipboard.error` replies; the connection
       stays open. Only transport failures end a session, and those are
       handled by the /ws route, not here.

Handlers:
    clipboard.push  → ClipboardPipeline.publish  → clipboard.delivered
    clipboard.ack   → ClipboardPipeline.acknowledge
    clipboard.skip  → ClipboardPipeline.skip
    sync.request    → ClipboardPipeline.reconcile (this connection)
    clipboard.typing → clipboard.user-typing to the user's other connections
    ping            → pong
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from clipsync.exceptions import (
    ClipSyncError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from clipsync.realtime.broadcaster import FanoutBroadcaster
from clipsync.realtime.presence import Connection
from clipsync.schemas.events import (
    ClipboardDelivered,
    ClipboardError,
    ClipboardReference,
    Envelope,
    EventName,
    Pong,
    TypingState,
    UserTyping,
)
from clipsync.services.pipeline import ClipboardPipeline

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


def _parse(model: Type[M], data: Any, what: str) -> M:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Malformed {what}: {first.get('msg', 'invalid')}",
            field=location or None,
        ) from e


def error_event(exc: ClipSyncError) -> ClipboardError:
    """Client-safe error event: context is only exposed for client-side errors."""
    if isinstance(exc, (ValidationError, NotFoundError)):
        details = dict(exc.context)
    elif isinstance(exc, PersistenceError):
        details = {"retryAfter": exc.retry_after}
    else:
        details = {}
    return ClipboardError(code=exc.code, message=exc.message, details=details)


class RealtimeDispatcher:
    def __init__(self, pipeline: ClipboardPipeline, broadcaster: FanoutBroadcaster):
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self._handlers: Dict[str, Handler] = {
            EventName.CLIPBOARD_PUSH.value: self._on_push,
            EventName.CLIPBOARD_ACK.value: self._on_ack,
            EventName.CLIPBOARD_SKIP.value: self._on_skip,
            EventName.SYNC_REQUEST.value: self._on_sync_request,
            EventName.CLIPBOARD_TYPING.value: self._on_typing,
            EventName.PING.value: self._on_ping,
        }

    async def dispatch(self, connection: Connection, raw: Any) -> None:
        """Handle one inbound message. Never raises for application errors."""
        try:
            envelope = _parse(Envelope, raw, "message envelope")
            handler = self._handlers.get(envelope.event)
            if handler is None:
                raise ValidationError(
                    f"Unknown event '{envelope.event}'",
                    field="event",
                )
            await handler(connection, envelope.data)
        except ClipSyncError as e:
            logger.info(
                "Realtime %s from connection %s: %s",
                e.code, connection.connection_id, e.message,
            )
            await self.broadcaster.deliver(connection, error_event(e))

    async def _on_push(self, connection: Connection, data: Mapping[str, Any]) -> None:
        result = await self.pipeline.publish(connection.user_id, connection.device_id, data)
        await self.broadcaster.deliver(
            connection,
            ClipboardDelivered(clipboard_id=result.item.id, deliveries=result.deliveries),
        )

    async def _on_ack(self, connection: Connection, data: Mapping[str, Any]) -> None:
        ref = _parse(ClipboardReference, data, "clipboard.ack")
        await self.pipeline.acknowledge(connection.device_id, ref.clipboard_id)

    async def _on_skip(self, connection: Connection, data: Mapping[str, Any]) -> None:
        ref = _parse(ClipboardReference, data, "clipboard.skip")
        await self.pipeline.skip(connection.device_id, ref.clipboard_id)

    async def _on_sync_request(self, connection: Connection, data: Mapping[str, Any]) -> None:
        await self.pipeline.reconcile(connection)

    async def _on_ping(self, connection: Connection, data: Mapping[str, Any]) -> None:
        await self.broadcaster.deliver(connection, Pong())

    async def _on_typing(self, connection: Connection, data: Mapping[str, Any]) -> None:
        state = _parse(TypingState, data, "clipboard.typing")
        await self.broadcaster.notify(
            connection.user_id,
            UserTyping(device_id=connection.device_id, is_typing=state.is_typing),
            excluding_connection_id=connection.connection_id,
        )
