"""
ClipSync Backend — Delivery Channels
=====================================

What:  The send side of one realtime connection.
How:   The core only ever calls `await channel.send(message)` and
       `await channel.close()`. A channel that can no longer deliver raises
       DeliveryError; the broadcaster catches it per target.
Who:   WebSocketChannel is created by the /ws route; QueueChannel backs the
       test suite and any in-process consumer.

Channel Inventory:
    - Channel (abstract):  send / close / closed
    - WebSocketChannel:    wraps a Starlette WebSocket, JSON text frames
    - QueueChannel:        asyncio.Queue, read back with receive()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from clipsync.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class Channel(ABC):
    """Abstract outbound message channel of one connection."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """
        Deliver one JSON-serializable message.

        Raises:
            DeliveryError: The channel is closed or the transport failed.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel. Safe to call more than once."""
        ...


class QueueChannel(Channel):
    """
    In-process channel backed by an unbounded asyncio.Queue.

    Messages sent before close() stay readable through receive().
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._closed = False
        self.close_code: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            raise DeliveryError("Channel is closed")
        self._queue.put_nowait(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._closed:
            self._closed = True
            self.close_code = code

    async def receive(self, timeout: float = 1.0) -> Dict[str, Any]:
        """Next message sent on this channel; raises asyncio.TimeoutError if none arrives."""
        return await asyncio.wait_for(self._queue.get(), timeout)

    def drain(self) -> list:
        """All messages sent so far that were not yet received."""
        messages = []
        while not self._queue.empty():
            messages.append(self._queue.get_nowait())
        return messages


class WebSocketChannel(Channel):
    """Channel over an accepted Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return (
            self._closed
            or self.websocket.application_state == WebSocketState.DISCONNECTED
            or self.websocket.client_state == WebSocketState.DISCONNECTED
        )

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise DeliveryError("WebSocket is closed")
        try:
            await self.websocket.send_json(message)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            # Starlette raises RuntimeError once the socket is gone
            self._closed = True
            raise DeliveryError("WebSocket send failed", context={"reason": str(e)}) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug("WebSocket already gone during close: %s", e)
