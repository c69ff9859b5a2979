"""
ClipSync Backend — Realtime WebSocket Endpoint
===============================================

What:  WS /ws?token=<credential>, the live channel of one device.
How:   One GatewaySession per socket:
           1. authenticate the token (refused → close 4401 before accept)
           2. accept, go live (session.ready, device.online, catch-up)
           3. read JSON text frames and hand them to the dispatcher
              (binary frames are answered with clipboard.error)
           4. on disconnect, close the session exactly once
Who:   Every client that wants pushes without polling.

Each connection gets its own short correlation id in request_id_var, so
every log line written while serving it can be grouped together.
"""

import json
import logging
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from clipsync.core import SyncCore
from clipsync.exceptions import AuthError, ClipSyncError, ValidationError
from clipsync.middleware.request_id import request_id_var
from clipsync.realtime.channels import WebSocketChannel
from clipsync.realtime.dispatcher import error_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

CLOSE_INTERNAL_ERROR = 1011


@router.websocket("/ws")
async def realtime(
    websocket: WebSocket,
    token: str | None = Query(default=None, description="Bearer credential of the device"),
) -> None:
    core: SyncCore = websocket.app.state.core
    request_id_var.set(uuid.uuid4().hex[:8])

    session = core.gateway.open_session(WebSocketChannel(websocket))
    try:
        await session.authenticate(token)
    except AuthError:
        return
    except ClipSyncError as e:
        logger.error("Realtime handshake failed: %s", e.message)
        await session.close(code=CLOSE_INTERNAL_ERROR, reason="Try again later")
        return

    await websocket.accept()
    try:
        connection = await session.go_live()
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                await core.broadcaster.deliver(
                    connection, error_event(ValidationError("Binary frames are not supported"))
                )
                continue
            try:
                raw = json.loads(text)
            except ValueError:
                await core.broadcaster.deliver(
                    connection, error_event(ValidationError("Message is not valid JSON"))
                )
                continue
            await core.dispatcher.dispatch(connection, raw)
    except WebSocketDisconnect as e:
        logger.debug("Client disconnected (code=%s)", e.code)
    finally:
        await session.close()
