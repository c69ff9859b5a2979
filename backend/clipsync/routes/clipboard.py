"""
ClipSync Backend — Clipboard Route Handlers
============================================

What:  POST /api/clipboard (publish), GET /api/clipboard (history),
       GET /api/clipboard/{id} (one item).
How:   Thin handlers: resolve the caller, delegate to the pipeline or the
       store, shape the response.
Who:   Clients that cannot (or prefer not to) push over the WebSocket.

A push through HTTP goes through exactly the same pipeline as a
`clipboard.push` event: the caller's other live devices receive
`clipboard.new` before this request returns.

Caching:
    Clipboard data is private and short-lived, so every response carries
    Cache-Control: no-store.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from clipsync.core import SyncCore
from clipsync.dependencies import get_core, get_identity
from clipsync.schemas.clipboard import (
    ClipboardItemResponse,
    ClipboardListResponse,
    ClipboardPush,
    ErrorResponse,
    PublishResponse,
)
from clipsync.services.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Clipboard"])


@router.post(
    "/clipboard",
    response_model=PublishResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid clipboard push", "model": ErrorResponse},
        401: {"description": "Missing or invalid credential", "model": ErrorResponse},
        503: {"description": "Storage unavailable, retry later", "model": ErrorResponse},
    },
    summary="Publish a clipboard item",
    description=(
        "Stores the item, creates a sync record for every other device of the user, "
        "delivers it to the devices that are online and returns one outcome per device."
    ),
)
async def publish_clipboard(
    body: ClipboardPush,
    response: Response,
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> PublishResponse:
    result = await core.pipeline.publish(identity.user_id, identity.device_id, body)
    response.headers["Cache-Control"] = "no-store"
    response.headers["Location"] = f"/api/clipboard/{result.item.id}"
    return result.to_response()


@router.get(
    "/clipboard",
    response_model=ClipboardListResponse,
    responses={401: {"description": "Missing or invalid credential", "model": ErrorResponse}},
    summary="Recent clipboard history",
)
async def list_clipboard(
    response: Response,
    limit: int = Query(default=20, ge=1, le=100, description="Items per page (max 100)"),
    cursor: str | None = Query(
        default=None,
        description="nextCursor from the previous page; omit for the first page",
    ),
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> ClipboardListResponse:
    """
    Newest first. Example:
        Page 1: GET /api/clipboard?limit=20
        Page 2: GET /api/clipboard?limit=20&cursor=2026-01-15T12:00:00.123456%2B00:00,3f2a...  (nextCursor of page 1)
    """
    items, next_cursor, has_more = await core.store.list_for_user(
        identity.user_id, limit=limit, cursor=cursor
    )
    response.headers["Cache-Control"] = "no-store"
    return ClipboardListResponse(
        items=[ClipboardItemResponse.model_validate(item) for item in items],
        next_cursor=next_cursor,
        has_more=has_more,
    )


@router.get(
    "/clipboard/{clipboard_id}",
    response_model=ClipboardItemResponse,
    responses={
        401: {"description": "Missing or invalid credential", "model": ErrorResponse},
        404: {"description": "Unknown or expired item", "model": ErrorResponse},
    },
    summary="Get one clipboard item",
)
async def get_clipboard(
    clipboard_id: UUID,
    response: Response,
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> ClipboardItemResponse:
    # Scoped to the caller: another user's item is reported as not found
    item = await core.store.get(clipboard_id, user_id=identity.user_id)
    response.headers["Cache-Control"] = "no-store"
    return ClipboardItemResponse.model_validate(item)
