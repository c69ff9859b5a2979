"""
ClipSync Backend — Sync, Presence and Session Routes
=====================================================

What:  HTTP surface of the Sync Ledger and the Presence Registry.
Who:   Clients polling instead of holding a WebSocket, and sign-out.

Route Inventory:
    GET    /api/sync/pending           backlog of the calling device
    POST   /api/sync/{id}/ack          pending → synced
    POST   /api/sync/{id}/skip         pending → skipped
    GET    /api/presence               live devices of the calling user
    DELETE /api/session                revoke the token, evict its device
    DELETE /api/sessions               revoke every token of the user, evict all devices
    POST   /api/devices                register a device and issue its token

Device registration accepts either the bearer token of a device already on
the account, or the X-Provisioning-Key shared with the account service
(first device of a user). Passwords and sign-up live in that service.
"""

import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Response, status

from clipsync.core import SyncCore
from clipsync.dependencies import bearer_token, get_core, get_identity
from clipsync.exceptions import AuthError, ValidationError
from clipsync.schemas.clipboard import (
    BacklogEntry,
    BacklogResponse,
    ClipboardItemResponse,
    DeviceCredentialResponse,
    DeviceRegistration,
    ErrorResponse,
    PresenceResponse,
    SyncActionResponse,
)
from clipsync.services.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Sync"])

_AUTH_ERROR = {401: {"description": "Missing or invalid credential", "model": ErrorResponse}}


@router.get(
    "/sync/pending",
    response_model=BacklogResponse,
    responses=_AUTH_ERROR,
    summary="Pending clipboard items for this device, oldest first",
)
async def pending_for_device(
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> BacklogResponse:
    backlog = await core.pipeline.backlog(identity.device_id)
    return BacklogResponse(
        device_id=identity.device_id,
        items=[
            BacklogEntry(
                sync_id=entry.record.id,
                status=entry.record.sync_status,
                clipboard=ClipboardItemResponse.model_validate(entry.item),
            )
            for entry in backlog
        ],
        count=len(backlog),
    )


async def _sync_action(
    core: SyncCore, identity: Identity, clipboard_id: UUID, changed: bool
) -> SyncActionResponse:
    record = await core.ledger.get(clipboard_id, identity.device_id)
    return SyncActionResponse(
        clipboard_id=clipboard_id,
        device_id=identity.device_id,
        changed=changed,
        status=record.sync_status if record else None,
    )


@router.post(
    "/sync/{clipboard_id}/ack",
    response_model=SyncActionResponse,
    responses=_AUTH_ERROR,
    summary="Confirm a clipboard item was applied on this device",
)
async def acknowledge(
    clipboard_id: UUID,
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> SyncActionResponse:
    changed = await core.pipeline.acknowledge(identity.device_id, clipboard_id)
    return await _sync_action(core, identity, clipboard_id, changed)


@router.post(
    "/sync/{clipboard_id}/skip",
    response_model=SyncActionResponse,
    responses=_AUTH_ERROR,
    summary="Decline a clipboard item on this device",
)
async def skip(
    clipboard_id: UUID,
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> SyncActionResponse:
    changed = await core.pipeline.skip(identity.device_id, clipboard_id)
    return await _sync_action(core, identity, clipboard_id, changed)


@router.get(
    "/presence",
    response_model=PresenceResponse,
    responses=_AUTH_ERROR,
    summary="Devices of the calling user that are online right now",
)
async def presence(
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> PresenceResponse:
    connections = core.registry.live_connections(identity.user_id)
    devices = list(dict.fromkeys(c.device_id for c in connections))
    return PresenceResponse(devices=devices, connections=len(connections))


@router.delete(
    "/session",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_AUTH_ERROR,
    summary="Sign out this device",
    description="Revokes the bearer token and closes the device's live connections.",
)
async def sign_out(
    token: str = Depends(bearer_token),
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> Response:
    await core.identity.revoke(token)
    await core.gateway.evict_device(identity.user_id, identity.device_id)
    logger.info("Device %s signed out", identity.device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/sessions",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_AUTH_ERROR,
    summary="Sign out every device of the account",
)
async def sign_out_everywhere(
    identity: Identity = Depends(get_identity),
    core: SyncCore = Depends(get_core),
) -> Response:
    revoked = await core.identity.revoke_all(identity.user_id)
    evicted = 0
    for device_id in core.registry.live_devices(identity.user_id):
        evicted += await core.gateway.evict_device(identity.user_id, device_id)
    logger.info(
        "User %s signed out everywhere: %d token(s) revoked, %d connection(s) closed",
        identity.user_id, revoked, evicted,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


async def _registering_user(
    core: SyncCore,
    body: DeviceRegistration,
    authorization: Optional[str],
    provisioning_key: Optional[str],
) -> UUID:
    """The account a new device joins, from a bearer token or the provisioning key."""
    if authorization:
        identity = await core.identity.resolve(bearer_token(authorization))
        if body.user_id is not None and body.user_id != identity.user_id:
            raise AuthError("A device can only add devices to its own account")
        return identity.user_id

    if provisioning_key:
        expected = core.settings.device_provisioning_key
        if not expected or not secrets.compare_digest(expected.encode(), provisioning_key.encode()):
            raise AuthError("Invalid provisioning key")
        if body.user_id is None:
            raise ValidationError("userId is required with a provisioning key", field="userId")
        return body.user_id

    raise AuthError("Missing credential")


@router.post(
    "/devices",
    response_model=DeviceCredentialResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Identifier taken by another account", "model": ErrorResponse},
        **_AUTH_ERROR,
    },
    summary="Register a device and issue its bearer token",
    description=(
        "Registers (or re-activates) a device and returns a new token for it. "
        "Re-registering a known identifier renames it and keeps its sync history."
    ),
)
async def register_device(
    body: DeviceRegistration,
    response: Response,
    authorization: Optional[str] = Header(default=None),
    x_provisioning_key: Optional[str] = Header(default=None),
    core: SyncCore = Depends(get_core),
) -> DeviceCredentialResponse:
    user_id = await _registering_user(core, body, authorization, x_provisioning_key)
    device = await core.store.register_device(
        user_id, body.device_identifier, body.device_name, body.device_type
    )
    token = await core.identity.issue(user_id, device.id)
    response.headers["Cache-Control"] = "no-store"
    return DeviceCredentialResponse(
        device_id=device.id,
        user_id=user_id,
        token=token,
        expires_in=core.settings.session_ttl_seconds,
    )
