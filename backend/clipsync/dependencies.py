"""
ClipSync Backend — FastAPI Dependencies
========================================

What:  Shared request dependencies: the SyncCore and the caller's identity.
How:   The core lives on app.state (set by the lifespan). The caller is
       resolved from an `Authorization: Bearer <token>` header through the
       identity service; failures raise AuthError → 401.
"""

from typing import Optional

from fastapi import Depends, Header, Request

from clipsync.core import SyncCore
from clipsync.exceptions import AuthError
from clipsync.services.identity import Identity


def get_core(request: Request) -> SyncCore:
    return request.app.state.core


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization:
        raise AuthError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def get_identity(
    token: str = Depends(bearer_token),
    core: SyncCore = Depends(get_core),
) -> Identity:
    return await core.identity.resolve(token)
