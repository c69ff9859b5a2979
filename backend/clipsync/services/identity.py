"""
ClipSync Backend — Identity & Session Service
==============================================

What:  Resolves an opaque credential into the (user, device) it was issued to.
How:   IdentityService is the contract the realtime gateway and the HTTP
       routes depend on. SessionIdentityService is a thin implementation over
       the `device_sessions` table: tokens are random, only their sha256
       digest is stored, and each session expires and can be revoked.
Who:   ConnectionGateway.authenticate(), the Bearer dependency of the HTTP
       routes, and DELETE /api/session.

Resolution refuses a credential when it is:
    - unknown
    - revoked (logout)
    - expired (default lifetime 7 days)
    - bound to a device that has been deactivated
A successful resolution bumps the device's last_active timestamp.

Password handling and account registration belong to the external identity
system and are not part of this service.
"""

import hashlib
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipsync.database import as_utc, utcnow
from clipsync.exceptions import AuthError, NotFoundError, PersistenceError
from clipsync.models.device import Device, DeviceSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: uuid.UUID
    device_id: uuid.UUID


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class IdentityService(ABC):
    """Contract: credential in, Identity out, AuthError otherwise."""

    @abstractmethod
    async def resolve(self, credential: str) -> Identity:
        ...


class SessionIdentityService(IdentityService):
    """Database-backed bearer sessions, one per (user, device) sign-in."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = 604_800,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    async def resolve(self, credential: str) -> Identity:
        if not credential:
            raise AuthError("Missing credential")

        token_hash = hash_token(credential)
        now = utcnow()
        try:
            async with self.session_factory() as db:
                row = (
                    await db.execute(
                        select(DeviceSession, Device)
                        .join(Device, Device.id == DeviceSession.device_id)
                        .where(DeviceSession.token_hash == token_hash)
                    )
                ).first()

                if row is None:
                    raise AuthError("Invalid credential")
                session, device = row
                if session.revoked_at is not None:
                    raise AuthError("Session has been revoked")
                if as_utc(session.expires_at) <= now:
                    raise AuthError("Session has expired", context={"expired_at": str(session.expires_at)})
                if not device.is_active:
                    raise AuthError("Device is deactivated", context={"device_id": str(device.id)})

                await db.execute(
                    update(Device).where(Device.id == device.id).values(last_active=now)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Credential lookup failed: %s", str(e))
            raise PersistenceError(
                message="Could not verify credentials. Please try again.",
                context={"operation": "resolve"},
            ) from e

        return Identity(user_id=session.user_id, device_id=session.device_id)

    async def issue(
        self,
        user_id: uuid.UUID,
        device_id: uuid.UUID,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        """
        Create a session for a device of the user and return the raw token.

        The token is returned exactly once; only its digest is stored.

        Raises:
            NotFoundError: The device does not exist or belongs to another user.
        """
        token = secrets.token_urlsafe(32)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        now = utcnow()
        try:
            async with self.session_factory() as db:
                device = await db.get(Device, device_id)
                if device is None or device.user_id != user_id:
                    raise NotFoundError("device", str(device_id))
                db.add(
                    DeviceSession(
                        token_hash=hash_token(token),
                        user_id=user_id,
                        device_id=device_id,
                        created_at=now,
                        expires_at=now + timedelta(seconds=ttl),
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to issue session for device %s: %s", device_id, str(e))
            raise PersistenceError(context={"operation": "issue"}) from e

        logger.info("Issued session for user %s device %s (ttl=%ds)", user_id, device_id, ttl)
        return token

    async def revoke(self, credential: str) -> Optional[Identity]:
        """Revoke one session. Returns whose it was, or None if it was unknown or already revoked."""
        now = utcnow()
        try:
            async with self.session_factory() as db:
                session = (
                    await db.execute(
                        select(DeviceSession).where(
                            DeviceSession.token_hash == hash_token(credential)
                        )
                    )
                ).scalar_one_or_none()
                if session is None or session.revoked_at is not None:
                    return None
                session.revoked_at = now
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to revoke session: %s", str(e))
            raise PersistenceError(context={"operation": "revoke"}) from e
        return Identity(user_id=session.user_id, device_id=session.device_id)

    async def revoke_all(self, user_id: uuid.UUID) -> int:
        """Revoke every open session of the user (sign out everywhere)."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(DeviceSession)
                    .where(
                        DeviceSession.user_id == user_id,
                        DeviceSession.revoked_at.is_(None),
                    )
                    .values(revoked_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to revoke sessions of user %s: %s", user_id, str(e))
            raise PersistenceError(context={"operation": "revoke_all"}) from e
        return result.rowcount
