"""
ClipSync Backend — Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Every test gets its own file-backed SQLite database (aiosqlite) with
       the full schema, and a SyncCore wired exactly like production.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── engine / session_factory: per-test SQLite database
    ├── test_settings:            fast retry and timeout settings
    ├── core:                     SyncCore (registry, gateway, pipeline, ...)
    ├── user_id / devices:        one user with three registered devices
    ├── connect:                  bring a device online through the gateway
    ├── api:                      HTTPX AsyncClient bound to the test core
    └── auth_headers:             bearer headers for a device
"""

import os

# Override settings for testing BEFORE any clipsync imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./clipsync_test.db"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from clipsync.config import Settings
from clipsync.core import SyncCore
from clipsync.database import Base
from clipsync.models.device import Device, DeviceType
from clipsync.realtime.channels import Channel, QueueChannel

# Register every table on Base.metadata
import clipsync.models.clipboard  # noqa: F401
import clipsync.models.sync  # noqa: F401


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'clipsync.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ══════════════════════════════════════════════════════════════════════════
# Core
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_settings():
    """No backoff between ledger retries, short send timeout, a provisioning key."""
    return Settings(
        environment="test",
        ledger_retry_attempts=2,
        ledger_retry_min_wait=0.0,
        ledger_retry_max_wait=0.0,
        ws_send_timeout=0.5,
        device_provisioning_key="test-provisioning-key-0001",
    )


@pytest_asyncio.fixture
async def core(session_factory, test_settings):
    core = SyncCore.build(session_factory, test_settings)
    yield core
    await core.shutdown()


@pytest.fixture
def user_id():
    return uuid4()


@pytest_asyncio.fixture
async def devices(core, user_id):
    """D1, D2, D3: three active devices of the same user."""
    return [
        await core.store.register_device(user_id, f"install-{n}", f"Device {n}", kind)
        for n, kind in enumerate((DeviceType.DESKTOP, DeviceType.ANDROID, DeviceType.WEB), start=1)
    ]


@pytest.fixture
def connect(core):
    """
    Bring a device online through the real gateway path.

    Usage:
        session, channel = await connect(device)
    The channel already holds session.ready (and any catch-up items).
    """

    async def _connect(device: Device, channel: Optional[Channel] = None):
        channel = channel or QueueChannel()
        token = await core.identity.issue(device.user_id, device.id)
        session = core.gateway.open_session(channel)
        await session.authenticate(token)
        await session.go_live()
        return session, channel

    return _connect


# ══════════════════════════════════════════════════════════════════════════
# HTTP
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def api(core, session_factory):
    """
    HTTPX AsyncClient talking to the FastAPI app in-process.

    ASGITransport does not run the lifespan, so the app is handed the test
    core directly: HTTP calls and `connect()`ed channels share one core.

    Usage:
        async def test_health(api):
            response = await api.get("/health")
    """
    from clipsync.main import create_app

    app = create_app(session_factory)
    app.state.core = core
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(core):
    """Bearer headers for a device: `headers = await auth_headers(device)`."""

    async def _headers(device: Device) -> dict:
        token = await core.identity.issue(device.user_id, device.id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
