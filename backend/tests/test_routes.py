"""
ClipSync Backend — HTTP and WebSocket Route Tests
==================================================

What we test:
    ✅ POST /api/clipboard: 201, Location, per-device outcomes, live fan-out
    ✅ Error mapping: 400 / 401 / 404 with the standard error body
    ✅ Pending, ack, skip, presence, sign-out and sign-out everywhere
    ✅ POST /api/devices with a provisioning key or a signed-in device
    ✅ createdAt is the same UTC string live, on replay and over HTTP
    ✅ WS /ws: handshake refusal (4401), session.ready, push → new + delivered,
       binary frames answered with clipboard.error, eviction on sign-out (4403)
    ✅ /health
"""

import asyncio
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from clipsync.database import Base
from clipsync.main import create_app
from clipsync.models.device import DeviceType
from clipsync.realtime.gateway import CLOSE_AUTH_FAILED, CLOSE_SESSION_REVOKED
from clipsync.services.clipboard_store import ClipboardStore
from clipsync.services.identity import SessionIdentityService

from channel_helpers import events_of


TEXT = {"contentType": "text", "payloadRef": "hello"}


class TestPublishRoute:

    @pytest.mark.asyncio
    async def test_publish(self, api, devices, connect, auth_headers):
        d1, d2, d3 = devices
        _, ch2 = await connect(d2)
        ch2.drain()

        response = await api.post("/api/clipboard", json=TEXT, headers=await auth_headers(d1))

        assert response.status_code == 201
        body = response.json()
        assert response.headers["Location"] == f"/api/clipboard/{body['clipboard']['id']}"
        assert response.headers["Cache-Control"] == "no-store"
        assert body["clipboard"]["originDeviceId"] == str(d1.id)
        outcomes = {d["deviceId"]: (d["delivered"], d["status"]) for d in body["deliveries"]}
        assert outcomes == {str(d2.id): (True, "synced"), str(d3.id): (False, "pending")}
        assert events_of(ch2, "clipboard.new")[0]["clipboardId"] == body["clipboard"]["id"]

    @pytest.mark.asyncio
    async def test_invalid_push_is_400(self, api, devices, auth_headers):
        response = await api.post(
            "/api/clipboard",
            json={"contentType": "url", "payloadRef": "not a url"},
            headers=await auth_headers(devices[0]),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"] == {"field": "payloadRef"}
        assert body["request_id"] == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_unknown_content_type_is_422(self, api, devices, auth_headers):
        response = await api.post(
            "/api/clipboard",
            json={"contentType": "video", "payloadRef": "x"},
            headers=await auth_headers(devices[0]),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer not-a-token"},
        {"Authorization": "Basic dXNlcjpwYXNz"},
    ])
    async def test_unauthenticated_is_401(self, api, devices, headers):
        response = await api.post("/api/clipboard", json=TEXT, headers=headers)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"] == "auth_error"


class TestReadRoutes:

    @pytest.mark.asyncio
    async def test_get_item_and_history(self, api, devices, auth_headers):
        headers = await auth_headers(devices[0])
        created = (await api.post("/api/clipboard", json=TEXT, headers=headers)).json()
        item_id = created["clipboard"]["id"]

        one = await api.get(f"/api/clipboard/{item_id}", headers=headers)
        history = await api.get("/api/clipboard", params={"limit": 10}, headers=headers)

        assert one.status_code == 200
        assert one.json()["payloadRef"] == "hello"
        assert [i["id"] for i in history.json()["items"]] == [item_id]
        assert history.json()["hasMore"] is False

    @pytest.mark.asyncio
    async def test_unknown_item_is_404(self, api, devices, auth_headers):
        response = await api.get(f"/api/clipboard/{uuid4()}", headers=await auth_headers(devices[0]))

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_bad_cursor_is_400(self, api, devices, auth_headers):
        response = await api.get(
            "/api/clipboard", params={"cursor": "soon"}, headers=await auth_headers(devices[0])
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_timestamps_are_utc_everywhere(self, api, devices, connect, auth_headers):
        d1, d2, d3 = devices
        _, live = await connect(d2)
        live.drain()
        headers = await auth_headers(d1)
        created = (await api.post("/api/clipboard", json=TEXT, headers=headers)).json()
        item_id = created["clipboard"]["id"]

        _, late = await connect(d3)
        live_stamp = events_of(live, "clipboard.new")[0]["createdAt"]
        replay_stamp = events_of(late, "clipboard.new")[0]["createdAt"]
        read_stamp = (await api.get(f"/api/clipboard/{item_id}", headers=headers)).json()["createdAt"]
        listed_stamp = (await api.get("/api/clipboard", headers=headers)).json()["items"][0]["createdAt"]

        assert replay_stamp == live_stamp == read_stamp == listed_stamp
        assert datetime.fromisoformat(read_stamp.replace("Z", "+00:00")).utcoffset() == timedelta(0)


class TestSyncRoutes:

    @pytest.mark.asyncio
    async def test_pending_then_ack(self, api, devices, auth_headers):
        d1, _, d3 = devices
        created = (await api.post("/api/clipboard", json=TEXT, headers=await auth_headers(d1))).json()
        item_id = created["clipboard"]["id"]
        d3_headers = await auth_headers(d3)

        pending = (await api.get("/api/sync/pending", headers=d3_headers)).json()
        assert pending["count"] == 1
        assert pending["items"][0]["clipboard"]["id"] == item_id
        assert pending["items"][0]["status"] == "pending"

        ack = await api.post(f"/api/sync/{item_id}/ack", headers=d3_headers)
        again = await api.post(f"/api/sync/{item_id}/ack", headers=d3_headers)

        assert ack.json() == {
            "clipboardId": item_id, "deviceId": str(d3.id), "changed": True, "status": "synced",
        }
        assert again.json()["changed"] is False
        assert (await api.get("/api/sync/pending", headers=d3_headers)).json()["count"] == 0

    @pytest.mark.asyncio
    async def test_skip(self, api, devices, auth_headers):
        d1, _, d3 = devices
        created = (await api.post("/api/clipboard", json=TEXT, headers=await auth_headers(d1))).json()

        response = await api.post(
            f"/api/sync/{created['clipboard']['id']}/skip", headers=await auth_headers(d3)
        )

        assert response.json()["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_presence(self, api, devices, connect, auth_headers):
        d1, d2, _ = devices
        await connect(d2)
        await connect(d2)

        body = (await api.get("/api/presence", headers=await auth_headers(d1))).json()

        assert body == {"devices": [str(d2.id)], "connections": 2}

    @pytest.mark.asyncio
    async def test_sign_out(self, api, core, devices, connect, auth_headers):
        d1 = devices[0]
        _, channel = await connect(d1)
        headers = await auth_headers(d1)

        response = await api.delete("/api/session", headers=headers)

        assert response.status_code == 204
        assert channel.close_code == CLOSE_SESSION_REVOKED
        assert not core.registry.is_device_live(d1.user_id, d1.id)
        assert (await api.get("/api/presence", headers=headers)).status_code == 401

    @pytest.mark.asyncio
    async def test_sign_out_everywhere(self, api, core, devices, connect, auth_headers):
        d1, d2, _ = devices
        _, ch1 = await connect(d1)
        _, ch2 = await connect(d2)
        h1 = await auth_headers(d1)
        h2 = await auth_headers(d2)

        response = await api.delete("/api/sessions", headers=h1)

        assert response.status_code == 204
        assert ch1.close_code == CLOSE_SESSION_REVOKED
        assert ch2.close_code == CLOSE_SESSION_REVOKED
        assert core.registry.live_devices(d1.user_id) == set()
        assert (await api.get("/api/presence", headers=h1)).status_code == 401
        assert (await api.get("/api/presence", headers=h2)).status_code == 401


PROVISIONING = {"X-Provisioning-Key": "test-provisioning-key-0001"}


class TestDeviceRoutes:

    @pytest.mark.asyncio
    async def test_provisioning_key_registers_first_device(self, api, core):
        user_id = uuid4()

        response = await api.post(
            "/api/devices",
            json={"userId": str(user_id), "deviceIdentifier": "mac-01", "deviceName": "Work Mac",
                  "deviceType": "desktop"},
            headers=PROVISIONING,
        )

        assert response.status_code == 201
        assert response.headers["Cache-Control"] == "no-store"
        body = response.json()
        assert body["userId"] == str(user_id)
        assert body["expiresIn"] == core.settings.session_ttl_seconds
        assert await core.store.list_devices_for_user(user_id) == {UUID(body["deviceId"])}

        presence = await api.get(
            "/api/presence", headers={"Authorization": f"Bearer {body['token']}"}
        )
        assert presence.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Provisioning-Key": "wrong-key-wrong-key"}])
    async def test_without_valid_credential_is_401(self, api, headers):
        response = await api.post(
            "/api/devices",
            json={"userId": str(uuid4()), "deviceIdentifier": "x", "deviceName": "x"},
            headers=headers,
        )

        assert response.status_code == 401
        assert response.json()["error"] == "auth_error"

    @pytest.mark.asyncio
    async def test_provisioning_key_needs_user_id(self, api):
        response = await api.post(
            "/api/devices", json={"deviceIdentifier": "x", "deviceName": "x"}, headers=PROVISIONING
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "userId"

    @pytest.mark.asyncio
    async def test_signed_in_device_adds_device_to_its_account(self, api, core, devices, auth_headers):
        d1 = devices[0]

        response = await api.post(
            "/api/devices",
            json={"deviceIdentifier": "tablet-01", "deviceName": "Tablet", "deviceType": "android"},
            headers=await auth_headers(d1),
        )

        assert response.status_code == 201
        assert response.json()["userId"] == str(d1.user_id)
        assert len(await core.store.list_devices_for_user(d1.user_id)) == 4

    @pytest.mark.asyncio
    async def test_signed_in_device_cannot_add_to_other_account(self, api, devices, auth_headers):
        response = await api.post(
            "/api/devices",
            json={"userId": str(uuid4()), "deviceIdentifier": "t", "deviceName": "t"},
            headers=await auth_headers(devices[0]),
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_identifier_of_other_account_is_400(self, api, devices):
        response = await api.post(
            "/api/devices",
            json={"userId": str(uuid4()), "deviceIdentifier": devices[0].device_identifier,
                  "deviceName": "Stolen"},
            headers=PROVISIONING,
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "deviceIdentifier"


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, api, devices, connect):
        await connect(devices[0])

        response = await api.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["live_connections"] == 1


# ══════════════════════════════════════════════════════════════════════════
# WebSocket (Starlette TestClient runs the app lifespan in its own loop)
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def ws_world(tmp_path):
    """
    A file database with one user, a laptop and a phone, each with a token.

    Seeded with asyncio.run before the TestClient starts; NullPool keeps
    connections from crossing event loops.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def seed():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = ClipboardStore(factory)
        identity = SessionIdentityService(factory, ttl_seconds=3600)
        user_id = uuid4()
        world = {}
        for name, kind in (("laptop", DeviceType.DESKTOP), ("phone", DeviceType.IOS)):
            device = await store.register_device(user_id, f"ws-{name}", name, kind)
            world[name] = (device.id, await identity.issue(user_id, device.id))
        return world

    world = asyncio.run(seed())
    yield factory, world
    asyncio.run(engine.dispose())


class TestWebSocket:

    def test_bad_token_refused(self, ws_world):
        factory, _ = ws_world
        with TestClient(create_app(factory)) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws?token=forged"):
                    pass
        assert exc_info.value.code == CLOSE_AUTH_FAILED

    def test_missing_token_refused(self, ws_world):
        factory, _ = ws_world
        with TestClient(create_app(factory)) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws"):
                    pass
        assert exc_info.value.code == CLOSE_AUTH_FAILED

    def test_push_over_websocket(self, ws_world):
        factory, world = ws_world
        laptop_id, laptop_token = world["laptop"]
        phone_id, phone_token = world["phone"]

        with TestClient(create_app(factory)) as client:
            with client.websocket_connect(f"/ws?token={laptop_token}") as laptop:
                ready = laptop.receive_json()
                assert ready["event"] == "session.ready"
                assert ready["data"]["deviceId"] == str(laptop_id)

                with client.websocket_connect(f"/ws?token={phone_token}") as phone:
                    assert phone.receive_json()["event"] == "session.ready"
                    assert laptop.receive_json() == {
                        "event": "device.online", "data": {"deviceId": str(phone_id)},
                    }

                    laptop.send_json({"event": "clipboard.push", "data": TEXT})
                    new = phone.receive_json()
                    delivered = laptop.receive_json()

                    assert new["event"] == "clipboard.new"
                    assert new["data"]["payloadRef"] == "hello"
                    assert new["data"]["deviceId"] == str(laptop_id)
                    assert delivered["event"] == "clipboard.delivered"
                    assert delivered["data"]["clipboardId"] == new["data"]["clipboardId"]
                    assert delivered["data"]["deliveries"] == [
                        {"deviceId": str(phone_id), "delivered": True, "status": "synced"}
                    ]

                    phone.send_json({"event": "ping"})
                    assert phone.receive_json() == {"event": "pong", "data": {}}

                    phone.send_text("{not json")
                    error = phone.receive_json()
                    assert error["event"] == "clipboard.error"
                    assert error["data"]["code"] == "validation_error"

                    phone.send_bytes(b"\x00\x01")
                    error = phone.receive_json()
                    assert error["event"] == "clipboard.error"
                    assert error["data"]["code"] == "validation_error"
                    phone.send_json({"event": "ping"})
                    assert phone.receive_json()["event"] == "pong"

                assert laptop.receive_json() == {
                    "event": "device.offline", "data": {"deviceId": str(phone_id)},
                }

    def test_sign_out_evicts_socket(self, ws_world):
        factory, world = ws_world
        _, phone_token = world["phone"]

        with TestClient(create_app(factory)) as client:
            with client.websocket_connect(f"/ws?token={phone_token}") as phone:
                assert phone.receive_json()["event"] == "session.ready"

                response = client.delete(
                    "/api/session", headers={"Authorization": f"Bearer {phone_token}"}
                )
                assert response.status_code == 204

                with pytest.raises(WebSocketDisconnect) as exc_info:
                    phone.receive_json()
                assert exc_info.value.code == CLOSE_SESSION_REVOKED

    def test_offline_device_catches_up_on_connect(self, ws_world):
        factory, world = ws_world
        _, laptop_token = world["laptop"]
        _, phone_token = world["phone"]

        with TestClient(create_app(factory)) as client:
            published = client.post(
                "/api/clipboard", json=TEXT, headers={"Authorization": f"Bearer {laptop_token}"}
            ).json()
            assert published["deliveries"][0]["status"] == "pending"

            with client.websocket_connect(f"/ws?token={phone_token}") as phone:
                assert phone.receive_json()["event"] == "session.ready"
                replay = phone.receive_json()

            assert replay["event"] == "clipboard.new"
            assert replay["data"]["clipboardId"] == published["clipboard"]["id"]
            assert replay["data"]["replay"] is True

            pending = client.get(
                "/api/sync/pending", headers={"Authorization": f"Bearer {phone_token}"}
            ).json()
            assert pending["count"] == 0
