"""
ClipSync Backend — Realtime Dispatcher Tests
=============================================

What we test:
    ✅ clipboard.push publishes and replies clipboard.delivered
    ✅ clipboard.ack / clipboard.skip reach the ledger
    ✅ sync.request replays the backlog, ping → pong
    ✅ clipboard.typing is relayed to every other connection of the user
    ✅ Bad input becomes a clipboard.error reply, never an exception
"""

from unittest.mock import AsyncMock, patch

import pytest

from clipsync.exceptions import AuthError, PersistenceError, ValidationError
from clipsync.models.sync import SyncStatus
from clipsync.realtime.dispatcher import error_event

from channel_helpers import events_of


async def _live(core, connect, device):
    session, channel = await connect(device)
    channel.drain()
    return core.registry.get(session.connection_id), channel


class TestHandlers:

    @pytest.mark.asyncio
    async def test_push_replies_with_deliveries(self, core, devices, connect):
        d1, d2, d3 = devices
        connection, ch1 = await _live(core, connect, d1)
        _, ch2 = await _live(core, connect, d2)

        await core.dispatcher.dispatch(connection, {
            "event": "clipboard.push",
            "data": {"contentType": "url", "payloadRef": "https://example.com/a"},
        })

        delivered = events_of(ch1, "clipboard.delivered")
        assert len(delivered) == 1
        statuses = {d["deviceId"]: d["status"] for d in delivered[0]["deliveries"]}
        assert statuses == {str(d2.id): "synced", str(d3.id): "pending"}
        assert events_of(ch2, "clipboard.new")[0]["clipboardId"] == delivered[0]["clipboardId"]

    @pytest.mark.asyncio
    async def test_skip_after_live_delivery_changes_nothing(self, core, user_id, devices, connect):
        d1, _, d3 = devices
        connection, _ = await _live(core, connect, d3)
        result = await core.pipeline.publish(user_id, d1.id, {"contentType": "text", "payloadRef": "1"})

        await core.dispatcher.dispatch(
            connection, {"event": "clipboard.skip", "data": {"clipboardId": str(result.item.id)}}
        )

        assert (await core.ledger.get(result.item.id, d3.id)).sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_skip_pending_item(self, core, user_id, devices, connect):
        d1, _, d3 = devices
        connection, channel = await _live(core, connect, d3)
        await channel.close()
        result = await core.pipeline.publish(user_id, d1.id, {"contentType": "text", "payloadRef": "x"})

        await core.dispatcher.dispatch(
            connection, {"event": "clipboard.skip", "data": {"clipboardId": str(result.item.id)}}
        )

        assert (await core.ledger.get(result.item.id, d3.id)).sync_status is SyncStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_ack_pending_item(self, core, user_id, devices, connect):
        d1, _, d3 = devices
        connection, channel = await _live(core, connect, d3)
        await channel.close()
        result = await core.pipeline.publish(user_id, d1.id, {"contentType": "text", "payloadRef": "x"})

        await core.dispatcher.dispatch(
            connection, {"event": "clipboard.ack", "data": {"clipboardId": str(result.item.id)}}
        )

        assert (await core.ledger.get(result.item.id, d3.id)).sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_sync_request_replays_backlog(self, core, user_id, devices, connect):
        d1, _, d3 = devices
        connection, channel = await _live(core, connect, d3)
        with patch.object(core.ledger, "mark_synced", AsyncMock(side_effect=PersistenceError("down"))):
            result = await core.pipeline.publish(
                user_id, d1.id, {"contentType": "text", "payloadRef": "again"}
            )
        channel.drain()

        await core.dispatcher.dispatch(connection, {"event": "sync.request"})

        replayed = events_of(channel, "clipboard.new")
        assert [e["clipboardId"] for e in replayed] == [str(result.item.id)]
        assert replayed[0]["replay"] is True
        assert (await core.ledger.get(result.item.id, d3.id)).sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_ping(self, core, devices, connect):
        connection, channel = await _live(core, connect, devices[0])

        await core.dispatcher.dispatch(connection, {"event": "ping", "data": {}})

        assert channel.drain() == [{"event": "pong", "data": {}}]

    @pytest.mark.asyncio
    async def test_typing_relayed_to_other_connections(self, core, devices, connect):
        d1, d2, _ = devices
        sender, ch_sender = await _live(core, connect, d1)
        _, ch_other_tab = await _live(core, connect, d1)
        _, ch2 = await _live(core, connect, d2)

        await core.dispatcher.dispatch(sender, {"event": "clipboard.typing", "data": {"isTyping": True}})

        expected = [{"deviceId": str(d1.id), "isTyping": True}]
        assert events_of(ch2, "clipboard.user-typing") == expected
        assert events_of(ch_other_tab, "clipboard.user-typing") == expected
        sent_back = ch_sender.drain()
        assert [m["event"] for m in sent_back if m["event"].startswith("clipboard.")] == []


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        {"event": "clipboard.teleport", "data": {}},
        {"data": {}},
        {"event": "", "data": {}},
        {"event": "clipboard.push", "data": "hello"},
        ["clipboard.push"],
    ])
    async def test_malformed_messages(self, core, devices, connect, raw):
        connection, channel = await _live(core, connect, devices[0])

        await core.dispatcher.dispatch(connection, raw)

        errors = events_of(channel, "clipboard.error")
        assert len(errors) == 1
        assert errors[0]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_invalid_push_reports_field(self, core, devices, connect):
        connection, channel = await _live(core, connect, devices[0])

        await core.dispatcher.dispatch(
            connection, {"event": "clipboard.push", "data": {"contentType": "text", "payloadRef": ""}}
        )

        [error] = events_of(channel, "clipboard.error")
        assert error["details"] == {"field": "payloadRef"}

    @pytest.mark.asyncio
    async def test_ack_without_id(self, core, devices, connect):
        connection, channel = await _live(core, connect, devices[0])

        await core.dispatcher.dispatch(connection, {"event": "clipboard.ack", "data": {}})

        [error] = events_of(channel, "clipboard.error")
        assert error["details"]["field"] == "clipboardId"

    @pytest.mark.asyncio
    async def test_typing_without_state(self, core, devices, connect):
        connection, channel = await _live(core, connect, devices[0])

        await core.dispatcher.dispatch(connection, {"event": "clipboard.typing", "data": {}})

        [error] = events_of(channel, "clipboard.error")
        assert error["details"]["field"] == "isTyping"

    @pytest.mark.asyncio
    async def test_storage_outage_reports_retry(self, core, devices, connect):
        connection, channel = await _live(core, connect, devices[0])

        with patch.object(core.store, "create", AsyncMock(side_effect=PersistenceError("down"))):
            await core.dispatcher.dispatch(
                connection, {"event": "clipboard.push", "data": {"contentType": "text", "payloadRef": "x"}}
            )

        [error] = events_of(channel, "clipboard.error")
        assert error["code"] == "persistence_error"
        assert error["details"] == {"retryAfter": 5}


class TestErrorEvent:

    def test_validation_details_exposed(self):
        event = error_event(ValidationError("bad", field="payloadRef"))
        assert event.details == {"field": "payloadRef"}

    def test_other_context_hidden(self):
        event = error_event(AuthError("nope", context={"token": "secret"}))
        assert event.details == {}
        assert event.code == "auth_error"

    def test_envelope_shape(self):
        envelope = error_event(ValidationError("bad")).envelope()
        assert envelope == {
            "event": "clipboard.error",
            "data": {"code": "validation_error", "message": "bad", "details": {}},
        }
