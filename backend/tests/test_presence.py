"""
ClipSync Backend — Presence Registry Unit Tests
================================================

What we test:
    ✅ register / unregister bookkeeping, including unknown ids
    ✅ Several connections per device, in connect order
    ✅ Origin-device exclusion and per-user isolation
    ✅ Snapshots are unaffected by later changes
    ✅ Concurrent register/unregister from threads
"""

import threading
from uuid import uuid4

import pytest

from clipsync.realtime.channels import QueueChannel
from clipsync.realtime.presence import PresenceRegistry


class TestPresenceRegistry:

    def setup_method(self):
        self.registry = PresenceRegistry()
        self.user = uuid4()
        self.d1, self.d2 = uuid4(), uuid4()

    def test_register_returns_unique_ids(self):
        first = self.registry.register(self.user, self.d1, QueueChannel())
        second = self.registry.register(self.user, self.d1, QueueChannel())

        assert first != second
        assert len(self.registry) == 2
        assert self.registry.get(first).device_id == self.d1

    def test_connections_listed_in_connect_order(self):
        ids = [self.registry.register(self.user, d, QueueChannel()) for d in (self.d2, self.d1, self.d2)]

        live = self.registry.live_connections(self.user)
        assert [c.connection_id for c in live] == ids

    def test_excluding_device_drops_all_its_connections(self):
        self.registry.register(self.user, self.d1, QueueChannel())
        self.registry.register(self.user, self.d1, QueueChannel())
        keep = self.registry.register(self.user, self.d2, QueueChannel())

        live = self.registry.live_connections(self.user, excluding_device_id=self.d1)
        assert [c.connection_id for c in live] == [keep]

    def test_users_are_isolated(self):
        other_user = uuid4()
        self.registry.register(other_user, uuid4(), QueueChannel())

        assert self.registry.live_connections(self.user) == ()
        assert self.registry.live_devices(other_user)

    def test_unregister_unknown_is_noop(self):
        assert self.registry.unregister("missing") is None
        assert len(self.registry) == 0

    def test_unregister_twice(self):
        cid = self.registry.register(self.user, self.d1, QueueChannel())

        removed = self.registry.unregister(cid)
        assert removed is not None and removed.connection_id == cid
        assert self.registry.unregister(cid) is None
        assert not self.registry.is_device_live(self.user, self.d1)

    def test_device_live_until_last_connection_leaves(self):
        a = self.registry.register(self.user, self.d1, QueueChannel())
        b = self.registry.register(self.user, self.d1, QueueChannel())

        self.registry.unregister(a)
        assert self.registry.is_device_live(self.user, self.d1)
        self.registry.unregister(b)
        assert not self.registry.is_device_live(self.user, self.d1)
        assert self.registry.live_devices(self.user) == set()

    def test_snapshot_is_stable(self):
        cid = self.registry.register(self.user, self.d1, QueueChannel())
        snapshot = self.registry.live_connections(self.user)

        self.registry.unregister(cid)
        self.registry.register(self.user, self.d2, QueueChannel())

        assert [c.connection_id for c in snapshot] == [cid]

    @pytest.mark.asyncio
    async def test_is_open_follows_channel(self):
        channel = QueueChannel()
        cid = self.registry.register(self.user, self.d1, channel)
        connection = self.registry.get(cid)

        assert connection.is_open
        await channel.close()
        assert not connection.is_open

    def test_concurrent_register_unregister(self):
        errors = []

        def churn():
            try:
                for _ in range(200):
                    cid = self.registry.register(self.user, uuid4(), QueueChannel())
                    self.registry.live_connections(self.user)
                    self.registry.unregister(cid)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=churn) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(self.registry) == 0
        assert self.registry.live_connections(self.user) == ()
