"""
Unit tests for InitialLoadCoordinator.

Tests cover:
- Snapshot seeding and FIFO replay of buffered events
- Events racing the fetch (before, during and after)
- Teardown mid-load and failure cleanup
"""

import asyncio

import pytest

from portal.livesync.feed.base import (
    ChangeEvent,
    ChangeKind,
    Entity,
    FeedConnectionError,
    SessionClosedError,
    SnapshotError,
    SubscriptionOpenError,
)
from portal.livesync.store.entity_store import EntityStore
from portal.livesync.sync.coordinator import InitialLoadCoordinator, LoadState
from portal.livesync.sync.subscriptions import SubscriptionManager
from tests.helpers import spin, task


def titles(store):
    return [e.payload.get("title") for e in store.snapshot()]


class TestInitialLoadCoordinator:
    """Tests for InitialLoadCoordinator."""

    @pytest.fixture
    def store(self, registry):
        return EntityStore(registry.get("tasks"), scope_key="c1")

    @pytest.fixture
    def notifications(self):
        return []

    @pytest.fixture
    def coordinator(self, backend, store, notifications):
        return InitialLoadCoordinator(
            "tasks",
            "c1",
            store,
            backend,
            SubscriptionManager(backend),
            on_applied=lambda: notifications.append(len(store)),
        )

    @pytest.mark.asyncio
    async def test_start_seeds_snapshot(self, coordinator, backend, store):
        """Start loads the scope's rows and settles."""
        backend.seed("tasks", [task(1, title="a"), task(2, title="b"), task(3, client_id="c2")])

        await coordinator.start()

        assert coordinator.state is LoadState.SETTLED
        assert sorted(e.id for e in store.snapshot()) == [1, 2]
        assert backend.active_subscriptions() == [("tasks", "c1")]

    @pytest.mark.asyncio
    async def test_settle_notifies_once(self, coordinator, backend, notifications):
        backend.seed("tasks", [task(1)])

        await coordinator.start()

        assert notifications == [1]

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, coordinator):
        await coordinator.start()

        with pytest.raises(SessionClosedError):
            await coordinator.start()

    @pytest.mark.asyncio
    async def test_start_after_stop_raises(self, coordinator):
        await coordinator.stop()

        with pytest.raises(SessionClosedError):
            await coordinator.start()

    @pytest.mark.asyncio
    async def test_update_during_fetch_wins_over_snapshot(self, coordinator, backend, store):
        """An update delivered while the fetch is in flight is replayed after seeding."""
        backend.seed("tasks", [task(1, title="orig")])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        backend.update("tasks", 1, {"title": "x"})
        assert coordinator.state is LoadState.LOADING
        assert coordinator.buffered == 1
        assert len(store) == 0

        backend.release_fetches()
        await starting

        assert titles(store) == ["x"]
        assert coordinator.buffered == 0

    @pytest.mark.parametrize("moment", ["before_settle", "after_settle"])
    @pytest.mark.asyncio
    async def test_insert_is_applied_once(self, coordinator, backend, store, moment):
        """A new row shows up exactly once whenever it arrives."""
        backend.seed("tasks", [task(1, title="a")])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        if moment == "before_settle":
            backend.insert("tasks", task(2, title="b"))
            backend.release_fetches()
            await starting
        else:
            backend.release_fetches()
            await starting
            backend.insert("tasks", task(2, title="b"))

        assert titles(store) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_row_written_before_start_comes_from_snapshot(self, coordinator, backend, store):
        backend.insert("tasks", task(1, title="early"))

        await coordinator.start()

        assert titles(store) == ["early"]

    @pytest.mark.asyncio
    async def test_duplicate_of_snapshot_row_is_harmless(self, coordinator, backend, store):
        """Replaying an event already covered by the snapshot changes nothing."""
        backend.seed("tasks", [task(1, title="a")])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        backend.emit("tasks", ChangeKind.INSERT, task(1, title="a"))
        backend.release_fetches()
        await starting

        assert titles(store) == ["a"]

    @pytest.mark.asyncio
    async def test_buffer_replays_in_arrival_order(self, coordinator, backend, store):
        backend.seed("tasks", [task(1, title="orig")])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        backend.update("tasks", 1, {"title": "first"})
        backend.delete("tasks", 1)
        backend.insert("tasks", task(1, title="third"))
        backend.release_fetches()
        await starting

        assert titles(store) == ["third"]

    @pytest.mark.asyncio
    async def test_delete_during_fetch_removes_seeded_row(self, coordinator, backend, store):
        backend.seed("tasks", [task(1), task(2)])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        backend.delete("tasks", 1)
        backend.release_fetches()
        await starting

        assert [e.id for e in store.snapshot()] == [2]

    @pytest.mark.asyncio
    async def test_live_events_notify_only_on_change(self, coordinator, backend, notifications):
        await coordinator.start()
        notifications.clear()

        backend.insert("tasks", task(1, title="a"))
        backend.emit("tasks", ChangeKind.INSERT, task(1, title="a"))
        backend.delete("tasks", 1)

        assert notifications == [1, 0]

    @pytest.mark.asyncio
    async def test_kinds_filter(self, backend, store):
        """Only the configured change kinds are applied."""
        coordinator = InitialLoadCoordinator(
            "tasks",
            "c1",
            store,
            backend,
            SubscriptionManager(backend),
            kinds={ChangeKind.INSERT},
        )
        await coordinator.start()

        backend.insert("tasks", task(1, title="a"))
        backend.update("tasks", 1, {"title": "b"})
        backend.delete("tasks", 1)

        assert titles(store) == ["a"]

    @pytest.mark.asyncio
    async def test_event_for_other_scope_is_dropped(self, coordinator, store):
        await coordinator.start()

        stray = Entity(id=9, scope_key="c2", payload={"id": 9, "client_id": "c2"})
        coordinator._on_event(ChangeEvent(ChangeKind.INSERT, stray, table="tasks"))

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_stop_mid_load_discards_late_snapshot(
        self, coordinator, backend, store, notifications
    ):
        """A snapshot that resolves after stop() never touches the store."""
        backend.seed("tasks", [task(1)])
        backend.hold_fetches()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        await coordinator.stop()
        backend.release_fetches()
        await starting

        assert coordinator.state is LoadState.CLOSED
        assert len(store) == 0
        assert notifications == []
        assert backend.active_subscriptions() == []

    @pytest.mark.asyncio
    async def test_stop_while_arming_releases_late_subscription(self, coordinator, backend):
        backend.hold_subscribes()
        starting = asyncio.create_task(coordinator.start())
        await spin()

        await coordinator.stop()
        backend.release_subscribes()
        await starting

        assert backend.active_subscriptions() == []

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(self, coordinator, backend, store):
        await coordinator.start()
        await coordinator.stop()

        backend.insert("tasks", task(1))

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, coordinator, backend):
        await coordinator.start()

        await coordinator.stop()
        await coordinator.stop()

        assert coordinator.state is LoadState.CLOSED
        assert backend.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_snapshot_failure_closes(self, coordinator, backend, store):
        """A failed fetch raises SnapshotError and disarms the feed."""
        backend.fail_next_fetch(FeedConnectionError("read timeout"))

        with pytest.raises(SnapshotError) as exc_info:
            await coordinator.start()

        assert isinstance(exc_info.value.__cause__, FeedConnectionError)
        assert coordinator.state is LoadState.CLOSED
        assert backend.active_subscriptions() == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_subscribe_failure_closes(self, coordinator, backend, store):
        backend.seed("tasks", [task(1)])
        backend.fail_next_subscribe(FeedConnectionError("refused"))

        with pytest.raises(SubscriptionOpenError):
            await coordinator.start()

        assert coordinator.state is LoadState.CLOSED
        assert backend.active_subscriptions() == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_subscribe_failure_does_not_wait_for_fetch(self, coordinator, backend, store):
        """A refused feed fails start while the snapshot read is still hanging."""
        backend.hold_fetches()
        backend.fail_next_subscribe(FeedConnectionError("refused"))

        with pytest.raises(SubscriptionOpenError):
            await asyncio.wait_for(coordinator.start(), timeout=1.0)

        assert coordinator.state is LoadState.CLOSED
        assert backend.active_subscriptions() == []
        backend.release_fetches()
        await spin()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_snapshot_failure_does_not_wait_for_subscribe(self, coordinator, backend):
        """A failed read fails start at once; the late feed is closed when it lands."""
        backend.hold_subscribes()
        backend.fail_next_fetch(FeedConnectionError("read timeout"))

        with pytest.raises(SnapshotError):
            await asyncio.wait_for(coordinator.start(), timeout=1.0)

        assert coordinator.state is LoadState.CLOSED

        backend.release_subscribes()
        await spin()

        assert backend.active_subscriptions() == []
        assert backend.unsubscribe_calls == 1
