"""
Integration tests for LiveDashboard and ReadReceiptPolicy.
"""

import pytest

from portal.livesync.feed.base import FeedConnectionError, SnapshotError
from portal.livesync.sync.session import SessionState, ViewSession
from portal.livesync.views.dashboard import (
    DashboardSummary,
    LiveDashboard,
    Perspective,
    summarize,
)
from portal.livesync.views.policies import ReadReceiptPolicy
from tests.helpers import message, spin, task


def project(project_id, name, status, client_id="c1"):
    return {"id": project_id, "client_id": client_id, "name": name, "status": status}


def note(note_id, client_id="c1"):
    return {"id": note_id, "client_id": client_id, "note": "call back"}


@pytest.fixture
def seeded(backend):
    backend.seed(
        "messages",
        [
            message(1, sender_type="client", is_read_admin=False),
            message(2, sender_type="client", is_read_admin=True),
            message(3, sender_type="admin", is_read=False),
            message(4, client_id="c2", sender_type="client", is_read_admin=False),
        ],
    )
    backend.seed("tasks", [task(1), task(2, status="done"), task(3, client_id="c2")])
    backend.seed(
        "projects",
        [project(1, "Website", "Completed"), project(2, "Launch", "In Progress")],
    )
    backend.seed("admin_notes", [note(1), note(2), note(3, client_id="c2")])
    return backend


class TestSummarize:
    """Tests for the counter rules."""

    def test_empty(self):
        assert summarize([], [], [], []) == DashboardSummary(0, 0, None, 0)

    def test_unread_rule_depends_on_perspective(self):
        assert Perspective.ADMIN.unread_rule == ("client", "is_read_admin")
        assert Perspective.CLIENT.unread_rule == ("admin", "is_read")


class TestLiveDashboard:
    """Tests for LiveDashboard."""

    @pytest.fixture
    def dashboard(self, registry, seeded):
        return LiveDashboard(registry, seeded, seeded)

    @pytest.mark.asyncio
    async def test_open_summarizes_scope(self, dashboard, seeded):
        await dashboard.open("c1")

        assert dashboard.scope_key == "c1"
        assert dashboard.summary() == DashboardSummary(
            unread_messages=1,
            pending_tasks=1,
            active_project="Launch",
            note_count=2,
        )
        assert len(seeded.active_subscriptions()) == 4

    @pytest.mark.asyncio
    async def test_client_perspective(self, registry, seeded):
        dashboard = LiveDashboard(registry, seeded, seeded, perspective=Perspective.CLIENT)

        await dashboard.open("c1")

        assert dashboard.summary().unread_messages == 1

    @pytest.mark.asyncio
    async def test_live_changes_update_summary(self, dashboard, seeded):
        tables = []
        dashboard.on_change(tables.append)
        await dashboard.open("c1")
        tables.clear()

        seeded.insert("tasks", task(9))
        seeded.update("messages", 1, {"is_read_admin": True})
        seeded.delete("admin_notes", 1)

        assert tables == ["tasks", "messages", "admin_notes"]
        summary = dashboard.summary()
        assert summary.pending_tasks == 2
        assert summary.unread_messages == 0
        assert summary.note_count == 1

    @pytest.mark.asyncio
    async def test_switch_client(self, dashboard):
        await dashboard.open("c1")
        await dashboard.open("c2")

        assert dashboard.summary() == DashboardSummary(1, 1, None, 1)
        assert [e.id for e in dashboard.snapshot("messages")] == [4]

    @pytest.mark.asyncio
    async def test_reopen_same_client_is_noop(self, dashboard, seeded):
        await dashboard.open("c1")
        await dashboard.open("c1")

        assert seeded.fetch_calls == 4

    @pytest.mark.asyncio
    async def test_failed_table_closes_everything(self, dashboard, seeded):
        seeded.fail_next_fetch(FeedConnectionError("read timeout"))

        with pytest.raises(SnapshotError):
            await dashboard.open("c1")

        assert dashboard.scope_key is None
        assert all(s.state is SessionState.CLOSED for s in dashboard.sessions.values())
        assert seeded.active_subscriptions() == []

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, registry, seeded):
        async with LiveDashboard(registry, seeded, seeded, tables=("tasks",)) as dashboard:
            await dashboard.open("c1")
            assert dashboard.summary().pending_tasks == 1
            assert dashboard.summary().unread_messages == 0

        assert seeded.active_subscriptions() == []


class FailingWriter:
    def __init__(self, failures=1):
        self.failures = failures
        self.calls = []

    async def update_rows(self, table, ids, values):
        self.calls.append((table, tuple(ids), dict(values)))
        if self.failures:
            self.failures -= 1
            raise FeedConnectionError("write failed")


class TestReadReceiptPolicy:
    """Tests for mark-as-read while viewing."""

    @pytest.fixture
    def view(self, registry, seeded):
        return ViewSession.for_table("messages", registry, seeded, seeded)

    @pytest.mark.asyncio
    async def test_marks_snapshot_messages_read(self, view, seeded):
        policy = ReadReceiptPolicy(view, seeded)
        policy.attach()

        await view.open("c1")
        await policy.drain()

        assert seeded.update_calls == [("messages", (3,), {"is_read": True})]
        assert view.snapshot()[2].payload["is_read"] is True
        assert policy.pending_ids() == []

    @pytest.mark.asyncio
    async def test_marks_live_messages_read(self, view, seeded):
        policy = ReadReceiptPolicy(view, seeded)
        policy.attach()
        await view.open("c1")
        await policy.drain()

        seeded.insert(
            "messages",
            message(5, sender_type="admin", is_read=False, created_at="2024-02-01T00:00:00"),
        )
        seeded.insert(
            "messages",
            message(6, sender_type="client", is_read=False, created_at="2024-02-02T00:00:00"),
        )
        await policy.drain()

        assert seeded.update_calls[-1] == ("messages", (5,), {"is_read": True})
        assert len(seeded.update_calls) == 2

    @pytest.mark.asyncio
    async def test_admin_side_policy(self, view, seeded):
        policy = ReadReceiptPolicy(view, seeded, from_sender="client", read_field="is_read_admin")
        policy.attach()

        await view.open("c1")
        await policy.drain()

        assert seeded.update_calls == [("messages", (1,), {"is_read_admin": True})]

    @pytest.mark.asyncio
    async def test_failed_write_is_retried_on_next_change(self, view, seeded):
        writer = FailingWriter()
        policy = ReadReceiptPolicy(view, writer)
        policy.attach()
        await view.open("c1")
        await policy.drain()

        assert policy.pending_ids() == [3]

        seeded.insert("messages", message(7, sender_type="client", created_at="2024-03-01T00:00:00"))
        await policy.drain()

        assert writer.calls == [
            ("messages", (3,), {"is_read": True}),
            ("messages", (3,), {"is_read": True}),
        ]

    @pytest.mark.asyncio
    async def test_nothing_written_until_live(self, view, seeded):
        writer = FailingWriter(failures=0)
        policy = ReadReceiptPolicy(view, writer)
        policy.attach()

        seeded.fail_next_fetch(FeedConnectionError("read timeout"))
        with pytest.raises(SnapshotError):
            await view.open("c1")
        await spin()

        assert writer.calls == []

    @pytest.mark.asyncio
    async def test_detach(self, view, seeded):
        policy = ReadReceiptPolicy(view, seeded)
        policy.attach()
        policy.detach()
        policy.detach()

        await view.open("c1")
        await policy.drain()

        assert seeded.update_calls == []
