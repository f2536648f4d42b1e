"""
Live dashboards built from several view sessions.

The admin client page and the client dashboard both watch several
tables for one client at once and render counters from them (unread
messages, pending tasks, the active project). A LiveDashboard opens one
ViewSession per table for the same scope and derives those counters from
the live snapshots, so a change on any table updates only what it touches
instead of re-running every widget query.

Invariants:
    - All sessions of a dashboard share one scope at a time
    - A failed open leaves every session closed
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from ..feed.base import ChangeFeed, Entity, SnapshotSource
from ..kinds import KindRegistry
from ..sync.session import SessionState, ViewSession

logger = logging.getLogger(__name__)

DEFAULT_TABLES = ("messages", "projects", "tasks", "admin_notes")
ACTIVE_PROJECT_STATUSES = ("Active", "In Progress")


class Perspective(Enum):
    """Who is looking at the dashboard; decides which messages are unread."""

    ADMIN = "admin"
    CLIENT = "client"

    @property
    def unread_rule(self) -> tuple[str, str]:
        """(sender_type of incoming messages, read flag column)."""
        if self is Perspective.ADMIN:
            return ("client", "is_read_admin")
        return ("admin", "is_read")


@dataclass(frozen=True)
class DashboardSummary:
    """Widget counters for one client."""
    unread_messages: int
    pending_tasks: int
    active_project: str | None
    note_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "unread_messages": self.unread_messages,
            "pending_tasks": self.pending_tasks,
            "active_project": self.active_project,
            "note_count": self.note_count,
        }


def summarize(
    messages: Sequence[Entity],
    tasks: Sequence[Entity],
    projects: Sequence[Entity],
    notes: Sequence[Entity],
    perspective: Perspective = Perspective.ADMIN,
) -> DashboardSummary:
    sender, read_field = perspective.unread_rule
    unread = sum(
        1
        for m in messages
        if m.payload.get("sender_type") == sender and not m.payload.get(read_field, False)
    )
    pending = sum(1 for t in tasks if t.payload.get("status") == "pending")
    active = next(
        (p.payload.get("name") for p in projects if p.payload.get("status") in ACTIVE_PROJECT_STATUSES),
        None,
    )
    return DashboardSummary(
        unread_messages=unread,
        pending_tasks=pending,
        active_project=active,
        note_count=len(notes),
    )


class LiveDashboard:
    """Several live tables for one scope.

    Example:
        >>> dashboard = LiveDashboard(registry, backend, backend)
        >>> dashboard.on_change(lambda table: refresh(dashboard.summary()))
        >>> await dashboard.open("client-42")
    """

    def __init__(
        self,
        registry: KindRegistry,
        source: SnapshotSource,
        feed: ChangeFeed,
        tables: Sequence[str] = DEFAULT_TABLES,
        perspective: Perspective = Perspective.ADMIN,
    ) -> None:
        self.perspective = perspective
        self.sessions: dict[str, ViewSession] = {
            table: ViewSession.for_table(table, registry, source, feed) for table in tables
        }
        self._scope_key: str | None = None
        self._listeners: list[Callable[[str], None]] = []
        for table, session in self.sessions.items():
            session.on_change(functools.partial(self._forward, table))

    @property
    def scope_key(self) -> str | None:
        return self._scope_key

    async def open(self, scope_key: str) -> None:
        """Open every table for ``scope_key``.

        Raises:
            SnapshotError, SubscriptionOpenError: The first failure seen;
            all sessions are closed before it is raised.
        """
        if scope_key == self._scope_key and all(
            s.state in (SessionState.LOADING, SessionState.LIVE) for s in self.sessions.values()
        ):
            return

        self._scope_key = scope_key
        results = await asyncio.gather(
            *(session.open(scope_key) for session in self.sessions.values()),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(
                f"Dashboard failed to open: {errors[0]}",
                extra={"scope_key": scope_key, "failures": len(errors)},
            )
            await self.close()
            raise errors[0]

    async def close(self) -> None:
        self._scope_key = None
        await asyncio.gather(*(session.close() for session in self.sessions.values()))

    def snapshot(self, table: str) -> list[Entity]:
        return self.sessions[table].snapshot()

    def on_change(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Register a listener called with the name of the table that changed."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def summary(self) -> DashboardSummary:
        def rows(table: str) -> list[Entity]:
            session = self.sessions.get(table)
            return session.snapshot() if session is not None else []

        return summarize(
            rows("messages"),
            rows("tasks"),
            rows("projects"),
            rows("admin_notes"),
            self.perspective,
        )

    async def __aenter__(self) -> LiveDashboard:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _forward(self, table: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(table)
            except Exception as e:
                logger.error(f"Dashboard listener failed: {e}", exc_info=True)
