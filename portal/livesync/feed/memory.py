"""
In-memory backend for tests and local development.

This module provides a backend that keeps tables as dicts and delivers
change events synchronously to subscribers. It implements every
collaborator contract the core consumes:
- SnapshotSource (fetch_all)
- ChangeFeed (subscribe / unsubscribe)
- RowWriter (update_rows)

Invariants:
    - All data is lost on process exit
    - fetch_all captures its rows when called, before any held gate
    - Events are delivered in the order the writes happen

How to change safely:
    - This is test-only code, changes don't affect the hosted backend
    - Keep interface compatible with the protocols in feed.base
    - Add helpers that make delivery races reproducible
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Hashable, Mapping, Sequence

from ..kinds import KindRegistry, portal_kinds
from .base import (
    ChangeEvent,
    ChangeKind,
    Entity,
    EventCallback,
    FeedConnectionError,
)

logger = logging.getLogger(__name__)


@dataclass
class MemorySubscription:
    """Transport-side record of one in-memory subscription."""
    handle: int
    table: str
    scope_key: str
    callback: EventCallback
    active: bool = True


class InMemoryBackend:
    """Dict-backed implementation of the feed protocols.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> backend.seed("messages", [{"message_id": 1, "client_id": "c1"}])
        >>> await backend.fetch_all("messages", "c1")
    """

    def __init__(self, registry: KindRegistry | None = None) -> None:
        self.registry = registry if registry is not None else portal_kinds()
        self._tables: dict[str, dict[Hashable, dict[str, Any]]] = defaultdict(dict)
        self._subscriptions: dict[int, MemorySubscription] = {}
        self._next_handle = 1
        self._connected = False

        self._fetch_gate: asyncio.Event | None = None
        self._subscribe_gate: asyncio.Event | None = None
        self._fetch_failures: list[Exception] = []
        self._subscribe_failures: list[Exception] = []
        self._unsubscribe_failure: Exception | None = None

        # Counters for assertions in tests
        self.fetch_calls = 0
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.update_calls: list[tuple[str, tuple, dict]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBackend connected")

    async def close(self) -> None:
        """Close and drop every subscription."""
        self._connected = False
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()
        logger.debug("InMemoryBackend closed")

    # SnapshotSource

    async def fetch_all(self, table: str, scope_key: str) -> list[Entity]:
        """Return the rows of ``table`` that belong to ``scope_key``.

        Rows are captured immediately; if fetches are held, the call
        then waits for release_fetches() before returning them.
        """
        self._require_connected()
        self.fetch_calls += 1
        kind = self.registry.get(table)
        rows = [
            dict(row)
            for row in self._tables[table].values()
            if row.get(kind.scope_field) == scope_key
        ]

        gate = self._fetch_gate
        if gate is not None:
            await gate.wait()

        if self._fetch_failures:
            raise self._fetch_failures.pop(0)

        return [Entity.from_row(row, kind) for row in rows]

    # ChangeFeed

    async def subscribe(self, table: str, scope_key: str, callback: EventCallback) -> int:
        self._require_connected()
        self.subscribe_calls += 1

        # One loop turn stands in for the network round trip
        await asyncio.sleep(0)
        gate = self._subscribe_gate
        if gate is not None:
            await gate.wait()

        if self._subscribe_failures:
            raise self._subscribe_failures.pop(0)

        handle = self._next_handle
        self._next_handle += 1
        self._subscriptions[handle] = MemorySubscription(
            handle=handle,
            table=table,
            scope_key=scope_key,
            callback=callback,
        )
        logger.debug(
            "In-memory subscription opened",
            extra={"table": table, "scope_key": scope_key, "handle": handle},
        )
        return handle

    async def unsubscribe(self, handle: int) -> None:
        self.unsubscribe_calls += 1
        if self._unsubscribe_failure is not None:
            raise self._unsubscribe_failure

        sub = self._subscriptions.pop(handle, None)
        if sub is not None:
            sub.active = False

    # RowWriter

    async def update_rows(
        self, table: str, ids: Sequence[Hashable], values: Mapping[str, Any]
    ) -> None:
        self._require_connected()
        self.update_calls.append((table, tuple(ids), dict(values)))
        for entity_id in ids:
            if entity_id in self._tables[table]:
                self.update(table, entity_id, values)

    # Writes that mirror the hosted backend's change feed

    def seed(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        """Load rows without emitting events."""
        kind = self.registry.get(table)
        for row in rows:
            self._tables[table][row[kind.id_field]] = dict(row)

    def insert(self, table: str, row: Mapping[str, Any]) -> Entity:
        kind = self.registry.get(table)
        stored = dict(row)
        self._tables[table][stored[kind.id_field]] = stored
        return self._deliver(table, ChangeKind.INSERT, stored)

    def update(self, table: str, entity_id: Hashable, values: Mapping[str, Any]) -> Entity:
        stored = self._tables[table].setdefault(entity_id, {})
        stored.update(values)
        stored.setdefault(self.registry.get(table).id_field, entity_id)
        return self._deliver(table, ChangeKind.UPDATE, stored)

    def delete(self, table: str, entity_id: Hashable) -> Entity | None:
        row = self._tables[table].pop(entity_id, None)
        if row is None:
            return None
        return self._deliver(table, ChangeKind.DELETE, row)

    def emit(self, table: str, kind: ChangeKind, entity: Entity | Mapping[str, Any]) -> None:
        """Deliver an event without touching the table."""
        if not isinstance(entity, Entity):
            entity = Entity.from_row(entity, self.registry.get(table))
        self._dispatch(ChangeEvent(kind=kind, entity=entity, table=table))

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._tables[table].values()]

    # Testing helpers

    def hold_fetches(self) -> None:
        """Make fetch_all wait until release_fetches() is called."""
        self._fetch_gate = asyncio.Event()

    def release_fetches(self) -> None:
        if self._fetch_gate is not None:
            self._fetch_gate.set()
            self._fetch_gate = None

    def hold_subscribes(self) -> None:
        """Make subscribe wait until release_subscribes() is called."""
        self._subscribe_gate = asyncio.Event()

    def release_subscribes(self) -> None:
        if self._subscribe_gate is not None:
            self._subscribe_gate.set()
            self._subscribe_gate = None

    def fail_next_fetch(self, exc: Exception) -> None:
        self._fetch_failures.append(exc)

    def fail_next_subscribe(self, exc: Exception) -> None:
        self._subscribe_failures.append(exc)

    def fail_unsubscribe(self, exc: Exception | None) -> None:
        """Make every unsubscribe raise ``exc`` (None restores normal closes)."""
        self._unsubscribe_failure = exc

    def active_subscriptions(self, table: str | None = None) -> list[tuple[str, str]]:
        return [
            (sub.table, sub.scope_key)
            for sub in self._subscriptions.values()
            if table is None or sub.table == table
        ]

    def _deliver(self, table: str, kind: ChangeKind, row: Mapping[str, Any]) -> Entity:
        entity = Entity.from_row(row, self.registry.get(table))
        self._dispatch(ChangeEvent(kind=kind, entity=entity, table=table))
        return entity

    def _dispatch(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions.values()):
            if not sub.active or sub.table != event.table:
                continue
            if event.entity.scope_key not in (None, sub.scope_key):
                continue
            sub.callback(event)

    def _require_connected(self) -> None:
        if not self._connected:
            raise FeedConnectionError("Not connected")
