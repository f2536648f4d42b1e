"""
View sessions: the composition root of one live page.

A ViewSession ties a mounted view's interest in one scope to exactly one
EntityStore, one SubscriptionManager and one InitialLoadCoordinator run.
Pages call open(scope_key) when they mount or switch scope, close() when
they unmount, and re-read snapshot() whenever on_change fires.

Invariants:
    - Switching scope fully tears down the old run before a new one starts
    - Re-opening the scope that is loading or live is a no-op
    - Nothing is shared between runs; each open builds a fresh store and
      subscription set
    - After a failed open the session holds no subscriptions and an empty
      store, and reports FAILED with the error

How to change safely:
    - Collaborators are injected; never reach for a module-level client
    - Re-check the generation after every await in open()
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Collection

from ..feed.base import ChangeFeed, ChangeKind, Entity, LiveSyncError, SnapshotSource
from ..kinds import EntityKind, KindRegistry
from ..store.entity_store import EntityStore
from .coordinator import InitialLoadCoordinator, LoadState
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


class SessionState(Enum):
    """What the presentation layer should show."""

    CLOSED = "closed"
    LOADING = "loading"
    LIVE = "live"
    FAILED = "failed"


class ViewSession:
    """One mounted view's live, scoped list of entities.

    Attributes:
        kind: Column mapping of the watched table
        source: Snapshot fetch collaborator
        feed: Change feed collaborator
        kinds: Change kinds to apply (None applies all)

    Example:
        >>> view = ViewSession(kind, source=backend, feed=backend)
        >>> view.on_change(lambda: render(view.snapshot()))
        >>> await view.open("client-42")
        >>> await view.open("client-43")  # tears down client-42 first
        >>> await view.close()
    """

    def __init__(
        self,
        kind: EntityKind,
        source: SnapshotSource,
        feed: ChangeFeed,
        kinds: Collection[ChangeKind] | None = None,
    ) -> None:
        self.kind = kind
        self.source = source
        self.feed = feed
        self.kinds = kinds

        self._scope_key: str | None = None
        self._store = EntityStore(kind)
        self._coordinator: InitialLoadCoordinator | None = None
        self._state = SessionState.CLOSED
        self._error: LiveSyncError | None = None
        self._generation = 0
        self._listeners: list[ChangeListener] = []

    @classmethod
    def for_table(
        cls,
        table: str,
        registry: KindRegistry,
        source: SnapshotSource,
        feed: ChangeFeed,
        kinds: Collection[ChangeKind] | None = None,
    ) -> ViewSession:
        return cls(registry.get(table), source, feed, kinds=kinds)

    @property
    def table(self) -> str:
        return self.kind.table

    @property
    def scope_key(self) -> str | None:
        return self._scope_key

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> LiveSyncError | None:
        return self._error

    async def open(self, scope_key: str) -> None:
        """Start (or keep) a live view of ``scope_key``.

        Raises:
            SnapshotError: If the snapshot fetch failed
            SubscriptionOpenError: If the change feed could not be opened
        """
        if scope_key == self._scope_key and self._state in (
            SessionState.LOADING,
            SessionState.LIVE,
        ):
            return

        self._generation += 1
        generation = self._generation
        had_rows = len(self._store) > 0
        await self._teardown()
        if generation != self._generation:
            # A later open() or close() took over while we were tearing down
            if had_rows:
                self._notify()
            return

        store = EntityStore(self.kind, scope_key)
        coordinator = InitialLoadCoordinator(
            self.kind.table,
            scope_key,
            store,
            self.source,
            SubscriptionManager(self.feed),
            on_applied=self._on_applied,
            kinds=self.kinds,
        )
        self._store = store
        self._coordinator = coordinator
        self._scope_key = scope_key
        self._state = SessionState.LOADING
        self._error = None
        logger.info("Opening view", extra={"table": self.table, "scope_key": scope_key})
        if had_rows:
            # Listeners must not keep showing the previous scope's rows
            self._notify()

        try:
            await coordinator.start()
        except LiveSyncError as e:
            if self._coordinator is coordinator:
                self._coordinator = None
                self._store = EntityStore(self.kind, scope_key)
                self._state = SessionState.FAILED
                self._error = e
                logger.error(
                    f"View failed to open: {e}",
                    extra={"table": self.table, "scope_key": scope_key},
                )
                self._notify()
            raise

    async def close(self) -> None:
        """Tear the view down. Always safe, always idempotent."""
        self._generation += 1
        had_rows = len(self._store) > 0
        await self._teardown()
        self._scope_key = None
        self._state = SessionState.CLOSED
        self._error = None
        if had_rows:
            self._notify()

    def snapshot(self) -> list[Entity]:
        """Current entities in display order (a fresh list each call)."""
        return self._store.snapshot()

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def __aenter__(self) -> ViewSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _teardown(self) -> None:
        coordinator, self._coordinator = self._coordinator, None
        self._store = EntityStore(self.kind)
        if coordinator is not None:
            await coordinator.stop()
            logger.info(
                "View closed",
                extra={"table": self.table, "scope_key": coordinator.scope_key},
            )

    def _on_applied(self) -> None:
        coordinator = self._coordinator
        if coordinator is not None and coordinator.state is LoadState.SETTLED:
            self._state = SessionState.LIVE
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(
                    f"Change listener failed: {e}",
                    exc_info=True,
                    extra={"table": self.table, "scope_key": self._scope_key},
                )
