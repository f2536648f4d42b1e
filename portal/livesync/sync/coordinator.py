"""
Initial load coordination for one live view.

The InitialLoadCoordinator sequences the snapshot fetch against the live
change feed so that events arriving before, during or right after the
fetch are neither lost nor applied twice:

    IDLE ──start()──▶ LOADING ──snapshot──▶ SETTLED
      │                  │ (events buffered)   │
      └──────stop()──────┴────────stop()───────┴──▶ CLOSED

Invariants:
    - The snapshot is applied before any buffered event
    - Buffered events replay in arrival (FIFO) order
    - After stop(), nothing mutates the store: late snapshots and late
      events are discarded by the epoch guard
    - A failed start always ends CLOSED with every subscription disarmed
    - A failure of either the arm or the fetch ends start() without waiting
      for the other call

How to change safely:
    - Any new await inside start() must re-check the epoch afterwards
    - Keep stop() callable from every state, including mid-fetch
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Collection

from ..feed.base import (
    ChangeEvent,
    ChangeKind,
    SessionClosedError,
    SnapshotError,
    SnapshotSource,
    SubscriptionOpenError,
)
from ..store.entity_store import EntityStore
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


def _discard_outcome(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def _outcome(task: asyncio.Future) -> Any:
    """Result or exception of a finished task; None while it is still running."""
    if not task.done():
        return None
    exc = task.exception()
    return exc if exc is not None else task.result()


class LoadState(Enum):
    """Coordinator states."""

    IDLE = "idle"
    LOADING = "loading"
    SETTLED = "settled"
    CLOSED = "closed"


class InitialLoadCoordinator:
    """Runs one snapshot-then-live cycle for (table, scope_key).

    Attributes:
        table: Table being loaded
        scope_key: Tenant/client filter
        store: Store seeded by the snapshot and patched by events
        state: Current LoadState

    Example:
        >>> coordinator = InitialLoadCoordinator("messages", "c1", store, source, manager)
        >>> await coordinator.start()
        >>> coordinator.state
        <LoadState.SETTLED: 'settled'>
        >>> await coordinator.stop()
    """

    def __init__(
        self,
        table: str,
        scope_key: str,
        store: EntityStore,
        source: SnapshotSource,
        subscriptions: SubscriptionManager,
        on_applied: Callable[[], None] | None = None,
        kinds: Collection[ChangeKind] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            table: Table to load and watch
            scope_key: Tenant/client filter
            store: Store owned by the calling session
            source: Snapshot fetch collaborator
            subscriptions: Subscription manager owned by the calling session
            on_applied: Called after settle and after each state-changing event
            kinds: Change kinds to apply (None applies all)
        """
        self.table = table
        self.scope_key = scope_key
        self.store = store
        self.source = source
        self.subscriptions = subscriptions
        self.on_applied = on_applied
        self.kinds = frozenset(kinds) if kinds is not None else None

        self._state = LoadState.IDLE
        self._epoch = 0
        self._buffer: deque[ChangeEvent] = deque()

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def buffered(self) -> int:
        """Number of events waiting for the snapshot."""
        return len(self._buffer)

    async def start(self) -> None:
        """Load the snapshot and go live.

        Returns normally if stop() is called before the load finishes;
        the late result is discarded.

        Raises:
            SessionClosedError: If the coordinator is not IDLE
            SubscriptionOpenError: If the change feed cannot be opened
            SnapshotError: If the snapshot fetch fails
        """
        if self._state is not LoadState.IDLE:
            raise SessionClosedError(
                f"Coordinator for '{self.table}' cannot start from {self._state.value}"
            )

        self._state = LoadState.LOADING
        epoch = self._epoch
        logger.debug("Initial load started", extra=self._log_extra())

        arming = asyncio.ensure_future(
            self.subscriptions.arm(self.table, self.scope_key, self._on_event)
        )
        fetching = asyncio.ensure_future(self.source.fetch_all(self.table, self.scope_key))
        # Either call may still be running when the other fails; its outcome is dropped
        arming.add_done_callback(_discard_outcome)
        fetching.add_done_callback(_discard_outcome)

        try:
            await asyncio.wait({arming, fetching}, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            fetching.cancel()
            await self.stop()
            raise

        if epoch != self._epoch:
            # The arm may have registered after stop() already swept the manager
            fetching.cancel()
            await self.subscriptions.disarm_all()
            logger.debug("Discarded load that resolved after teardown", extra=self._log_extra())
            return

        armed = _outcome(arming)
        if isinstance(armed, BaseException):
            fetching.cancel()
            await self.stop()
            if isinstance(armed, SubscriptionOpenError):
                raise armed
            raise SubscriptionOpenError(f"Could not arm '{self.table}': {armed}") from armed

        fetched = _outcome(fetching)
        if isinstance(fetched, BaseException):
            # A subscription still connecting is released by the manager once its handle lands
            await self.stop()
            raise SnapshotError(
                f"Snapshot of '{self.table}' for scope '{self.scope_key}' failed: {fetched}"
            ) from fetched

        for entity in fetched:
            self.store.apply_insert(entity)
        self._state = LoadState.SETTLED

        replayed = len(self._buffer)
        while self._buffer:
            self._apply(self._buffer.popleft())

        logger.info(
            "View settled",
            extra={**self._log_extra(), "entities": len(self.store), "replayed": replayed},
        )
        self._notify()

    async def stop(self) -> None:
        """Tear down from any state. Idempotent."""
        if self._state is not LoadState.CLOSED:
            logger.debug("Coordinator stopping", extra=self._log_extra())
        self._epoch += 1
        self._state = LoadState.CLOSED
        self._buffer.clear()
        await self.subscriptions.disarm_all()

    def _on_event(self, event: ChangeEvent) -> None:
        if self._state is LoadState.LOADING:
            self._buffer.append(event)
        elif self._state is LoadState.SETTLED:
            if self._apply(event):
                self._notify()
        else:
            logger.debug(
                "Dropped event outside a live load",
                extra={**self._log_extra(), "event": str(event)},
            )

    def _apply(self, event: ChangeEvent) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if event.entity.scope_key not in (None, self.scope_key):
            logger.debug(
                "Dropped event for another scope",
                extra={**self._log_extra(), "event_scope": event.entity.scope_key},
            )
            return False
        return self.store.apply(event)

    def _notify(self) -> None:
        if self.on_applied is not None:
            self.on_applied()

    def _log_extra(self) -> dict:
        return {"table": self.table, "scope_key": self.scope_key, "state": self._state.value}
