"""
Base protocols and types for the change-feed abstraction.

This module defines the collaborator contracts the sync core consumes
(snapshot source, change feed, row writer), the entity and event types
that flow through them, and the error taxonomy shared by every layer.

Invariants:
    - Entity ids are stable for the entity's lifetime
    - Entity payloads are read-only once constructed
    - Feeds deliver events at-least-once, in delivery order per subscription

How to change safely:
    - Protocol changes require updating every backend (memory, supabase)
    - Add new optional methods with default behavior in the core
"""

from __future__ import annotations

import time
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Hashable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import SyncConfig
    from ..kinds import EntityKind, KindRegistry

logger = logging.getLogger(__name__)


class LiveSyncError(Exception):
    """Base exception for the sync core."""
    pass


class FeedError(LiveSyncError):
    """Base exception for backend feed operations."""
    pass


class FeedConnectionError(FeedError):
    """Connection to the backend failed."""
    pass


class FeedTimeoutError(FeedError):
    """Backend operation timed out."""
    pass


class FeedSerializationError(FeedError):
    """Failed to decode a backend row or change payload."""
    pass


class SnapshotError(LiveSyncError):
    """The snapshot fetch for a view failed."""
    pass


class SubscriptionOpenError(LiveSyncError):
    """The transport could not establish a change subscription."""
    pass


class SessionClosedError(LiveSyncError):
    """Operation attempted on a coordinator run that has been closed."""
    pass


class ChangeKind(str, Enum):
    """Row-level change kinds delivered by a feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: str) -> ChangeKind:
        """Parse a backend spelling ("INSERT", "Update", ...).

        Raises:
            FeedSerializationError: If the value is not a known kind
        """
        try:
            return cls(str(value).lower())
        except ValueError:
            raise FeedSerializationError(f"Unknown change kind: {value!r}") from None


@dataclass(frozen=True)
class Entity:
    """One row of a live table.

    Attributes:
        id: Opaque unique identifier
        scope_key: Tenant/client the row belongs to
        payload: Full row contents (read-only view)
        order_key: Display ordering value; never used for merge decisions
    """
    id: Hashable
    scope_key: Optional[str]
    payload: Mapping[str, Any] = field(default_factory=dict)
    order_key: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @classmethod
    def from_row(
        cls,
        row: Mapping[str, Any],
        kind: EntityKind,
        scope_key: Optional[str] = None,
    ) -> Entity:
        """Build an entity from a raw backend row.

        Args:
            row: Column mapping as returned by the backend
            kind: Column mapping for the row's table
            scope_key: Scope to use when the row lacks the scope column

        Raises:
            FeedSerializationError: If the row has no id column
        """
        if kind.id_field not in row:
            raise FeedSerializationError(
                f"Row from '{kind.table}' has no '{kind.id_field}' column"
            )
        order_key = row.get(kind.order_field) if kind.order_field else None
        return cls(
            id=row[kind.id_field],
            scope_key=row.get(kind.scope_field, scope_key),
            payload=row,
            order_key=order_key,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form for JSON responses."""
        return {
            "id": self.id,
            "scope_key": self.scope_key,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class ChangeEvent:
    """A tagged change notification for one entity."""
    kind: ChangeKind
    entity: Entity
    table: str = ""
    received_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def __str__(self) -> str:
        return f"ChangeEvent({self.kind.value} {self.table}:{self.entity.id})"


EventCallback = Callable[[ChangeEvent], None]


@runtime_checkable
class SnapshotSource(Protocol):
    """Loads the current rows of a table for one scope."""

    @abstractmethod
    async def fetch_all(self, table: str, scope_key: str) -> Sequence[Entity]:
        """Return a consistent point-in-time set of entities.

        Raises:
            FeedError: If the backend read fails
        """
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Delivers row-level change events for a (table, scope) filter.

    Delivery contract:
        - At-least-once; duplicates are expected
        - Delivery order within one subscription, no cross-table order
        - Callbacks are invoked on the event loop thread
    """

    @abstractmethod
    async def subscribe(self, table: str, scope_key: str, callback: EventCallback) -> Any:
        """Open a live subscription and return an opaque handle.

        Raises:
            FeedConnectionError: If the subscription cannot be established
            FeedTimeoutError: If the backend did not confirm in time
        """
        ...

    @abstractmethod
    async def unsubscribe(self, handle: Any) -> None:
        """Close a subscription and release transport resources."""
        ...


@runtime_checkable
class RowWriter(Protocol):
    """Writes column values back to rows (used by presentation policies)."""

    @abstractmethod
    async def update_rows(
        self, table: str, ids: Sequence[Hashable], values: Mapping[str, Any]
    ) -> None:
        ...


async def create_backend(config: SyncConfig, registry: KindRegistry) -> Any:
    """Create and connect the configured backend.

    The returned object implements SnapshotSource, ChangeFeed and
    RowWriter. Its lifecycle belongs to the caller.

    Raises:
        ValueError: If the backend is not supported
        FeedConnectionError: If the backend cannot connect
    """
    from ..config import Backend
    from .memory import InMemoryBackend

    if config.backend == Backend.MEMORY:
        backend = InMemoryBackend(registry)
    elif config.backend == Backend.SUPABASE:
        from .supabase import SupabaseBackend

        backend = SupabaseBackend(config.supabase, registry)
    else:
        raise ValueError(f"Unsupported backend: {config.backend}")

    await backend.connect()
    return backend
