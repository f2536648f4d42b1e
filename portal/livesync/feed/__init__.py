"""
Backend feed abstraction for portal-livesync.

This module provides the collaborator contracts the sync core consumes
and the backends that implement them:
- Supabase (hosted Postgres + realtime, production)
- In-memory (tests and local development)

Invariants:
    - Snapshot reads are point-in-time for one (table, scope)
    - Change events are delivered at-least-once, in delivery order
    - A subscribe call either returns a live handle or raises

How to change safely:
    - New backends must implement SnapshotSource, ChangeFeed and RowWriter
    - Keep the memory backend's delivery semantics aligned with production
"""

from .base import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    Entity,
    EventCallback,
    FeedConnectionError,
    FeedError,
    FeedSerializationError,
    FeedTimeoutError,
    LiveSyncError,
    RowWriter,
    SessionClosedError,
    SnapshotError,
    SnapshotSource,
    SubscriptionOpenError,
    create_backend,
)
from .memory import InMemoryBackend

__all__ = [
    # Protocols and types
    "SnapshotSource",
    "ChangeFeed",
    "RowWriter",
    "ChangeEvent",
    "ChangeKind",
    "Entity",
    "EventCallback",
    # Errors
    "LiveSyncError",
    "FeedError",
    "FeedConnectionError",
    "FeedTimeoutError",
    "FeedSerializationError",
    "SnapshotError",
    "SubscriptionOpenError",
    "SessionClosedError",
    # Factory
    "create_backend",
    # Implementations
    "InMemoryBackend",
]
