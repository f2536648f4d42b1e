"""
portal-livesync - live, tenant-scoped entity lists for the client portal.

Every realtime page of the portal (admin dashboard, client dashboard,
messages, documents, projects) needs the same thing: load the rows of a
table for one client, keep them current from the backend's change feed,
and stop cleanly when the page goes away or switches client. This
package implements that once:

    ┌────────────┐  fetch_all   ┌──────────────────────────┐
    │  Backend   │─────────────▶│  InitialLoadCoordinator  │
    │ (Supabase) │  subscribe   │  buffer ▸ seed ▸ replay  │
    │            │─────────────▶│  (SubscriptionManager)   │
    └────────────┘              └────────────┬─────────────┘
                                             │ apply
                                             ▼
                                ┌────────────────────────────┐
                                │ EntityStore ─▶ ViewSession │──▶ on_change / snapshot()
                                └────────────────────────────┘

Invariants:
    - A snapshot is always applied before the events buffered during it
    - No event is applied twice; duplicate deliveries are no-ops
    - Switching scope tears down the previous run completely
    - Teardown is safe from any state, including mid-fetch

How to change safely:
    - Keep backends behind the protocols in feed.base
    - Test every change against the initial-load delivery races
"""

from ._version import __version__
from .feed.base import ChangeEvent, ChangeKind, Entity
from .kinds import EntityKind, KindRegistry, portal_kinds
from .store import EntityStore
from .sync import InitialLoadCoordinator, SessionState, SubscriptionManager, ViewSession

__all__ = [
    "__version__",
    "ChangeEvent",
    "ChangeKind",
    "Entity",
    "EntityKind",
    "EntityStore",
    "InitialLoadCoordinator",
    "KindRegistry",
    "SessionState",
    "SubscriptionManager",
    "ViewSession",
    "portal_kinds",
]
