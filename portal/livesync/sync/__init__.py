"""
Realtime synchronization core for portal-livesync.

This module handles:
- Subscription lifecycle (one live feed per table and scope)
- Initial load sequencing (snapshot first, buffered events replayed after)
- View sessions (open/close per scope, change notifications)

Invariants:
    - No event is lost between arming a feed and applying its snapshot
    - No event is applied twice across remounts; runs share no state
    - Teardown is unconditional and safe from any state

How to change safely:
    - Test every change against the before/during/after delivery races
    - Verify teardown with a test double that counts subscribe calls
"""

from .coordinator import InitialLoadCoordinator, LoadState
from .session import SessionState, ViewSession
from .subscriptions import Subscription, SubscriptionManager, SubscriptionStatus

__all__ = [
    "InitialLoadCoordinator",
    "LoadState",
    "SessionState",
    "Subscription",
    "SubscriptionManager",
    "SubscriptionStatus",
    "ViewSession",
]
