"""
Subscription lifecycle management.

The SubscriptionManager owns every change-feed subscription opened on
behalf of one view session. It guarantees a single live subscription per
(table, scope_key) pair and that teardown always releases all of them.

Invariants:
    - At most one non-closed Subscription per (table, scope_key)
    - Transport handles never leave this module
    - Events for a CLOSED subscription are dropped before dispatch
    - A failed open leaves no entry and no half-open transport handle
    - Every caller that shares a connecting subscription sees the outcome
      of its one open

How to change safely:
    - Never retry a failed open here; reconnection belongs to the transport
    - Keep disarm() idempotent; it runs on every teardown path
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..feed.base import ChangeEvent, ChangeFeed, EventCallback, SubscriptionOpenError

logger = logging.getLogger(__name__)


class SubscriptionStatus(Enum):
    """Lifecycle of one subscription."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Subscription:
    """One live filtered feed owned by a SubscriptionManager.

    Attributes:
        table: Table the feed watches
        scope_key: Tenant/client filter
        status: CONNECTING until the transport confirms, then ACTIVE
    """
    table: str
    scope_key: str
    on_event: EventCallback
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    _transport_handle: Any = field(default=None, repr=False)
    _opened: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _open_error: BaseException | None = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.table, self.scope_key)

    @property
    def is_open(self) -> bool:
        return self.status is not SubscriptionStatus.CLOSED


class SubscriptionManager:
    """Opens, deduplicates and closes change-feed subscriptions.

    Example:
        >>> manager = SubscriptionManager(feed)
        >>> sub = await manager.arm("messages", "c1", on_event)
        >>> assert await manager.arm("messages", "c1", on_event) is sub
        >>> await manager.disarm_all()
    """

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed
        self._subscriptions: dict[tuple[str, str], Subscription] = {}

    async def arm(self, table: str, scope_key: str, on_event: EventCallback) -> Subscription:
        """Open one live subscription for (table, scope_key).

        If one is already armed for the pair it is returned and no
        transport call is made. A caller that finds the pair still
        connecting waits for that open and shares its outcome.

        Raises:
            SubscriptionOpenError: If the transport cannot open the feed
        """
        key = (table, scope_key)
        existing = self._subscriptions.get(key)
        if existing is not None and existing.is_open:
            await existing._opened.wait()
            if existing._open_error is not None:
                raise SubscriptionOpenError(
                    f"Could not subscribe to '{table}' for scope '{scope_key}': "
                    f"{existing._open_error}"
                ) from existing._open_error
            return existing

        sub = Subscription(table=table, scope_key=scope_key, on_event=on_event)
        self._subscriptions[key] = sub

        try:
            handle = await self.feed.subscribe(
                table, scope_key, lambda event: self._dispatch(sub, event)
            )
        except asyncio.CancelledError as e:
            self._fail_open(sub, e)
            raise
        except Exception as e:
            self._fail_open(sub, e)
            logger.warning(
                f"Failed to open subscription: {e}",
                extra={"table": table, "scope_key": scope_key},
            )
            raise SubscriptionOpenError(
                f"Could not subscribe to '{table}' for scope '{scope_key}': {e}"
            ) from e

        sub._transport_handle = handle
        sub._opened.set()
        if sub.status is SubscriptionStatus.CLOSED:
            # Disarmed while the transport call was in flight
            await self._release(sub)
            return sub

        sub.status = SubscriptionStatus.ACTIVE
        logger.debug("Subscription active", extra={"table": table, "scope_key": scope_key})
        return sub

    async def disarm(self, sub: Subscription) -> None:
        """Close a subscription. Safe to call repeatedly or after a drop."""
        if self._subscriptions.get(sub.key) is sub:
            del self._subscriptions[sub.key]

        if sub.status is SubscriptionStatus.CLOSED:
            return
        was_connecting = sub.status is SubscriptionStatus.CONNECTING
        sub.status = SubscriptionStatus.CLOSED

        # A connecting subscription is released by arm() once its handle lands
        if not was_connecting:
            await self._release(sub)

    async def disarm_all(self) -> None:
        """Close every subscription owned by this manager."""
        for sub in list(self._subscriptions.values()):
            await self.disarm(sub)

    @property
    def active(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.status is SubscriptionStatus.ACTIVE]

    def __len__(self) -> int:
        return len(self._subscriptions)

    def _fail_open(self, sub: Subscription, error: BaseException) -> None:
        sub.status = SubscriptionStatus.CLOSED
        sub._open_error = error
        if self._subscriptions.get(sub.key) is sub:
            del self._subscriptions[sub.key]
        sub._opened.set()

    def _dispatch(self, sub: Subscription, event: ChangeEvent) -> None:
        if sub.status is SubscriptionStatus.CLOSED:
            logger.debug(
                "Dropped event for closed subscription",
                extra={"table": sub.table, "scope_key": sub.scope_key},
            )
            return
        sub.on_event(event)

    async def _release(self, sub: Subscription) -> None:
        handle, sub._transport_handle = sub._transport_handle, None
        if handle is None:
            return
        try:
            await self.feed.unsubscribe(handle)
        except Exception as e:
            logger.warning(
                f"Error closing subscription: {e}",
                extra={"table": sub.table, "scope_key": sub.scope_key},
            )
