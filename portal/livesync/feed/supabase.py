"""
Supabase backend for the change-feed abstraction.

The client portal runs on a hosted Postgres with PostgREST for reads and
writes and a realtime service that streams row changes over channels.
This module adapts both to the collaborator protocols in feed.base:
- fetch_all: PostgREST select filtered by the kind's scope column
- subscribe: one realtime channel with a postgres_changes binding
- update_rows: PostgREST update filtered by id

Invariants:
    - subscribe() returns only after the channel reports SUBSCRIBED
    - A channel that fails to subscribe is removed before the error surfaces
    - Reconnection of an established channel is left to the realtime client

How to change safely:
    - Test against a local Supabase stack before deploying
    - Keep decode_change tolerant of both realtime payload layouts
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Hashable

import httpx

from ..kinds import KindRegistry
from .base import (
    ChangeEvent,
    ChangeKind,
    Entity,
    EventCallback,
    FeedConnectionError,
    FeedError,
    FeedSerializationError,
    FeedTimeoutError,
)

logger = logging.getLogger(__name__)

# Try to import supabase, provide helpful message if not installed
try:
    from postgrest.exceptions import APIError
    from supabase import AsyncClient, acreate_client

    SUPABASE_AVAILABLE = True
    _BACKEND_ERRORS: tuple[type[BaseException], ...] = (APIError, httpx.HTTPError)
except ImportError:
    SUPABASE_AVAILABLE = False
    AsyncClient = None
    acreate_client = None
    _BACKEND_ERRORS = (httpx.HTTPError,)

_FAILED_STATES = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


class SupabaseBackend:
    """Supabase implementation of SnapshotSource, ChangeFeed and RowWriter.

    Attributes:
        config: SupabaseConfig with URL, key, schema and timeouts
        registry: Column mappings for the live tables

    Example:
        >>> backend = SupabaseBackend(config.supabase, portal_kinds())
        >>> await backend.connect()
        >>> rows = await backend.fetch_all("messages", "client-42")
    """

    def __init__(
        self,
        config: Any,
        registry: KindRegistry,
        client: Any | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            config: SupabaseConfig instance
            registry: Kind registry for the live tables
            client: Pre-built async client (skips connect())

        Raises:
            ImportError: If supabase is not installed and no client is given
        """
        if client is None and not SUPABASE_AVAILABLE:
            raise ImportError(
                "supabase is required for the Supabase backend. Install with: pip install supabase"
            )

        self.config = config
        self.registry = registry
        self._client = client
        self._connected = client is not None
        self._channel_seq = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Create the async client.

        Raises:
            FeedConnectionError: If the client cannot be created
        """
        if self._connected:
            return

        try:
            self._client = await acreate_client(self.config.url, self.config.key)
        except Exception as e:
            raise FeedConnectionError(f"Failed to connect to Supabase: {e}") from e

        self._connected = True
        logger.info(
            "Connected to Supabase",
            extra={"url": self.config.url, "schema": self.config.schema},
        )

    async def close(self) -> None:
        """Remove every realtime channel and drop the client."""
        if self._client is not None:
            try:
                await self._client.remove_all_channels()
            except Exception as e:
                logger.warning(f"Error removing realtime channels: {e}")
        self._connected = False
        logger.info("Supabase backend closed")

    async def fetch_all(self, table: str, scope_key: str) -> list[Entity]:
        """Select every row of ``table`` in ``scope_key``.

        Raises:
            FeedConnectionError: If not connected
            FeedError: If PostgREST rejects or fails the read
        """
        self._require_connected()
        kind = self.registry.get(table)

        query = self._table(table).select("*").eq(kind.scope_field, scope_key)
        if kind.order_field:
            query = query.order(kind.order_field, desc=kind.descending)

        try:
            response = await query.execute()
        except _BACKEND_ERRORS as e:
            raise FeedError(f"Snapshot read from '{table}' failed: {e}") from e

        return [Entity.from_row(row, kind, scope_key) for row in response.data or []]

    async def subscribe(self, table: str, scope_key: str, callback: EventCallback) -> Any:
        """Open a realtime channel for one (table, scope) filter.

        Returns:
            The realtime channel, used as the unsubscribe handle

        Raises:
            FeedConnectionError: If the channel reports an error or closes
            FeedTimeoutError: If SUBSCRIBED is not reported in time
        """
        self._require_connected()
        kind = self.registry.get(table)
        confirmed: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_status(status: Any, err: Exception | None = None) -> None:
            state = str(getattr(status, "value", status))
            if confirmed.done():
                if state in _FAILED_STATES:
                    logger.warning(
                        "Realtime channel left SUBSCRIBED",
                        extra={"table": table, "scope_key": scope_key, "status": state},
                    )
                return
            if state == "SUBSCRIBED":
                confirmed.set_result(None)
            elif state in _FAILED_STATES:
                confirmed.set_exception(
                    FeedConnectionError(f"Channel for '{table}' reported {state}: {err}")
                )

        def on_change(payload: Mapping[str, Any]) -> None:
            try:
                event = self.decode_change(table, scope_key, payload)
            except FeedSerializationError as e:
                logger.warning(
                    f"Dropping undecodable change payload: {e}",
                    extra={"table": table, "scope_key": scope_key},
                )
                return
            callback(event)

        channel = self._client.channel(
            f"livesync-{table}-{scope_key}-{next(self._channel_seq)}"
        )
        channel.on_postgres_changes(
            "*",
            callback=on_change,
            table=table,
            schema=self.config.schema,
            filter=f"{kind.scope_field}=eq.{scope_key}",
        )

        try:
            await channel.subscribe(on_status)
            await asyncio.wait_for(confirmed, timeout=self.config.subscribe_timeout_seconds)
        except asyncio.TimeoutError as e:
            await self._discard_channel(channel)
            raise FeedTimeoutError(
                f"Channel for '{table}' not confirmed within "
                f"{self.config.subscribe_timeout_seconds}s"
            ) from e
        except FeedError:
            await self._discard_channel(channel)
            raise
        except Exception as e:
            await self._discard_channel(channel)
            raise FeedConnectionError(f"Failed to subscribe to '{table}': {e}") from e

        logger.debug(
            "Realtime channel subscribed",
            extra={"table": table, "scope_key": scope_key},
        )
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        self._require_connected()
        try:
            await self._client.remove_channel(handle)
        except Exception as e:
            raise FeedConnectionError(f"Failed to remove realtime channel: {e}") from e

    async def update_rows(
        self, table: str, ids: Sequence[Hashable], values: Mapping[str, Any]
    ) -> None:
        """Set ``values`` on every row of ``table`` whose id is in ``ids``.

        Raises:
            FeedError: If PostgREST rejects or fails the write
        """
        self._require_connected()
        if not ids:
            return
        kind = self.registry.get(table)

        try:
            await self._table(table).update(dict(values)).in_(kind.id_field, list(ids)).execute()
        except _BACKEND_ERRORS as e:
            raise FeedError(f"Update on '{table}' failed: {e}") from e

    def decode_change(
        self, table: str, scope_key: str, payload: Mapping[str, Any]
    ) -> ChangeEvent:
        """Decode a realtime postgres_changes payload.

        Accepts both the nested layout ({"data": {"type", "record",
        "old_record"}}) and the flat one ({"eventType", "new", "old"}).
        Delete payloads usually carry only the primary key, so the
        subscription's scope is used when the scope column is missing.

        Raises:
            FeedSerializationError: If the payload cannot be decoded
        """
        data = payload.get("data", payload) if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping):
            raise FeedSerializationError(f"Unexpected change payload: {payload!r}")

        change = ChangeKind.parse(data.get("type") or data.get("eventType") or "")
        if change is ChangeKind.DELETE:
            row = data.get("old_record") or data.get("old")
        else:
            row = data.get("record") or data.get("new")
        if not row:
            raise FeedSerializationError(f"Change payload for '{table}' carries no row")

        entity = Entity.from_row(row, self.registry.get(table), scope_key)
        return ChangeEvent(kind=change, entity=entity, table=table)

    def _table(self, table: str) -> Any:
        if self.config.schema == "public":
            return self._client.table(table)
        return self._client.schema(self.config.schema).table(table)

    async def _discard_channel(self, channel: Any) -> None:
        try:
            await self._client.remove_channel(channel)
        except Exception as e:
            logger.warning(f"Error removing half-open channel: {e}")

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise FeedConnectionError("Not connected")
