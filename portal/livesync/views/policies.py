"""
Presentation-layer policies layered on a view session.

ReadReceiptPolicy implements "mark as read while viewing": whenever the
messages view shows incoming messages that are still unread, it writes
the read flag back through a RowWriter. It covers both the rows present
in the initial snapshot and rows that arrive live, which is how the
client messages page keeps its unread badge from flickering.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Hashable

from ..feed.base import RowWriter
from ..sync.session import SessionState, ViewSession

logger = logging.getLogger(__name__)


class ReadReceiptPolicy:
    """Marks incoming messages read once they are visible.

    Attributes:
        session: The messages view being watched
        writer: Where read flags are written
        from_sender: sender_type value of messages that need receipts
        read_field: Boolean column set to True

    Each id is requested once; if the write fails its ids become
    eligible again on the next change.
    """

    def __init__(
        self,
        session: ViewSession,
        writer: RowWriter,
        from_sender: str = "admin",
        read_field: str = "is_read",
        sender_field: str = "sender_type",
    ) -> None:
        self.session = session
        self.writer = writer
        self.from_sender = from_sender
        self.read_field = read_field
        self.sender_field = sender_field

        self._requested: set[Hashable] = set()
        self._tasks: set[asyncio.Task] = set()
        self._remove: Callable[[], None] | None = None

    def attach(self) -> None:
        if self._remove is None:
            self._remove = self.session.on_change(self._on_change)

    def detach(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None

    async def drain(self) -> None:
        """Wait for every in-flight write."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending_ids(self) -> list[Hashable]:
        """Visible unread incoming messages not yet requested."""
        return [
            entity.id
            for entity in self.session.snapshot()
            if entity.payload.get(self.sender_field) == self.from_sender
            and not entity.payload.get(self.read_field, False)
            and entity.id not in self._requested
        ]

    def _on_change(self) -> None:
        if self.session.state is not SessionState.LIVE:
            return
        ids = self.pending_ids()
        if not ids:
            return

        self._requested.update(ids)
        task = asyncio.get_running_loop().create_task(self._mark_read(ids))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _mark_read(self, ids: list[Hashable]) -> None:
        values: dict[str, Any] = {self.read_field: True}
        try:
            await self.writer.update_rows(self.session.table, ids, values)
        except Exception as e:
            self._requested.difference_update(ids)
            logger.warning(
                f"Failed to mark messages read: {e}",
                extra={"table": self.session.table, "count": len(ids)},
            )
            return
        logger.debug(
            "Marked messages read",
            extra={"table": self.session.table, "count": len(ids)},
        )
