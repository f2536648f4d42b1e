"""
Entity kind registry for portal-livesync.

An EntityKind describes how rows of one backend table map onto the
generic Entity used by the sync core: which column is the primary
identifier, which column carries the tenant scope, and which column
orders rows for display.

Invariants:
    - A table is registered at most once per registry
    - Once frozen, no new kinds can be registered
    - Field names are column names on the hosted backend

How to change safely:
    - Register new tables with their real id/scope columns
    - Never change the id_field of an existing kind; sessions key on it
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateKindError(Exception):
    """Raised when a table is registered twice."""
    pass


class UnknownKindError(KeyError):
    """Raised when looking up a table that has no registered kind."""
    pass


@dataclass(frozen=True)
class EntityKind:
    """Column mapping for one live table.

    Attributes:
        table: Backend table name
        id_field: Primary identifier column
        scope_field: Tenant/client column every load and feed is filtered by
        order_field: Column used for display ordering (None keeps id order)
        descending: Newest-first display order
    """
    table: str
    id_field: str = "id"
    scope_field: str = "client_id"
    order_field: str | None = "created_at"
    descending: bool = False

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "id_field": self.id_field,
            "scope_field": self.scope_field,
            "order_field": self.order_field,
            "descending": self.descending,
        }


class KindRegistry:
    """Registry of live tables known to the portal.

    Thread-safety:
        Registration takes an internal lock; lookups are lock-free.

    Example:
        >>> registry = KindRegistry()
        >>> registry.register(EntityKind("messages", id_field="message_id"))
        >>> registry.get("messages").id_field
        'message_id'
    """

    def __init__(self) -> None:
        self._kinds: dict[str, EntityKind] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    def register(self, kind: EntityKind) -> EntityKind:
        """Register a table's column mapping.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateKindError: If the table is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register kind '{kind.table}': registry is frozen"
                )
            if kind.table in self._kinds:
                raise DuplicateKindError(f"Table '{kind.table}' already registered")

            self._kinds[kind.table] = kind
            logger.debug(f"Registered entity kind: {kind.table} (id_field={kind.id_field})")
            return kind

    def get(self, table: str) -> EntityKind:
        """Get the kind for a table.

        Raises:
            UnknownKindError: If the table is not registered
        """
        try:
            return self._kinds[table]
        except KeyError:
            raise UnknownKindError(table) from None

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def __contains__(self, table: object) -> bool:
        return table in self._kinds

    def __iter__(self) -> Iterator[EntityKind]:
        yield from self._kinds.values()

    def __len__(self) -> int:
        return len(self._kinds)

    def tables(self) -> list[str]:
        return sorted(self._kinds)


def portal_kinds() -> KindRegistry:
    """Registry pre-populated with the client portal's live tables."""
    registry = KindRegistry()
    registry.register(EntityKind("messages", id_field="message_id"))
    registry.register(EntityKind("documents", descending=True))
    registry.register(EntityKind("admin_notes", descending=True))
    registry.register(EntityKind("tasks"))
    registry.register(EntityKind("projects"))
    registry.register(EntityKind("time_logs", descending=True))
    registry.register(EntityKind("content_plans", order_field="scheduled_for"))
    registry.register(EntityKind("invoices", descending=True))
    registry.freeze()
    return registry
