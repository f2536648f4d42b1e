"""
In-memory entity store for one live view.

The EntityStore holds the current rows of one table for one scope,
keyed by entity id, and merges change events into them. It replaces the
per-page array splicing every dashboard used to hand-write.

Invariants:
    - At most one entry per id
    - The entry reflects the last applied non-delete event for its id
    - Applying the same operation twice is a no-op
    - Events are never reordered by timestamp; last applied wins
    - snapshot() never exposes internal containers

How to change safely:
    - Keep apply_* idempotent; feeds are at-least-once
    - Ordering is display-only, never feed it back into merge decisions
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Hashable

from ..feed.base import ChangeEvent, ChangeKind, Entity
from ..kinds import EntityKind

logger = logging.getLogger(__name__)


def _id_order(entity: Entity) -> tuple:
    # Numeric ids sort numerically and ahead of any other id type
    if isinstance(entity.id, (int, float)):
        return (0, entity.id, "")
    return (1, 0, str(entity.id))


class EntityStore:
    """Ordered, id-keyed collection of entities of one kind.

    Every apply method returns True when the visible state changed, so
    callers can skip change notifications for duplicate deliveries.

    Attributes:
        kind: Column mapping of the stored table
        scope_key: Scope used when synthesizing entities from patches

    Example:
        >>> store = EntityStore(EntityKind("tasks"), scope_key="c1")
        >>> store.apply_insert(Entity(id=1, scope_key="c1", payload={"title": "a"}))
        True
        >>> store.apply_update(1, {"title": "b"})
        True
        >>> [e.payload["title"] for e in store.snapshot()]
        ['b']
    """

    def __init__(self, kind: EntityKind, scope_key: str | None = None) -> None:
        self.kind = kind
        self.scope_key = scope_key
        self._entities: dict[Hashable, Entity] = {}

    def apply_insert(self, entity: Entity) -> bool:
        """Add an entity; an existing id is treated as an update."""
        return self._put(entity)

    def apply_update(self, entity_id: Hashable, change: Entity | Mapping[str, Any]) -> bool:
        """Replace or patch an entity's payload.

        A full Entity replaces the stored one. A mapping is merged into
        the stored payload. When the id is absent the update synthesizes
        an insert, since an update can be delivered before its insert.
        """
        if isinstance(change, Entity):
            if change.id != entity_id:
                raise ValueError(f"Update for id {entity_id!r} carries entity {change.id!r}")
            return self._put(change)

        current = self._entities.get(entity_id)
        if current is None:
            payload = dict(change)
            payload.setdefault(self.kind.id_field, entity_id)
            entity = Entity(
                id=entity_id,
                scope_key=payload.get(self.kind.scope_field, self.scope_key),
                payload=payload,
                order_key=self._order_value(payload, None),
            )
            logger.debug(
                "Update for unknown id synthesized an insert",
                extra={"table": self.kind.table, "entity_id": entity_id},
            )
            return self._put(entity)

        payload = {**current.payload, **change}
        return self._put(
            Entity(
                id=entity_id,
                scope_key=current.scope_key,
                payload=payload,
                order_key=self._order_value(payload, current.order_key),
            )
        )

    def apply_delete(self, entity_id: Hashable) -> bool:
        """Remove an entity; no-op when absent."""
        return self._entities.pop(entity_id, None) is not None

    def apply(self, event: ChangeEvent) -> bool:
        """Merge a tagged change event."""
        if event.kind is ChangeKind.INSERT:
            return self.apply_insert(event.entity)
        if event.kind is ChangeKind.UPDATE:
            return self.apply_update(event.entity.id, event.entity)
        return self.apply_delete(event.entity.id)

    def snapshot(self) -> list[Entity]:
        """Current entities in display order.

        Sorted by order key (entities without one last), ties broken by
        id. Returns a new list on every call.
        """
        ordered = sorted(self._entities.values(), key=_id_order)
        present = [e for e in ordered if e.order_key is not None]
        missing = [e for e in ordered if e.order_key is None]
        present.sort(key=lambda e: e.order_key, reverse=self.kind.descending)
        return present + missing

    def get(self, entity_id: Hashable) -> Entity | None:
        return self._entities.get(entity_id)

    def clear(self) -> None:
        self._entities.clear()

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def _put(self, entity: Entity) -> bool:
        if self._entities.get(entity.id) == entity:
            return False
        self._entities[entity.id] = entity
        return True

    def _order_value(self, payload: Mapping[str, Any], default: Any) -> Any:
        if self.kind.order_field is None:
            return default
        return payload.get(self.kind.order_field, default)
