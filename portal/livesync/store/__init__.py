"""
Entity store for portal-livesync.

The store is the in-memory materialized view of one (table, scope)
that a live page renders from. It is derived entirely from a snapshot
plus the change events applied after it, and is rebuilt from scratch
whenever a view reopens.
"""

from .entity_store import EntityStore

__all__ = ["EntityStore"]
