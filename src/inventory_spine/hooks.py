"""
Capability interfaces for collections with non-standard persistence.

A collection that cannot be saved by the generic reconciliation (it writes
through an API, or several tables at once) provides a :class:`CustomSaver`.
A collection that can be saved generically but wants to reconnect incoming
records to existing rows before anything is created (for example to
un-archive a row instead of inserting a duplicate) provides a
:class:`CustomReconciler`.

Both receive a :class:`SaveContext`.  A custom saver replaces the whole
reconciliation and must set ``record.id`` on every record it persists; the
saver then back-fills those ids onto references exactly as it does for the
generic path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from inventory_spine.collection import Collection
    from inventory_spine.record import Record
    from inventory_spine.save.resolver import Resolver
    from inventory_spine.settings import RefreshSettings
    from inventory_spine.storage.base import StorageBackend


@dataclass
class SaveContext:
    """Everything a hook needs to persist one collection.

    ``pending`` maps storage identity keys to ``(record, row)`` pairs that are
    about to be created.  A reconciler removes the entries it reconnected.
    """

    collection: Collection
    storage: StorageBackend
    resolver: Resolver
    settings: RefreshSettings
    pending: dict[tuple, tuple[Record, dict[str, Any]]] = field(default_factory=dict)

    def row_for(self, record: Record) -> dict[str, Any] | None:
        """Resolved column values for *record*, or None when it can't be saved."""
        return self.resolver.row_for(record)


@runtime_checkable
class CustomSaver(Protocol):
    """Replaces reconciliation for one collection."""

    def save(self, context: SaveContext) -> None: ...


@runtime_checkable
class CustomReconciler(Protocol):
    """Reconnects pending creates to existing rows."""

    def reconnect(self, context: SaveContext) -> None: ...


__all__ = ["CustomReconciler", "CustomSaver", "SaveContext"]
