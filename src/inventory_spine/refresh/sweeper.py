"""
Retention sweeper: remove stored rows not seen by the current refresh.

Manifesto:
    Multi-part refreshes never hold the whole inventory in one process, so
    "what disappeared" can't be an in-memory set difference.  Instead every
    ``concurrent_safe_batch`` save touches ``last_seen_at`` on the rows it
    wrote (mark), and once every part is done the sweeper removes whatever
    is older than the refresh start (sweep).  The sweep runs storage-side in
    id batches and scales with the stale rows, not with the inventory.

Sweep scope:
    ::

        None | "all"                     every sweepable collection
        ["vms", "hosts"]                 those collections
        {"vms": [{"host_id": 1}, ...]}   those collections, restricted to rows
                                         matching any of the conditions

    Conditions of one collection must all use the same columns and every
    column must exist on the table.

Sweepable collection:
    ``concurrent_safe_batch`` saver, a ``last_seen_at`` column, and a
    strategy that saves in-memory data (none or
    ``local_db_find_missing_references``).

Tags:
    sweeper, retention, mark-and-sweep, last-seen, inventory-refresh

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.enums import RetentionStrategy, Strategy
from inventory_spine.errors import (
    SweeperNonExistentScopeKeyError,
    SweeperNonUniformScopeKeyError,
    SweeperScopeBadFormatError,
)
from inventory_spine.logging import get_logger
from inventory_spine.save.retention import remove_records
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage.base import StorageBackend

logger = get_logger(__name__)

LAST_SEEN_COLUMN = "last_seen_at"

_SWEEPABLE_STRATEGIES = (None, Strategy.LOCAL_DB_FIND_MISSING_REFERENCES)

SweepScope = dict[str, list[dict[str, Any]] | None]


def build_scope(sweep_scope: Any) -> SweepScope | None:
    """Normalize *sweep_scope* to ``name -> conditions`` (None = all).

    Raises:
        SweeperScopeBadFormatError: Not None, "all", a list of names or a
            mapping of name to a list of condition mappings.
    """
    if sweep_scope is None or sweep_scope == "all":
        return None
    if isinstance(sweep_scope, (list, tuple, set)):
        if not all(isinstance(name, str) for name in sweep_scope):
            raise SweeperScopeBadFormatError(
                f"Sweep scope list must contain collection names, got {sweep_scope!r}"
            )
        return {name: None for name in sweep_scope}
    if isinstance(sweep_scope, Mapping):
        scope: SweepScope = {}
        for name, conditions in sweep_scope.items():
            if conditions is None:
                scope[str(name)] = None
                continue
            if not isinstance(conditions, list) or not all(
                isinstance(c, Mapping) and c for c in conditions
            ):
                raise SweeperScopeBadFormatError(
                    f"Sweep scope of {name!r} must be a list of non-empty condition "
                    f"mappings, got {conditions!r}"
                )
            scope[str(name)] = [dict(c) for c in conditions]
        return scope
    raise SweeperScopeBadFormatError(
        f"Sweep scope must be None, 'all', a list or a mapping, got {type(sweep_scope).__name__}"
    )


class Sweeper:
    """Removes rows whose ``last_seen_at`` predates a refresh start.

    Args:
        storage: Backend holding the collections' tables.
        settings: Sweep batch size; process settings when omitted.
    """

    def __init__(self, storage: StorageBackend, settings: RefreshSettings | None = None) -> None:
        self.storage = storage
        self.settings = settings or get_settings()

    def sweep(
        self,
        collections: Iterable[Collection],
        refresh_started_at: datetime,
        sweep_scope: Any = None,
    ) -> dict[str, int]:
        """Sweep every collection in scope.

        Args:
            collections: Candidate collections of the refresh.
            refresh_started_at: Rows last seen before this are removed.
            sweep_scope: See module docs.

        Returns:
            Removed row count per swept collection.
        """
        scope = build_scope(sweep_scope)
        removed: dict[str, int] = {}
        for collection in collections:
            if not self.sweep_possible(collection, scope):
                continue
            conditions = scope.get(collection.name) if scope is not None else None
            if conditions:
                self.validate_conditions(collection, conditions)
            removed[collection.name] = self.sweep_collection(
                collection, refresh_started_at, conditions
            )
        logger.info("sweeper.swept", removed=removed)
        return removed

    def sweep_possible(self, collection: Collection, scope: SweepScope | None) -> bool:
        if scope is not None and collection.name not in scope:
            return False
        return (
            collection.parallel_safe
            and collection.strategy in _SWEEPABLE_STRATEGIES
            and self.storage.has_column(collection.table, LAST_SEEN_COLUMN)
        )

    def validate_conditions(self, collection: Collection, conditions: Sequence[Mapping[str, Any]]) -> None:
        keys = {frozenset(condition) for condition in conditions}
        if len(keys) > 1:
            raise SweeperNonUniformScopeKeyError(
                f"Sweeping scope keys of {collection.name!r} must be uniform, got "
                f"{sorted(sorted(k) for k in keys)!r}"
            ).with_context(collection=collection.name)
        columns = self.storage.columns(collection.table)
        missing = sorted(set().union(*keys) - columns)
        if missing:
            raise SweeperNonExistentScopeKeyError(
                f"Sweeping scope keys {missing!r} don't exist on table {collection.table!r}"
            ).with_context(collection=collection.name)

    def sweep_collection(
        self,
        collection: Collection,
        refresh_started_at: datetime,
        conditions: Sequence[Mapping[str, Any]] | None = None,
    ) -> int:
        """Remove stale rows of one collection, one id batch at a time."""
        archive = collection.retention_strategy is RetentionStrategy.ARCHIVE
        batch_size = self.settings.sweep_batch_size
        total = 0
        while True:
            ids = self.storage.fetch_stale_ids(
                collection.table,
                column=LAST_SEEN_COLUMN,
                before=refresh_started_at,
                scope=collection.scope,
                conditions=conditions,
                active_only=archive,
                limit=batch_size,
            )
            if not ids:
                break
            result = remove_records(collection, self.storage, ids, batch_size=batch_size)
            total += result.removed
        logger.debug("sweeper.collection_swept", collection=collection.name, removed=total)
        return total


__all__ = ["LAST_SEEN_COLUMN", "Sweeper", "build_scope"]
