"""
Reference resolution and identifier back-fill.

The resolver turns a record's attribute values into column values:

    ::

        scalar            -> as is
        Record            -> record.id                (once its layer is saved)
        LazyReference     -> bound resolution, else
                             in-memory target record  (id, or target[key])
                             local-db row             (local_db_* strategies)
                             default
        list              -> element-wise

Anything that does not resolve becomes an :class:`UnconnectedEdge` on the
referencing collection.  Under integrity assertions it raises instead.

Local-db lookups are answered from one storage query per (collection, ref):
every reference the scanner registered for that ref is fetched at once and
kept for the rest of the refresh.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.enums import ResolutionMode, RetentionStrategy, Strategy
from inventory_spine.errors import UnconnectedReferenceError
from inventory_spine.logging import get_logger
from inventory_spine.record import Record, UnconnectedEdge
from inventory_spine.references import IdentityKey, LazyReference, ResolvedReference
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage.base import Row, StorageBackend

logger = get_logger(__name__)

class _Unresolved:
    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED: Any = _Unresolved()

_LIST_TYPES = (list, tuple, set, frozenset)


class Resolver:
    """Resolves values for one refresh; shared by all savers of that refresh.

    Args:
        storage: Backend answering local-db lookups.
        settings: Batch sizes for local-db queries.
    """

    def __init__(self, storage: StorageBackend, settings: RefreshSettings | None = None) -> None:
        self.storage = storage
        self.settings = settings or get_settings()
        self._local_db: dict[tuple[str, str], dict[IdentityKey, Row]] = {}
        self._lock = threading.Lock()

    # -- rows ---------------------------------------------------------------

    def row_for(
        self,
        record: Record,
        *,
        exclude: Iterable[str] = (),
        only: Iterable[str] | None = None,
        pending: set[str] | None = None,
    ) -> Row | None:
        """Column values for *record*, or None when a fixed attribute is unresolved.

        Args:
            record: The record to persist.
            exclude: Attributes left for the deferred pass.
            only: Restrict the row to these attributes (deferred pass).
            pending: When given, unresolved transitive lookups are added here
                instead of being reported, so the deferred pass can retry them.
        """
        collection = record.collection
        exclude = frozenset(exclude)
        fixed = collection.fixed_attributes
        row: Row = {}
        for attribute, value in record.data.items():
            if not collection.saves_attribute(attribute, exclude, only):
                continue
            resolved = self.resolve(value)
            if resolved is UNRESOLVED:
                if pending is not None and attribute not in fixed and _is_transitive(value):
                    pending.add(attribute)
                    continue
                self._unconnected(record, attribute, value)
                if attribute in fixed:
                    return None
                continue
            row[collection.column_for(attribute, value)] = resolved
        if only is None:
            for column, value in collection.scope.items():
                if not isinstance(value, _LIST_TYPES):
                    row.setdefault(column, value)
        return row

    def resolve(self, value: Any) -> Any:
        """Column value for one attribute value, or :data:`UNRESOLVED`."""
        if isinstance(value, LazyReference):
            return self.resolve_reference(value)
        if isinstance(value, Record):
            return value.id if value.id is not None else UNRESOLVED
        if isinstance(value, list):
            items = [self.resolve(v) for v in value]
            if any(item is UNRESOLVED for item in items):
                return UNRESOLVED
            return items
        return value

    def resolve_reference(self, reference: LazyReference) -> Any:
        if reference.resolution is not None:
            return reference.resolution.value
        target = reference.collection
        if target is None:
            return self._default(reference)

        record = None
        if target.strategy not in (Strategy.LOCAL_DB_CACHE_ALL, Strategy.LOCAL_DB_FIND_REFERENCES):
            record = target.find(reference.lookup, ref=reference.ref)
        if record is not None:
            if reference.key is not None:
                value = record.data.get(reference.key)
                resolved = self.resolve(value) if value is not None else None
                if resolved is None:
                    return self._default(reference, missing=None)
                return resolved
            if record.id is not None:
                return record.id

        if target.is_local_db:
            row = self._local_db_row(target, reference)
            if row is not None:
                if reference.key is not None:
                    return row.get(target.column_for(reference.key))
                return row["id"]
        return self._default(reference)

    def _default(self, reference: LazyReference, missing: Any = UNRESOLVED) -> Any:
        if reference.default is not None:
            return reference.default
        return missing

    def _unconnected(self, record: Record, attribute: str, value: Any) -> None:
        collection = record.collection
        edge = UnconnectedEdge(record, attribute, value)
        collection.unconnected_edges.append(edge)
        if collection.assert_graph_integrity:
            raise UnconnectedReferenceError(
                f"Unresolved reference {value!r} in {attribute!r} of "
                f"{collection.name!r} record {record.stringified_identity!r}"
            ).with_context(collection=collection.name, attribute=attribute)
        logger.warning("resolver.unconnected_edge", **edge.to_dict())

    # -- local db -----------------------------------------------------------

    def _local_db_row(self, target: Collection, reference: LazyReference) -> Row | None:
        cache_key = (target.name, reference.ref)
        with self._lock:
            index = self._local_db.get(cache_key)
            if index is None:
                index = self._load_local_db(target, reference.ref)
                self._local_db[cache_key] = index
        identity = self._storage_identity(target, reference.lookup, reference.ref)
        if identity is None:
            return None
        return index.get(identity)

    def _load_local_db(self, target: Collection, ref: str) -> dict[IdentityKey, Row]:
        key_columns = tuple(target.column_for(a) for a in target.index_keys(ref))
        active_only = target.retention_strategy is RetentionStrategy.ARCHIVE
        if target.strategy is Strategy.LOCAL_DB_CACHE_ALL:
            rows = [
                row
                for batch in self.storage.iter_scope(
                    target.table,
                    scope=target.scope,
                    active_only=active_only,
                    batch_size=self.settings.batch_size,
                )
                for row in batch
            ]
        else:
            keys = set()
            for values in target.references.get(ref, {}).values():
                sample = values[0]
                lookup = sample.lookup if isinstance(sample, LazyReference) else sample.data
                identity = self._storage_identity(target, lookup, ref)
                if identity is not None:
                    keys.add(identity)
            rows = self.storage.fetch_by_keys(
                target.table, key_columns, keys, scope=target.scope, active_only=active_only
            )
        logger.debug("resolver.local_db_loaded", collection=target.name, ref=ref, rows=len(rows))
        return {tuple(row.get(c) for c in key_columns): row for row in rows}

    def _storage_identity(self, target: Collection, lookup: dict, ref: str) -> IdentityKey | None:
        values = tuple(self.resolve(lookup.get(a)) for a in target.index_keys(ref))
        if any(v is UNRESOLVED for v in values):
            return None
        return values

    # -- back-fill ----------------------------------------------------------

    def backfill(self, collection: Collection) -> int:
        """Bind the ids of saved records onto every reference targeting them."""
        bound = 0
        for record in collection.iter_all_records():
            if record.id is None:
                continue
            for reference in collection.referrers(record):
                if reference.key is None and reference.resolution is None:
                    reference.bind(ResolvedReference(id=record.id, value=record.id))
                    bound += 1
        return bound


def _is_transitive(value: Any) -> bool:
    if isinstance(value, list):
        return any(_is_transitive(v) for v in value)
    return isinstance(value, LazyReference) and value.mode is ResolutionMode.TRANSITIVE


__all__ = ["UNRESOLVED", "Resolver"]
