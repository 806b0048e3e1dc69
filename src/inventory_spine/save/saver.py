"""
Collection saver.

Manifesto:
    Saving a collection is a reconciliation, not an insert: the incoming
    dataset is joined against what storage already holds on the identity
    columns, and only the difference is written.

    - **Create** identities present only in the incoming data
    - **Update** identities present on both sides, skipped when unchanged
    - **Delete / archive** stored identities missing from a complete dataset
    - **Back-fill** storage ids onto records and the references targeting them

Architecture:
    ::

        records ──resolve──► index: identity -> (record, row)
                                 │
        stored rows (scope or keys)
                                 │ join on identity columns
              ┌──────────────────┼─────────────────────┐
              ▼                  ▼                     ▼
          stored only        both sides           incoming only
          remove_records     _write_updates       reconciler hook
          (if allowed)       (unless unchanged)   _write_creates
                                                        │
                              partial rows ─► upsert    │
                              all_manager_uuids ─► complement delete (within scope)
                              last_seen_at ─► touch (concurrent_safe_batch)

Strategies:
    ``default``                row-at-a-time writes
    ``batch``                  bulk writes in ``batch_size`` chunks
    ``concurrent_safe_batch``  bulk upserts guarded by ``resource_timestamp``
                               (or ``resource_counter``) plus ``last_seen_at``

Failure semantics:
    An unresolved reference skips the attribute, or the record when the
    attribute is fixed, and is kept as an unconnected edge.  Storage errors
    propagate as :class:`StorageError`; batches written before the failing
    one stay committed.

Tags:
    saver, reconciliation, upsert, batch, inventory-refresh

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.enums import RetentionStrategy, SaverStrategy
from inventory_spine.errors import ConfigurationError, ReferentialIntegrityError
from inventory_spine.hooks import SaveContext
from inventory_spine.logging import LogContext, get_logger
from inventory_spine.record import Record
from inventory_spine.save.resolver import UNRESOLVED, Resolver
from inventory_spine.save.retention import remove_records
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage.base import Row, StorageBackend
from inventory_spine.timestamps import as_utc, utc_now

logger = get_logger(__name__)

Entry = tuple[Record, Row]


@dataclass
class SaveReport:
    """What one save pass did to one collection."""

    collection: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    partial: int = 0
    noop: bool = False
    pending_attributes: set[str] = field(default_factory=set)

    def merge(self, other: SaveReport) -> SaveReport:
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.unchanged += other.unchanged
        self.skipped += other.skipped
        self.partial += other.partial
        return self

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["pending_attributes"] = sorted(self.pending_attributes)
        return result


def _differs(new: Any, stored: Any) -> bool:
    if isinstance(new, datetime) and isinstance(stored, datetime):
        return as_utc(new) != as_utc(stored)
    return new != stored


def _changed(row: Row, stored: Row) -> bool:
    return any(_differs(value, stored.get(column)) for column, value in row.items())


class BaseSaver:
    """Generic reconciliation of one collection against storage.

    Subclasses decide how rows are written by implementing
    :meth:`_write_updates` and :meth:`_write_creates`.
    """

    def __init__(
        self,
        collection: Collection,
        storage: StorageBackend,
        resolver: Resolver,
        settings: RefreshSettings,
    ) -> None:
        self.collection = collection
        self.storage = storage
        self.resolver = resolver
        self.settings = settings
        self.table = collection.table
        self.columns = storage.columns(collection.table)
        self.key_columns = collection.identity_columns
        self.batch_size = settings.batch_size
        self.report = SaveReport(collection.name)
        self.archive = collection.retention_strategy is RetentionStrategy.ARCHIVE

    def save(self, exclude: Iterable[str] = ()) -> SaveReport:
        exclude = frozenset(exclude)
        index = self._build_index(exclude)
        if not self.collection.create_only:
            self._update_or_destroy(index)
        if self.collection.custom_reconciler is not None and index:
            context = SaveContext(
                self.collection, self.storage, self.resolver, self.settings, pending=index
            )
            self.collection.custom_reconciler.reconnect(context)
        if self.collection.create_allowed and index:
            self._create_records(index)
        self._save_partial_records(exclude)
        self._delete_complement()
        self._mark_last_seen()
        return self.report

    # -- strategy hooks -----------------------------------------------------

    def _write_updates(self, rows: list[Row]) -> None:
        raise NotImplementedError

    def _write_creates(self, rows: list[Row]) -> None:
        raise NotImplementedError

    def _mark_last_seen(self) -> None:
        pass

    def _outdated(self, row: Row, stored: Row) -> bool:
        return False

    # -- index --------------------------------------------------------------

    def _key(self, row: Row) -> tuple:
        return tuple(row.get(column) for column in self.key_columns)

    def _table_row(self, row: Row) -> Row:
        return {column: value for column, value in row.items() if column in self.columns}

    def _build_index(self, exclude: frozenset[str]) -> dict[tuple, Entry]:
        index: dict[tuple, Entry] = {}
        for record in self.collection.records:
            row = self.resolver.row_for(
                record, exclude=exclude, pending=self.report.pending_attributes
            )
            if row is None:
                self.report.skipped += 1
                continue
            row = self._table_row(row)
            key = self._key(row)
            if key in index:
                self._integrity_problem(f"Two records resolve to the same identity {key!r}")
                continue
            index[key] = (record, row)
        return index

    def _integrity_problem(self, message: str) -> None:
        if self.collection.assert_graph_integrity:
            raise ReferentialIntegrityError(message).with_context(collection=self.collection.name)
        logger.warning("saver.integrity", collection=self.collection.name, message=message)

    # -- stored rows --------------------------------------------------------

    def _stored_batches(self, index: dict[tuple, Entry]) -> Iterator[list[Row]]:
        if self.collection.delete_allowed:
            scope = dict(self.collection.scope)
            if self.collection.targeted:
                scope[self.collection.config.targeted_parent_column] = self._parent_ids()
            yield from self.storage.iter_scope(
                self.table, scope=scope, batch_size=self.batch_size
            )
            return
        keys = list(index)
        for start in range(0, len(keys), self.batch_size):
            yield self.storage.fetch_by_keys(
                self.table,
                self.key_columns,
                keys[start:start + self.batch_size],
                scope=self.collection.scope,
            )

    def _parent_ids(self) -> list[Any]:
        return [
            record.id
            for parent in self.collection.parent_collections
            for record in parent.iter_all_records()
            if record.id is not None
        ]

    def _update_or_destroy(self, index: dict[tuple, Entry]) -> None:
        seen: set[tuple] = set()
        updates: list[Row] = []
        deletes: list[Any] = []
        for batch in self._stored_batches(index):
            for stored in batch:
                key = self._key(stored)
                if key in seen:
                    self._integrity_problem(f"Duplicate stored rows for identity {key!r}")
                    continue
                seen.add(key)
                entry = index.pop(key, None)
                if entry is None:
                    if self.collection.delete_allowed and not (
                        self.archive and stored.get("archived_at") is not None
                    ):
                        deletes.append(stored["id"])
                    continue

                record, row = entry
                record.id = stored["id"]
                if self.archive and stored.get("archived_at") is not None:
                    # Seen again: reconnect the archived row
                    row["archived_at"] = None
                if self._outdated(row, stored) or (
                    self.collection.check_changed and not _changed(row, stored)
                ):
                    self.report.unchanged += 1
                    continue
                updates.append(self._update_row(record, row))
                if len(updates) >= self.batch_size:
                    self._flush_updates(updates)
                    updates = []
        if updates:
            self._flush_updates(updates)
        if deletes:
            self._destroy(deletes)

    def _flush_updates(self, rows: list[Row]) -> None:
        self._write_updates(rows)
        self.report.updated += len(rows)
        self.collection.updated_records.extend({"id": row["id"]} for row in rows)

    def _update_row(self, record: Record, row: Row) -> Row:
        result = {**row, "id": record.id}
        if "updated_at" in self.columns:
            result["updated_at"] = utc_now()
        return result

    def _create_row(self, row: Row) -> Row:
        result = dict(row)
        now = utc_now()
        if "created_at" in self.columns:
            result.setdefault("created_at", now)
        if "updated_at" in self.columns:
            result.setdefault("updated_at", now)
        return result

    # -- creates ------------------------------------------------------------

    def _create_records(self, index: dict[tuple, Entry]) -> None:
        entries = list(index.values())
        rows = [self._create_row(row) for _, row in entries]
        for start in range(0, len(rows), self.batch_size):
            self._write_creates(rows[start:start + self.batch_size])
        self._assign_ids(entries)
        self.report.created += len(entries)
        self.collection.created_records.extend(
            {"id": record.id} for record, _ in entries if record.id is not None
        )

    def _assign_ids(self, entries: list[Entry]) -> None:
        keys = [self._key(row) for _, row in entries]
        ids: dict[tuple, Any] = {}
        for start in range(0, len(keys), self.batch_size):
            for stored in self.storage.fetch_by_keys(
                self.table, self.key_columns, keys[start:start + self.batch_size]
            ):
                ids[self._key(stored)] = stored["id"]
        for (record, _), key in zip(entries, keys, strict=True):
            record.id = ids.get(key)
            if record.id is None:
                self._integrity_problem(
                    f"No stored row found for {record.stringified_identity!r} after saving"
                )

    def _save_partial_records(self, exclude: frozenset[str]) -> None:
        full = {record.identity for record in self.collection.records}
        entries: list[Entry] = []
        for record in self.collection.skeletal_index.values():
            if record.identity in full:
                continue
            row = self.resolver.row_for(
                record, exclude=exclude, pending=self.report.pending_attributes
            )
            if row is None:
                self.report.skipped += 1
                continue
            entries.append((record, self._table_row(row)))
        if not entries:
            return
        rows = [self._create_row(row) for _, row in entries]
        for start in range(0, len(rows), self.batch_size):
            self.storage.upsert_rows(
                self.table,
                rows[start:start + self.batch_size],
                self.key_columns,
                version_column=self._version_column(),
            )
        self._assign_ids(entries)
        self.report.partial += len(entries)

    def _version_column(self) -> str | None:
        return None

    # -- removal ------------------------------------------------------------

    def _destroy(self, ids: list[Any]) -> None:
        result = remove_records(self.collection, self.storage, ids, batch_size=self.batch_size)
        self.report.deleted += result.removed

    def _delete_complement(self) -> None:
        """Remove stored rows in scope missing from ``all_manager_uuids``."""
        known = self.collection.all_manager_uuids
        if known is None or self.collection.update_only or self.collection.create_only:
            return
        keys = set()
        for lookup in known:
            key = tuple(self.resolver.resolve(lookup.get(a)) for a in self.collection.manager_ref)
            if UNRESOLVED not in key:
                keys.add(key)

        scope_columns, allowed = self._complement_scope()
        cutoff = as_utc(self.collection.config.all_manager_uuids_timestamp)
        ids = []
        for batch in self.storage.iter_scope(
            self.table,
            scope=self.collection.scope,
            active_only=self.archive,
            batch_size=self.batch_size,
        ):
            for stored in batch:
                if self._key(stored) in keys:
                    continue
                if allowed is not None and tuple(stored.get(c) for c in scope_columns) not in allowed:
                    continue
                if cutoff is not None:
                    stamp = as_utc(stored.get("resource_timestamp"))
                    if stamp is not None and stamp >= cutoff:
                        continue
                ids.append(stored["id"])
        if ids:
            self._destroy(ids)

    def _complement_scope(self) -> tuple[tuple[str, ...], set[tuple] | None]:
        """Columns and resolved value tuples of ``all_manager_uuids_scope``.

        Every condition carries the same attributes; a stored row is in scope
        when its values on those columns equal one condition.
        """
        conditions = self.collection.config.all_manager_uuids_scope
        if conditions is None:
            return (), None
        attributes = sorted(conditions[0]) if conditions else []
        columns = tuple(self.collection.column_for(a, conditions[0][a]) for a in attributes)
        missing = sorted(set(columns) - self.columns)
        if missing:
            raise ConfigurationError(
                f"all_manager_uuids_scope columns {missing!r} don't exist on table {self.table!r}"
            ).with_context(collection=self.collection.name)

        allowed = set()
        for condition in conditions:
            values = tuple(self.resolver.resolve(condition[a]) for a in attributes)
            if UNRESOLVED in values:
                raise ReferentialIntegrityError(
                    f"all_manager_uuids_scope condition {condition!r} can't be resolved"
                ).with_context(collection=self.collection.name)
            allowed.add(values)
        return columns, allowed


class DefaultSaver(BaseSaver):
    """Writes one row per storage call."""

    def _write_updates(self, rows: list[Row]) -> None:
        for row in rows:
            self.storage.update_rows(self.table, [row])

    def _write_creates(self, rows: list[Row]) -> None:
        for row in rows:
            self.storage.insert_rows(self.table, [row])


class BatchSaver(BaseSaver):
    """Writes rows in ``batch_size`` chunks."""

    def _write_updates(self, rows: list[Row]) -> None:
        self.storage.update_rows(self.table, rows)

    def _write_creates(self, rows: list[Row]) -> None:
        self.storage.insert_rows(self.table, rows)


class ConcurrentSafeBatchSaver(BatchSaver):
    """Upserts guarded by a version column, safe for concurrent refreshes.

    A stored row is only overwritten by an incoming row carrying a strictly
    newer ``resource_timestamp`` (or ``resource_counter``), so two workers
    saving the same identity converge on the newest data whatever order
    their batches commit in.  Every saved row gets ``last_seen_at`` touched,
    which is what the sweeper later relies on.
    Incoming rows the guard would reject are reported as unchanged.
    """

    def _version_column(self) -> str | None:
        for column in ("resource_timestamp", "resource_counter"):
            if column in self.columns:
                return column
        return None

    def _outdated(self, row: Row, stored: Row) -> bool:
        """Whether the version guard would reject *row* over *stored*."""
        column = self._version_column()
        if column is None:
            return False
        new, old = row.get(column), stored.get(column)
        if new is None or old is None:
            return False
        if isinstance(new, datetime) and isinstance(old, datetime):
            new, old = as_utc(new), as_utc(old)
        return not old < new

    def _upsert(self, rows: list[Row]) -> None:
        now = utc_now()
        prepared = []
        for row in rows:
            row = {column: value for column, value in row.items() if column != "id"}
            if "created_at" in self.columns:
                row.setdefault("created_at", now)
            if self.archive and "archived_at" in self.columns:
                row.setdefault("archived_at", None)
            prepared.append(row)
        self.storage.upsert_rows(
            self.table,
            prepared,
            self.key_columns,
            version_column=self._version_column(),
        )

    def _write_updates(self, rows: list[Row]) -> None:
        self._upsert(rows)

    def _write_creates(self, rows: list[Row]) -> None:
        self._upsert(rows)

    def _mark_last_seen(self) -> None:
        if "last_seen_at" not in self.columns:
            return
        ids = [r.id for r in self.collection.iter_all_records() if r.id is not None]
        now = utc_now()
        for start in range(0, len(ids), self.batch_size):
            self.storage.touch_ids(self.table, ids[start:start + self.batch_size], "last_seen_at", now)


SAVERS: dict[SaverStrategy, type[BaseSaver]] = {
    SaverStrategy.DEFAULT: DefaultSaver,
    SaverStrategy.BATCH: BatchSaver,
    SaverStrategy.CONCURRENT_SAFE_BATCH: ConcurrentSafeBatchSaver,
}


def save_collection(
    collection: Collection,
    storage: StorageBackend,
    *,
    resolver: Resolver | None = None,
    settings: RefreshSettings | None = None,
    exclude: Iterable[str] = (),
) -> SaveReport:
    """Persist one collection and mark it saved.

    Args:
        collection: Collection to save; already-saved collections are skipped.
        storage: Backend to write to.
        resolver: Shared resolver of the refresh; a new one when omitted.
        settings: Overrides the process settings.
        exclude: Attributes deferred to the second pass.

    Returns:
        :class:`SaveReport` for the collection.

    Raises:
        StorageError: A storage batch failed.
        ResolutionError: Integrity assertions are on and a reference or
            identity could not be reconciled.
    """
    settings = settings or get_settings()
    resolver = resolver or Resolver(storage, settings)
    report = SaveReport(collection.name)
    if collection.saved:
        report.noop = True
        return report
    if collection.noop:
        logger.debug("saver.noop", collection=collection.name)
        collection.mark_saved()
        report.noop = True
        return report

    with LogContext(collection=collection.name):
        try:
            if collection.custom_saver is not None:
                context = SaveContext(collection, storage, resolver, settings)
                collection.custom_saver.save(context)
            else:
                saver = SAVERS[collection.saver_strategy](collection, storage, resolver, settings)
                report = saver.save(exclude)
            resolver.backfill(collection)
        except Exception as exc:
            logger.error("saver.failed", error=f"{type(exc).__name__}: {exc}")
            raise

    collection.mark_saved()
    logger.info("saver.saved", **report.to_dict())
    return report


def save_deferred(
    collection: Collection,
    attributes: Iterable[str],
    storage: StorageBackend,
    *,
    resolver: Resolver,
    settings: RefreshSettings | None = None,
) -> SaveReport:
    """Write attributes held back from the first pass onto saved rows."""
    settings = settings or get_settings()
    attributes = frozenset(attributes)
    report = SaveReport(collection.name)
    if collection.create_only or collection.custom_saver is not None:
        logger.warning(
            "saver.deferred_skipped",
            collection=collection.name,
            attributes=sorted(attributes),
        )
        return report

    columns = storage.columns(collection.table)
    rows: list[Row] = []
    for record in collection.iter_all_records():
        if record.id is None:
            continue
        row = resolver.row_for(record, only=attributes) or {}
        row = {column: value for column, value in row.items() if column in columns}
        if row:
            rows.append({**row, "id": record.id})

    if collection.check_changed and rows:
        stored = {r["id"]: r for r in storage.fetch_by_ids(collection.table, [r["id"] for r in rows])}
        before = len(rows)
        rows = [row for row in rows if _changed(row, stored.get(row["id"], {}))]
        report.unchanged = before - len(rows)

    if "updated_at" in columns:
        now = utc_now()
        rows = [{**row, "updated_at": now} for row in rows]
    for start in range(0, len(rows), settings.batch_size):
        storage.update_rows(collection.table, rows[start:start + settings.batch_size])
    report.updated = len(rows)
    resolver.backfill(collection)
    logger.info("saver.deferred_saved", collection=collection.name, attributes=sorted(attributes), updated=len(rows))
    return report


__all__ = [
    "BaseSaver",
    "BatchSaver",
    "ConcurrentSafeBatchSaver",
    "DefaultSaver",
    "SAVERS",
    "SaveReport",
    "save_collection",
    "save_deferred",
]
