"""
SQLAlchemy 2.0 Core implementation of :class:`StorageBackend`.

Tables are taken from the supplied ``MetaData`` or reflected on first use.
Upserts use the dialect ``INSERT ... ON CONFLICT`` construct, which both
SQLite and PostgreSQL support; the conflict target is the identity column
list, which must carry a unique index.

Concurrency:
    ``upsert_rows`` with a ``version_column`` only overwrites a stored row
    whose version is NULL or strictly older than the incoming one, inside the
    same statement.  Two writers racing on one identity therefore converge
    on the newest version regardless of commit order.

Example::

    engine = create_inventory_engine("sqlite:///inventory.db")
    storage = SQLAlchemyStorage(engine)
    storage.upsert_rows("vms", rows, ["ems_id", "ems_ref"], version_column="resource_timestamp")
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import (
    MetaData,
    Table,
    and_,
    bindparam,
    delete,
    insert,
    or_,
    select,
    tuple_,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from inventory_spine.errors import ConfigurationError, StorageError
from inventory_spine.logging import get_logger
from inventory_spine.storage.base import Row

logger = get_logger(__name__)

_KEY_CHUNK = 500


def dialect_insert(dialect_name: str) -> Callable[..., Any]:
    """Return the dialect ``insert`` construct that supports ``on_conflict``."""
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StorageError(f"Upsert is not supported on the {dialect_name!r} dialect")


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _group_by_columns(rows: Iterable[Row]) -> dict[tuple[str, ...], list[Row]]:
    groups: dict[tuple[str, ...], list[Row]] = {}
    for row in rows:
        groups.setdefault(tuple(sorted(row)), []).append(row)
    return groups


class SQLAlchemyStorage:
    """Storage backend over a SQLAlchemy engine.

    Args:
        engine: Engine used for every operation; one connection per call.
        metadata: Optional metadata holding the entity tables.  Tables not
            found there are reflected from the database.
    """

    def __init__(self, engine: Engine, metadata: MetaData | None = None) -> None:
        self.engine = engine
        self.metadata = metadata if metadata is not None else MetaData()
        self._lock = threading.Lock()

    # -- tables -------------------------------------------------------------

    def table(self, name: str) -> Table:
        table = self.metadata.tables.get(name)
        if table is not None:
            return table
        with self._lock:
            table = self.metadata.tables.get(name)
            if table is None:
                try:
                    table = Table(name, self.metadata, autoload_with=self.engine)
                except NoSuchTableError as exc:
                    raise ConfigurationError(f"Table {name!r} does not exist", cause=exc) from exc
        return table

    def columns(self, table: str) -> frozenset[str]:
        return frozenset(self.table(table).c.keys())

    def has_column(self, table: str, column: str) -> bool:
        return column in self.columns(table)

    @contextmanager
    def _operation(self, operation: str, table: str) -> Iterator[Any]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("storage.failed", operation=operation, table=table, error=str(exc))
            raise StorageError(
                f"{operation} on {table!r} failed: {exc}", cause=exc
            ).with_context(table=table, operation=operation) from exc

    def _filters(
        self,
        table: Table,
        scope: Mapping[str, Any] | None,
        active_only: bool,
    ) -> list[ColumnElement[bool]]:
        filters: list[ColumnElement[bool]] = []
        for column, value in (scope or {}).items():
            col = table.c[column]
            if isinstance(value, (list, tuple, set, frozenset)):
                filters.append(col.in_(list(value)))
            elif value is None:
                filters.append(col.is_(None))
            else:
                filters.append(col == value)
        if active_only and "archived_at" in table.c:
            filters.append(table.c.archived_at.is_(None))
        return filters

    # -- reads --------------------------------------------------------------

    def fetch_by_keys(
        self,
        table: str,
        key_columns: Sequence[str],
        keys: Iterable[tuple],
        *,
        scope: Mapping[str, Any] | None = None,
        active_only: bool = False,
    ) -> list[Row]:
        t = self.table(table)
        keys = list(dict.fromkeys(keys))
        if not keys:
            return []
        filters = self._filters(t, scope, active_only)
        rows: list[Row] = []
        with self._operation("fetch_by_keys", table) as conn:
            for chunk in _chunks(keys, _KEY_CHUNK):
                if len(key_columns) == 1:
                    match = t.c[key_columns[0]].in_([k[0] for k in chunk])
                else:
                    match = tuple_(*(t.c[c] for c in key_columns)).in_(list(chunk))
                stmt = select(t).where(match, *filters).order_by(t.c.id)
                rows.extend(dict(r) for r in conn.execute(stmt).mappings())
        return rows

    def fetch_by_ids(self, table: str, ids: Iterable[Any]) -> list[Row]:
        t = self.table(table)
        ids = list(ids)
        rows: list[Row] = []
        with self._operation("fetch_by_ids", table) as conn:
            for chunk in _chunks(ids, _KEY_CHUNK):
                stmt = select(t).where(t.c.id.in_(list(chunk))).order_by(t.c.id)
                rows.extend(dict(r) for r in conn.execute(stmt).mappings())
        return rows

    def iter_scope(
        self,
        table: str,
        *,
        scope: Mapping[str, Any] | None = None,
        active_only: bool = False,
        batch_size: int = 1000,
    ) -> Iterator[list[Row]]:
        """Yield every row in scope, in id order, one batch at a time."""
        t = self.table(table)
        filters = self._filters(t, scope, active_only)
        last_id = None
        while True:
            stmt = select(t).where(*filters)
            if last_id is not None:
                stmt = stmt.where(t.c.id > last_id)
            stmt = stmt.order_by(t.c.id).limit(batch_size)
            with self._operation("iter_scope", table) as conn:
                batch = [dict(r) for r in conn.execute(stmt).mappings()]
            if not batch:
                return
            yield batch
            last_id = batch[-1]["id"]

    # -- writes -------------------------------------------------------------

    def insert_rows(self, table: str, rows: Sequence[Row]) -> int:
        if not rows:
            return 0
        t = self.table(table)
        with self._operation("insert", table) as conn:
            for group in _group_by_columns(rows).values():
                conn.execute(insert(t), group)
        return len(rows)

    def update_rows(self, table: str, rows: Sequence[Row]) -> int:
        """Update rows by ``id``; each row only touches the columns it carries."""
        if not rows:
            return 0
        t = self.table(table)
        count = 0
        with self._operation("update", table) as conn:
            for columns, group in _group_by_columns(rows).items():
                values = [c for c in columns if c != "id"]
                if not values:
                    continue
                stmt = (
                    update(t)
                    .where(t.c.id == bindparam("b_id"))
                    .values({c: bindparam(f"v_{c}") for c in values})
                )
                params = [
                    {"b_id": row["id"], **{f"v_{c}": row[c] for c in values}} for row in group
                ]
                result = conn.execute(stmt, params)
                count += max(result.rowcount, 0)
        return count

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        key_columns: Sequence[str],
        *,
        update_columns: Sequence[str] | None = None,
        version_column: str | None = None,
    ) -> int:
        if not rows:
            return 0
        t = self.table(table)
        dialect_ins = dialect_insert(self.engine.dialect.name)
        skip = set(key_columns) | {"id", "created_at"}
        with self._operation("upsert", table) as conn:
            for columns, group in _group_by_columns(rows).items():
                targets = [
                    c for c in (update_columns or columns) if c in columns and c not in skip
                ]
                stmt = dialect_ins(t)
                if not targets:
                    conn.execute(stmt.on_conflict_do_nothing(index_elements=list(key_columns)), group)
                    continue
                set_ = {c: stmt.excluded[c] for c in targets}
                versioned = version_column is not None and version_column in columns
                if versioned:
                    # Rows without a version always win, rows with one must be newer
                    plain = [r for r in group if r.get(version_column) is None]
                    newer = [r for r in group if r.get(version_column) is not None]
                    if plain:
                        conn.execute(
                            stmt.on_conflict_do_update(index_elements=list(key_columns), set_=set_),
                            plain,
                        )
                    if newer:
                        stored = t.c[version_column]
                        guarded = stmt.on_conflict_do_update(
                            index_elements=list(key_columns),
                            set_=set_,
                            where=or_(stored.is_(None), stored < stmt.excluded[version_column]),
                        )
                        conn.execute(guarded, newer)
                else:
                    conn.execute(
                        stmt.on_conflict_do_update(index_elements=list(key_columns), set_=set_),
                        group,
                    )
        return len(rows)

    def delete_ids(self, table: str, ids: Sequence[Any]) -> int:
        if not ids:
            return 0
        t = self.table(table)
        count = 0
        with self._operation("delete", table) as conn:
            for chunk in _chunks(list(ids), _KEY_CHUNK):
                result = conn.execute(delete(t).where(t.c.id.in_(list(chunk))))
                count += max(result.rowcount, 0)
        return count

    def archive_ids(self, table: str, ids: Sequence[Any], archived_at: datetime) -> int:
        return self.touch_ids(table, ids, "archived_at", archived_at)

    def touch_ids(self, table: str, ids: Sequence[Any], column: str, value: Any) -> int:
        if not ids:
            return 0
        t = self.table(table)
        count = 0
        with self._operation(f"touch {column}", table) as conn:
            for chunk in _chunks(list(ids), _KEY_CHUNK):
                stmt = update(t).where(t.c.id.in_(list(chunk))).values({column: value})
                result = conn.execute(stmt)
                count += max(result.rowcount, 0)
        return count

    def fetch_stale_ids(
        self,
        table: str,
        *,
        column: str,
        before: datetime,
        scope: Mapping[str, Any] | None = None,
        conditions: Sequence[Mapping[str, Any]] | None = None,
        active_only: bool = False,
        limit: int = 10000,
    ) -> list[Any]:
        """Ids whose *column* is older than *before* or NULL."""
        t = self.table(table)
        seen = t.c[column]
        stmt = select(t.c.id).where(
            or_(seen < before, seen.is_(None)),
            *self._filters(t, scope, active_only),
        )
        if conditions:
            stmt = stmt.where(
                or_(*(and_(*(t.c[k] == v for k, v in cond.items())) for cond in conditions))
            )
        stmt = stmt.order_by(t.c.id).limit(limit)
        with self._operation("fetch_stale_ids", table) as conn:
            return list(conn.execute(stmt).scalars())


__all__ = ["SQLAlchemyStorage", "dialect_insert"]
