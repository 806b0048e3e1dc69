"""
Storage collaborator protocol (SYNC-ONLY).

The saver, resolver and sweeper only ever talk to storage through this
narrow interface.  Rows are plain dicts keyed by column name; every stored
row has an ``id`` column.

Contract:
    - identity-keyed lookup of existing rows by a key list
    - atomic upsert by key, guarded by a comparison (version) column
    - batched delete / archive by id
    - column existence, used to decide whether ``last_seen_at`` sweeping
      and timestamp bookkeeping apply

Each call is its own transaction.  A failing batch is rolled back as a
whole; batches that completed before it stay committed.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

Row = dict[str, Any]


@runtime_checkable
class StorageBackend(Protocol):
    """Operations the refresh core needs from a relational store."""

    def columns(self, table: str) -> frozenset[str]: ...

    def has_column(self, table: str, column: str) -> bool: ...

    def fetch_by_keys(
        self,
        table: str,
        key_columns: Sequence[str],
        keys: Iterable[tuple],
        *,
        scope: Mapping[str, Any] | None = None,
        active_only: bool = False,
    ) -> list[Row]: ...

    def fetch_by_ids(self, table: str, ids: Iterable[Any]) -> list[Row]: ...

    def iter_scope(
        self,
        table: str,
        *,
        scope: Mapping[str, Any] | None = None,
        active_only: bool = False,
        batch_size: int = 1000,
    ) -> Iterator[list[Row]]: ...

    def insert_rows(self, table: str, rows: Sequence[Row]) -> int: ...

    def update_rows(self, table: str, rows: Sequence[Row]) -> int: ...

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[Row],
        key_columns: Sequence[str],
        *,
        update_columns: Sequence[str] | None = None,
        version_column: str | None = None,
    ) -> int: ...

    def delete_ids(self, table: str, ids: Sequence[Any]) -> int: ...

    def archive_ids(self, table: str, ids: Sequence[Any], archived_at: datetime) -> int: ...

    def touch_ids(self, table: str, ids: Sequence[Any], column: str, value: Any) -> int: ...

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
    ) -> list[Any]: ...


__all__ = ["Row", "StorageBackend"]
