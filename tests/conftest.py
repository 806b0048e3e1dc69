"""
Shared pytest fixtures for inventory-spine tests.

This module provides:
- A file-backed SQLite engine per test (``tmp_path``)
- Entity tables shaped like provider inventory (hosts, vms, flavors, disks)
- A ``SQLAlchemyStorage`` over those tables
- A ``RefreshStateStore`` over the coordination tables
- Small settings so batching code paths run with a handful of rows
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

from inventory_spine.orm.session import create_inventory_engine
from inventory_spine.refresh.state import RefreshStateStore
from inventory_spine.settings import RefreshSettings
from inventory_spine.storage.sqlalchemy_backend import SQLAlchemyStorage


def _bookkeeping_columns() -> list[Column]:
    return [
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
        Column("last_seen_at", DateTime),
        Column("resource_timestamp", DateTime),
        Column("archived_at", DateTime),
    ]


def build_metadata() -> MetaData:
    metadata = MetaData()
    Table(
        "hosts",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("ems_id", Integer),
        Column("ems_ref", Text, nullable=False),
        Column("name", Text),
        Column("primary_vm_id", Integer),
        *_bookkeeping_columns(),
        UniqueConstraint("ems_ref", name="uq_hosts_ems_ref"),
    )
    Table(
        "vms",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("ems_id", Integer),
        Column("ems_ref", Text, nullable=False),
        Column("name", Text),
        Column("host_id", Integer),
        Column("host_name", Text),
        Column("flavor_id", Integer),
        Column("parent_id", Integer),
        *_bookkeeping_columns(),
        UniqueConstraint("ems_ref", name="uq_vms_ems_ref"),
    )
    Table(
        "flavors",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("ems_ref", Text, nullable=False),
        Column("name", Text),
        Column("cpus", Integer),
        UniqueConstraint("ems_ref", name="uq_flavors_ems_ref"),
    )
    Table(
        "disks",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("vm_id", Integer),
        Column("device_name", Text, nullable=False),
        Column("size", Integer),
        *_bookkeeping_columns(),
        UniqueConstraint("vm_id", "device_name", name="uq_disks_vm_device"),
    )
    return metadata


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """SQLite engine on a temporary file."""
    eng = create_inventory_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def metadata(engine) -> MetaData:
    md = build_metadata()
    md.create_all(engine)
    return md


@pytest.fixture
def storage(engine, metadata) -> SQLAlchemyStorage:
    return SQLAlchemyStorage(engine, metadata)


@pytest.fixture
def settings() -> RefreshSettings:
    """Small batches so multi-batch paths are exercised."""
    return RefreshSettings(batch_size=2, sweep_batch_size=2, sweep_retry_count_limit=3)


@pytest.fixture
def state_store(engine) -> RefreshStateStore:
    return RefreshStateStore.from_engine(engine)


@pytest.fixture
def long_ago() -> datetime:
    return datetime(2020, 1, 1, tzinfo=UTC)


@pytest.fixture
def rows(storage):
    """Read back all rows of a table, in id order."""

    def _rows(table: str, **scope: Any) -> list[dict[str, Any]]:
        return [row for batch in storage.iter_scope(table, scope=scope or None) for row in batch]

    return _rows


@pytest.fixture
def rows_by_ref(rows):
    """Read back a table keyed by ``ems_ref``."""

    def _by_ref(table: str) -> dict[str, dict[str, Any]]:
        return {row["ems_ref"]: row for row in rows(table)}

    return _by_ref
