"""Tests for the SQLAlchemy storage backend."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from inventory_spine.errors import ConfigurationError, StorageError
from inventory_spine.storage.base import StorageBackend

T1 = datetime(2024, 1, 1, tzinfo=UTC)
T2 = datetime(2024, 1, 2, tzinfo=UTC)


class TestBasics:
    def test_satisfies_protocol(self, storage):
        assert isinstance(storage, StorageBackend)

    def test_columns(self, storage):
        assert {"id", "ems_ref", "last_seen_at"} <= storage.columns("vms")
        assert storage.has_column("vms", "archived_at")
        assert not storage.has_column("flavors", "last_seen_at")

    def test_unknown_table(self, storage):
        with pytest.raises(ConfigurationError, match="does not exist"):
            storage.columns("nope")

    def test_failed_statement_is_a_storage_error(self, storage):
        storage.insert_rows("vms", [{"ems_ref": "vm-1"}])
        with pytest.raises(StorageError) as excinfo:
            storage.insert_rows("vms", [{"ems_ref": "vm-1"}])
        assert excinfo.value.retryable


class TestReads:
    def test_fetch_by_single_key(self, storage):
        storage.insert_rows("vms", [{"ems_ref": "vm-1"}, {"ems_ref": "vm-2"}])
        rows = storage.fetch_by_keys("vms", ["ems_ref"], [("vm-2",), ("vm-3",)])
        assert [r["ems_ref"] for r in rows] == ["vm-2"]

    def test_fetch_by_composite_key(self, storage):
        storage.insert_rows(
            "disks",
            [
                {"vm_id": 1, "device_name": "sda"},
                {"vm_id": 1, "device_name": "sdb"},
                {"vm_id": 2, "device_name": "sda"},
            ],
        )
        rows = storage.fetch_by_keys("disks", ["vm_id", "device_name"], [(2, "sda")])
        assert [(r["vm_id"], r["device_name"]) for r in rows] == [(2, "sda")]

    def test_fetch_active_only(self, storage):
        storage.insert_rows("vms", [{"ems_ref": "vm-1", "archived_at": T1}, {"ems_ref": "vm-2"}])
        rows = storage.fetch_by_keys(
            "vms", ["ems_ref"], [("vm-1",), ("vm-2",)], active_only=True
        )
        assert [r["ems_ref"] for r in rows] == ["vm-2"]

    def test_iter_scope_pages_in_id_order(self, storage):
        storage.insert_rows("vms", [{"ems_ref": f"vm-{i}", "ems_id": i % 2} for i in range(5)])
        batches = list(storage.iter_scope("vms", batch_size=2))
        assert [len(b) for b in batches] == [2, 2, 1]
        scoped = [r["ems_ref"] for b in storage.iter_scope("vms", scope={"ems_id": 1}) for r in b]
        assert scoped == ["vm-1", "vm-3"]

    def test_scope_with_list_value(self, storage):
        storage.insert_rows("vms", [{"ems_ref": "a", "host_id": 1}, {"ems_ref": "b", "host_id": 2}])
        rows = [r for b in storage.iter_scope("vms", scope={"host_id": [2, 3]}) for r in b]
        assert [r["ems_ref"] for r in rows] == ["b"]


class TestWrites:
    def test_update_rows_touches_given_columns(self, storage, rows):
        storage.insert_rows("vms", [{"ems_ref": "vm-1", "name": "web", "host_id": 3}])
        (vm,) = rows("vms")
        assert storage.update_rows("vms", [{"id": vm["id"], "name": "api"}]) == 1
        (vm,) = rows("vms")
        assert vm["name"] == "api"
        assert vm["host_id"] == 3

    def test_upsert_inserts_and_updates(self, storage, rows):
        storage.upsert_rows("vms", [{"ems_ref": "vm-1", "name": "web"}], ["ems_ref"])
        storage.upsert_rows("vms", [{"ems_ref": "vm-1", "name": "api"}], ["ems_ref"])
        assert [r["name"] for r in rows("vms")] == ["api"]

    def test_upsert_version_guard(self, storage, rows):
        key = ["ems_ref"]
        storage.upsert_rows(
            "vms", [{"ems_ref": "vm-1", "name": "new", "resource_timestamp": T2}], key,
            version_column="resource_timestamp",
        )
        storage.upsert_rows(
            "vms", [{"ems_ref": "vm-1", "name": "old", "resource_timestamp": T1}], key,
            version_column="resource_timestamp",
        )
        (vm,) = rows("vms")
        assert vm["name"] == "new"

    def test_upsert_limited_columns(self, storage, rows):
        storage.insert_rows("vms", [{"ems_ref": "vm-1", "name": "web", "host_id": 1}])
        storage.upsert_rows(
            "vms", [{"ems_ref": "vm-1", "name": "api", "host_id": 2}], ["ems_ref"],
            update_columns=["host_id"],
        )
        (vm,) = rows("vms")
        assert (vm["name"], vm["host_id"]) == ("web", 2)

    def test_delete_and_archive(self, storage, rows):
        storage.insert_rows("vms", [{"ems_ref": "a"}, {"ems_ref": "b"}, {"ems_ref": "c"}])
        ids = {r["ems_ref"]: r["id"] for r in rows("vms")}
        assert storage.delete_ids("vms", [ids["a"]]) == 1
        storage.archive_ids("vms", [ids["b"]], T1)
        assert [r["ems_ref"] for b in storage.iter_scope("vms", active_only=True) for r in b] == ["c"]
        assert len(rows("vms")) == 2


class TestFetchStaleIds:
    def test_older_and_null_are_stale(self, storage, rows):
        storage.insert_rows(
            "vms",
            [
                {"ems_ref": "old", "last_seen_at": T1},
                {"ems_ref": "never"},
                {"ems_ref": "fresh", "last_seen_at": T2},
            ],
        )
        ids = {r["ems_ref"]: r["id"] for r in rows("vms")}
        stale = storage.fetch_stale_ids("vms", column="last_seen_at", before=T2)
        assert stale == [ids["old"], ids["never"]]

    def test_conditions_and_limit(self, storage, rows):
        storage.insert_rows(
            "vms",
            [
                {"ems_ref": "a", "host_id": 1},
                {"ems_ref": "b", "host_id": 2},
                {"ems_ref": "c", "host_id": 1},
            ],
        )
        ids = {r["ems_ref"]: r["id"] for r in rows("vms")}
        stale = storage.fetch_stale_ids(
            "vms", column="last_seen_at", before=T2, conditions=[{"host_id": 1}], limit=1
        )
        assert stale == [ids["a"]]
