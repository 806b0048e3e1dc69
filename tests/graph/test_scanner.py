"""Tests for the dependency scanner."""

from __future__ import annotations

import pytest

from inventory_spine.collection import (
    ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE,
    PARENT_COLLECTIONS_ATTRIBUTE,
    Collection,
)
from inventory_spine.errors import ConfigurationError, MissingDependencyError
from inventory_spine.graph.scanner import Scanner
from inventory_spine.references import LazyReference


class TestScanReferences:
    def test_lazy_reference_creates_dependency(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        hosts.build({"ems_ref": "h1"})
        ref = hosts.lazy_find("h1")
        vms.build({"ems_ref": "vm-1", "host": ref})

        Scanner.scan([vms, hosts])

        assert vms.dependency_attributes == {"host": {hosts}}
        assert vms.dependencies() == [hosts]
        assert hosts.references["manager_ref"][("h1",)] == [ref]
        assert vms in hosts.dependees
        assert vms.data_collection_finalized
        assert hosts.data_collection_finalized

    def test_nested_record_creates_dependency(self):
        vms = Collection("vms")
        disks = Collection("disks", manager_ref=["vm", "device_name"])
        vm = vms.build({"ems_ref": "vm-1"})
        disks.build({"vm": vm, "device_name": "sda"})

        Scanner.scan([disks, vms])

        assert disks.dependency_attributes == {"vm": {vms}}

    def test_list_values_are_scanned(self):
        vms = Collection("vms")
        networks = Collection("networks")
        vms.build(
            {"ems_ref": "vm-1", "networks": [networks.lazy_find("n1"), networks.lazy_find("n2")]}
        )

        Scanner.scan([vms, networks])

        assert vms.dependency_attributes == {"networks": {networks}}
        assert set(networks.references["manager_ref"]) == {("n1",), ("n2",)}

    def test_unsaved_attributes_are_not_dependencies(self):
        hosts = Collection("hosts")
        flavors = Collection("flavors")
        vms = Collection("vms", attributes_whitelist={"host"}, attributes_blacklist={"host"})
        vms.build(
            {"ems_ref": "vm-1", "host": hosts.lazy_find("h1"), "flavor": flavors.lazy_find("f1")}
        )

        Scanner.scan([vms, hosts, flavors])

        assert vms.dependency_attributes == {}
        assert hosts.references == {}
        assert flavors.references == {}

    def test_transitive_reference_does_not_schedule(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        vms.build({"ems_ref": "vm-1", "host_name": hosts.lazy_find("h1", key="name")})

        Scanner.scan([vms, hosts])

        assert vms.dependency_attributes == {}
        assert vms.transitive_dependency_attributes == {"host_name"}
        assert ("h1",) in hosts.references["manager_ref"]

    def test_deserialized_reference_is_attached(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        ref = LazyReference(None, {"ems_ref": "h1"}, collection_name="hosts")
        vms.build({"ems_ref": "vm-1", "host": ref})

        Scanner.scan([vms, hosts])

        assert ref.collection is hosts
        assert vms.dependency_attributes == {"host": {hosts}}

    def test_declared_dependency_attributes(self):
        hosts = Collection("hosts")
        vms = Collection("vms", dependency_attributes={"hardware": ["hosts"]})

        Scanner.scan([vms, hosts])

        assert vms.dependency_attributes == {"hardware": {hosts}}

    def test_complement_scope_references_are_fixed_dependencies(self):
        hosts = Collection("hosts")
        vms = Collection(
            "vms",
            all_manager_uuids=[],
            all_manager_uuids_scope=[{"host": hosts.lazy_find("h1")}, {"host": hosts.lazy_find("h2")}],
        )

        Scanner.scan([vms, hosts])

        assert vms.dependency_attributes == {ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE: {hosts}}
        assert vms.fixed_dependencies() == [hosts]
        assert set(hosts.references["manager_ref"]) == {("h1",), ("h2",)}

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError):
            Scanner.scan([Collection("vms"), Collection("vms")])

    def test_finalized_collection_is_skipped(self):
        hosts = Collection("hosts", strategy="local_db_cache_all")
        vms = Collection("vms")
        vms.build({"ems_ref": "vm-1", "host": hosts.lazy_find("h1")})

        Scanner.scan([vms, hosts])

        # local_db collections are already saved, so they schedule nothing
        assert vms.dependencies() == []
        assert ("h1",) in hosts.references["manager_ref"]


class TestMissingCollections:
    def test_full_refresh_records_unconnected_edge(self):
        vms = Collection("vms")
        vms.build(
            {"ems_ref": "vm-1", "flavor": LazyReference(None, {"ems_ref": "f1"}, collection_name="flavors")}
        )

        Scanner.scan([vms])

        assert len(vms.unconnected_edges) == 1
        assert vms.unconnected_edges[0].attribute == "flavor"
        assert vms.dependency_attributes == {}

    def test_targeted_refresh_fails(self):
        vms = Collection("vms", targeted=True)
        vms.build(
            {"ems_ref": "vm-1", "flavor": LazyReference(None, {"ems_ref": "f1"}, collection_name="flavors")}
        )

        with pytest.raises(MissingDependencyError, match="flavors"):
            Scanner.scan([vms])

    def test_targeted_declared_parent_missing(self):
        vms = Collection("vms", targeted=True, parent_collections=["hosts"])
        with pytest.raises(MissingDependencyError):
            Scanner.scan([vms])


class TestParentCollections:
    def test_declared_parents_become_dependencies(self):
        hosts = Collection("hosts")
        vms = Collection("vms", targeted=True, parent_collections=["hosts"])

        Scanner.scan([vms, hosts])

        assert vms.parent_collections == [hosts]
        assert vms.dependency_attributes[PARENT_COLLECTIONS_ATTRIBUTE] == {hosts}

    def test_through_relation_uses_root_ancestor(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        disks = Collection("disks", manager_ref=["vm", "device_name"], targeted=True)

        Scanner.scan([disks, vms, hosts], associations={"disks": "vms", "vms": "hosts"})

        assert disks.parent_collections == [hosts]
        assert disks.dependency_attributes[PARENT_COLLECTIONS_ATTRIBUTE] == {vms, hosts}

    def test_targeted_scope_is_tracked_without_parents(self):
        vms = Collection("vms", targeted=True)
        vms.build({"ems_ref": "vm-1"})

        Scanner.scan([vms])

        assert vms.targeted_scope == {("vm-1",): {"ems_ref": "vm-1"}}
