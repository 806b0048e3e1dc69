"""Tests for collections, records and lazy references."""

from __future__ import annotations

import json

import pytest

from inventory_spine.collection import Collection, CollectionConfig
from inventory_spine.enums import ResolutionMode, RetentionStrategy, SaverStrategy, Strategy
from inventory_spine.errors import (
    ConfigurationError,
    DuplicateIdentityError,
    InvalidIdentityError,
    NotAllowedPropertyError,
    UnknownStrategyError,
)
from inventory_spine.graph.scanner import Scanner
from inventory_spine.record import Record
from inventory_spine.references import LazyReference, ResolvedReference


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def hosts() -> Collection:
    return Collection("hosts", manager_ref=["ems_ref"])


@pytest.fixture
def vms() -> Collection:
    return Collection("vms", manager_ref=["ems_ref"], secondary_refs={"by_name": ["name"]})


# ── Configuration ─────────────────────────────────────────────────────


class TestCollectionConfig:
    def test_strings_are_coerced_to_enums(self):
        config = CollectionConfig(
            name="vms",
            strategy="local_db_find_missing_references",
            saver_strategy="batch",
            retention_strategy="archive",
        )
        assert config.strategy is Strategy.LOCAL_DB_FIND_MISSING_REFERENCES
        assert config.saver_strategy is SaverStrategy.BATCH
        assert config.retention_strategy is RetentionStrategy.ARCHIVE

    def test_unknown_strategy(self):
        with pytest.raises(UnknownStrategyError, match="concurrent"):
            Collection("vms", saver_strategy="turbo")

    def test_empty_manager_ref(self):
        with pytest.raises(InvalidIdentityError):
            Collection("vms", manager_ref=[])

    def test_unknown_property(self):
        with pytest.raises(NotAllowedPropertyError):
            Collection("vms", model_class="Vm")

    def test_update_only_and_create_only_conflict(self):
        with pytest.raises(ConfigurationError):
            Collection("vms", update_only=True, create_only=True)

    def test_identity_attributes_cannot_be_blacklisted(self):
        vms = Collection("vms", attributes_blacklist=["ems_ref", "name"])
        assert vms.config.attributes_blacklist == frozenset({"name"})
        assert vms.saves_attribute("ems_ref")
        assert not vms.saves_attribute("name")

    def test_whitelist_always_keeps_identity(self):
        vms = Collection("vms", attributes_whitelist=["name"])
        assert vms.saves_attribute("ems_ref")
        assert vms.saves_attribute("name")
        assert not vms.saves_attribute("power_state")

    def test_blacklist_applies_to_restricted_passes(self):
        vms = Collection("vms", attributes_blacklist=["host"])
        assert not vms.saves_attribute("host", only={"host"})
        assert vms.saves_attribute("parent", only={"parent"})
        assert not vms.saves_attribute("name", only={"parent"})

    def test_complement_scope_keys_must_be_uniform(self):
        with pytest.raises(ConfigurationError):
            Collection("vms", all_manager_uuids_scope=[{"host": 1}, {"region": 2}])
        with pytest.raises(ConfigurationError):
            Collection("vms", all_manager_uuids_scope=[{}])

    def test_callable_defaults_use_context(self):
        vms = Collection(
            "vms",
            default_values={"ems_id": lambda ctx: ctx["ems_id"], "vendor": "acme"},
            context={"ems_id": 7},
        )
        record = vms.build({"ems_ref": "vm-1"})
        assert record["ems_id"] == 7
        assert record["vendor"] == "acme"

    def test_flags(self):
        assert Collection("vms").delete_allowed
        assert not Collection("vms", complete=False).delete_allowed
        assert not Collection("vms", update_only=True).delete_allowed
        assert not Collection("vms", targeted=True).delete_allowed
        assert not Collection("vms", update_only=True).create_allowed
        assert Collection("vms", saver_strategy="concurrent_safe_batch").parallel_safe

    def test_local_db_cache_all_starts_saved_and_finalized(self):
        hosts = Collection("hosts", strategy="local_db_cache_all")
        assert hosts.saved
        assert hosts.data_collection_finalized


# ── Building and lookup ───────────────────────────────────────────────


class TestBuild:
    def test_build_and_find(self, vms):
        record = vms.build({"ems_ref": "vm-1", "name": "web"})
        assert isinstance(record, Record)
        assert vms.find("vm-1") is record
        assert vms.find({"ems_ref": "vm-1"}) is record
        assert vms.find("vm-2") is None
        assert len(vms) == 1

    def test_find_by_secondary_ref(self, vms):
        record = vms.build({"ems_ref": "vm-1", "name": "web"})
        assert vms.find("web", ref="by_name") is record

    def test_duplicate_identity(self, vms):
        vms.build({"ems_ref": "vm-1"})
        with pytest.raises(DuplicateIdentityError):
            vms.build({"ems_ref": "vm-1"})

    def test_missing_identity_attribute(self, vms):
        with pytest.raises(InvalidIdentityError):
            vms.build({"name": "web"})

    def test_allowed_nil_identity_attribute(self):
        disks = Collection("disks", manager_ref=["vm", "device_name"], manager_ref_allowed_nil=["vm"])
        record = disks.build({"device_name": "sda"})
        assert record.identity == (None, "sda")

    def test_find_or_build(self, vms):
        first = vms.find_or_build({"ems_ref": "vm-1"})
        assert vms.find_or_build({"ems_ref": "vm-1"}) is first

    def test_build_partial_merges(self, vms):
        vms.build_partial({"ems_ref": "vm-1", "name": "web"})
        record = vms.build_partial({"ems_ref": "vm-1", "power_state": "on"})
        assert record.partial
        assert record.data == {"ems_ref": "vm-1", "name": "web", "power_state": "on"}
        assert len(vms) == 0
        assert vms.find("vm-1") is record

    def test_record_identity_is_read_only(self, vms):
        record = vms.build({"ems_ref": "vm-1"})
        record["name"] = "web"
        with pytest.raises(ConfigurationError):
            record["ems_ref"] = "vm-2"

    def test_finalized_collection_rejects_changes(self, vms):
        record = vms.build({"ems_ref": "vm-1"})
        vms.mark_finalized()
        with pytest.raises(ConfigurationError):
            vms.build({"ems_ref": "vm-2"})
        with pytest.raises(ConfigurationError):
            record["name"] = "late"

    def test_record_in_identity(self, vms):
        disks = Collection("disks", manager_ref=["vm", "device_name"])
        vm = vms.build({"ems_ref": "vm-1"})
        disk = disks.build({"vm": vm, "device_name": "sda"})
        assert disks.find({"vm": vm.lazy(), "device_name": "sda"}) is disk


class TestLazyReference:
    def test_modes(self, hosts):
        assert hosts.lazy_find("h1").mode is ResolutionMode.DEPENDENCY
        assert hosts.lazy_find("h1", key="name").mode is ResolutionMode.TRANSITIVE
        assert hosts.lazy_find("h1", mode="transitive").is_transitive

    def test_equality_by_target_identity(self, hosts):
        assert hosts.lazy_find("h1") == hosts.lazy_find({"ems_ref": "h1"})
        assert hosts.lazy_find("h1") != hosts.lazy_find("h1", key="name")
        assert len({hosts.lazy_find("h1"), hosts.lazy_find("h1")}) == 1

    def test_bind(self, hosts):
        ref = hosts.lazy_find("h1")
        assert not ref.is_resolved
        ref.bind(ResolvedReference(id=5, value=5))
        assert ref.is_resolved
        assert ref.resolution.value == 5

    def test_bad_lookup_arity(self):
        disks = Collection("disks", manager_ref=["vm", "device_name"])
        with pytest.raises(InvalidIdentityError):
            disks.lazy_find("sda")

    def test_needs_a_target(self):
        with pytest.raises(ValueError):
            LazyReference(None, {"ems_ref": "x"})


# ── Transfer format ───────────────────────────────────────────────────


class TestTransferFormat:
    def test_round_trip_reproduces_data(self, hosts, vms):
        host = hosts.build({"ems_ref": "h1", "name": "esx-1"})
        vms.build({"ems_ref": "vm-1", "name": "web", "host": hosts.lazy_find("h1")})
        vms.build({"ems_ref": "vm-2", "name": "db", "host": host, "tags": ["a", "b"]})
        vms.build_partial({"ems_ref": "vm-3", "power_state": "off"})

        payload = vms.to_dict()
        fresh_hosts = Collection("hosts")
        fresh_vms = Collection("vms", secondary_refs={"by_name": ["name"]})
        fresh_vms.load_dict(payload, {"hosts": fresh_hosts, "vms": fresh_vms})

        again = fresh_vms.to_dict()
        assert sorted(again["data"], key=repr) == sorted(payload["data"], key=repr)
        assert again["partial_data"] == payload["partial_data"]
        ref = fresh_vms.find("vm-1")["host"]
        assert isinstance(ref, LazyReference)
        assert ref.collection is fresh_hosts

    def test_payload_shape(self, vms):
        vms.build({"ems_ref": "vm-1"})
        payload = vms.to_dict()
        assert set(payload) == {"name", "manager_uuids", "all_manager_uuids", "data", "partial_data"}
        assert payload["name"] == "vms"
        assert payload["all_manager_uuids"] is None

    def test_targeted_scope_round_trip(self):
        vms = Collection("vms", targeted=True)
        vms.build({"ems_ref": "vm-1"})
        Scanner.scan([vms])
        payload = vms.to_dict()
        assert payload["manager_uuids"] == [{"ems_ref": "vm-1"}]

        fresh = Collection("vms", targeted=True)
        fresh.load_dict(payload, {"vms": fresh})
        assert list(fresh.targeted_scope) == [("vm-1",)]

    def test_wrong_collection_name(self, vms, hosts):
        with pytest.raises(ConfigurationError):
            hosts.load_dict(vms.to_dict(), {"hosts": hosts})

    def test_all_manager_uuids_are_normalized(self):
        vms = Collection("vms", all_manager_uuids=["vm-1", {"ems_ref": "vm-2"}])
        assert vms.all_manager_uuids == [{"ems_ref": "vm-1"}, {"ems_ref": "vm-2"}]
        assert vms.all_known_identities == {("vm-1",), ("vm-2",)}

    def test_references_in_identities_round_trip(self, vms):
        disks = Collection(
            "disks",
            manager_ref=["vm", "device_name"],
            targeted=True,
            all_manager_uuids=[{"vm": vms.lazy_find("vm-1"), "device_name": "sda"}],
        )
        disks.build({"vm": vms.lazy_find("vm-2"), "device_name": "sdb"})
        Scanner.scan([disks, vms])

        payload = json.loads(json.dumps(disks.to_dict()))
        fresh_vms = Collection("vms")
        fresh = Collection("disks", manager_ref=["vm", "device_name"], targeted=True)
        fresh.load_dict(payload, {"disks": fresh, "vms": fresh_vms})

        assert fresh.all_known_identities == disks.all_known_identities
        assert list(fresh.targeted_scope) == list(disks.targeted_scope)
        ref = fresh.all_manager_uuids[0]["vm"]
        assert isinstance(ref, LazyReference)
        assert ref.collection is fresh_vms
        assert isinstance(next(iter(fresh.targeted_scope.values()))["vm"], LazyReference)
