"""Tests for topological layering."""

from __future__ import annotations

import pytest

from inventory_spine.collection import Collection
from inventory_spine.errors import InvariantError
from inventory_spine.graph.dependency_graph import DependencyGraph
from inventory_spine.graph.scanner import Scanner
from inventory_spine.graph.topological_sort import layer_index, topological_layers


def names(layers: list[list[Collection]]) -> list[list[str]]:
    return [[c.name for c in layer] for layer in layers]


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def inventory() -> list[Collection]:
    """flavors <- vms <- disks, hosts <- vms, networks standalone."""
    flavors = Collection("flavors")
    hosts = Collection("hosts")
    vms = Collection("vms")
    disks = Collection("disks", manager_ref=["vm", "device_name"])
    networks = Collection("networks")

    flavors.build({"ems_ref": "f1"})
    hosts.build({"ems_ref": "h1"})
    vm = vms.build(
        {"ems_ref": "vm-1", "host": hosts.lazy_find("h1"), "flavor": flavors.lazy_find("f1")}
    )
    disks.build({"vm": vm, "device_name": "sda"})
    networks.build({"ems_ref": "n1"})

    collections = [disks, networks, vms, hosts, flavors]
    Scanner.scan(collections)
    return collections


class TestTopologicalLayers:
    def test_layers(self, inventory):
        layers = topological_layers(DependencyGraph.build(inventory))
        assert names(layers) == [["networks", "hosts", "flavors"], ["vms"], ["disks"]]

    def test_every_edge_points_to_an_earlier_layer(self, inventory):
        graph = DependencyGraph.build(inventory)
        index = layer_index(topological_layers(graph))
        for edge in graph.scheduling_edges:
            assert index[edge.target] < index[edge.source]

    def test_deferred_edges_do_not_order(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        hosts.build({"ems_ref": "h1", "primary_vm": vms.lazy_find("vm-1")})
        vms.build({"ems_ref": "vm-1", "host": hosts.lazy_find("h1")})
        Scanner.scan([hosts, vms])

        layers = topological_layers(DependencyGraph.build([hosts, vms]))

        assert names(layers) == [["vms"], ["hosts"]]

    def test_saved_collection_has_no_dependents(self):
        hosts = Collection("hosts", strategy="local_db_cache_all")
        vms = Collection("vms")
        vms.build({"ems_ref": "vm-1", "host": hosts.lazy_find("h1")})
        Scanner.scan([vms, hosts])

        layers = topological_layers(DependencyGraph.build([vms, hosts]))

        assert names(layers) == [["vms", "hosts"]]

    def test_unresolved_cycle_is_an_invariant_violation(self):
        hosts = Collection("hosts")
        vms = Collection("vms")
        hosts.build({"ems_ref": "h1", "primary_vm": vms.lazy_find("vm-1")})
        vms.build({"ems_ref": "vm-1", "host": hosts.lazy_find("h1")})
        Scanner.scan([hosts, vms])

        # resolve_cycles was never called
        graph = DependencyGraph([hosts, vms])

        with pytest.raises(InvariantError, match="Remaining"):
            topological_layers(graph)

    def test_empty(self):
        assert topological_layers(DependencyGraph.build([])) == []
