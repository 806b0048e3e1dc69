"""Topological layering of the scheduling graph (Kahn's algorithm)."""

from __future__ import annotations

from collections import defaultdict

from inventory_spine.collection import Collection
from inventory_spine.errors import InvariantError
from inventory_spine.graph.dependency_graph import DependencyGraph


def topological_layers(graph: DependencyGraph) -> list[list[Collection]]:
    """Order the acyclic scheduling graph into layers.

    Every collection in layer *i* depends only on collections in layers
    ``< i``.  Collections keep the caller's order inside a layer.

    Args:
        graph: Graph whose cycles were already resolved.

    Returns:
        List of layers, dependencies first.

    Raises:
        InvariantError: Nodes remain with positive in-degree, meaning the
            cycle resolver left a cycle behind.
    """
    order = {name: index for index, name in enumerate(graph.nodes)}
    in_degree: dict[str, int] = {name: 0 for name in graph.nodes}
    dependents: dict[str, list[str]] = defaultdict(list)

    for source, target in {(e.source, e.target) for e in graph.scheduling_edges}:
        in_degree[source] += 1
        dependents[target].append(source)

    layers: list[list[Collection]] = []
    current = [name for name in graph.nodes if in_degree[name] == 0]
    placed = 0
    while current:
        layers.append([graph.nodes[name] for name in current])
        placed += len(current)
        following = []
        for name in current:
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = sorted(following, key=order.__getitem__)

    if placed != len(graph.nodes):
        remaining = [name for name, degree in in_degree.items() if degree > 0]
        raise InvariantError(f"Topological sort incomplete. Remaining: {remaining}")
    return layers


def layer_index(layers: list[list[Collection]]) -> dict[str, int]:
    """Map collection name to the index of its layer."""
    return {c.name: index for index, layer in enumerate(layers) for c in layer}


__all__ = ["layer_index", "topological_layers"]
