"""Scanning, cycle resolution and scheduling of collections."""

from inventory_spine.graph.dependency_graph import DependencyEdge, DependencyGraph, find_cycle
from inventory_spine.graph.scanner import Scanner
from inventory_spine.graph.topological_sort import layer_index, topological_layers

__all__ = [
    "DependencyEdge",
    "DependencyGraph",
    "Scanner",
    "find_cycle",
    "layer_index",
    "topological_layers",
]
