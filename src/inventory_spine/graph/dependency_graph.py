"""
Dependency graph and cycle resolver.

Manifesto:
    Real inventories reference themselves in circles: a stack points at its
    parent stack, a VM points at its template while the template lists the
    VMs built from it.  Refusing such data is not an option, and neither is
    silently dropping one side of the cycle.

    The graph is a directed multigraph whose edges are tagged with the
    attribute that created them.  Cycles are broken attribute by attribute:
    the attribute owning a feedback edge is left out of the first save and
    written in a deferred pass once every layer has been saved.

Architecture:
    ::

        Collection.dependency_attributes
                 │
                 ▼
        edges: (source, target, attribute, fixed, backed)
                 │
                 ├── fixed/unbacked edges ──► must be acyclic, else CycleError
                 │
                 ├── movable edges, sorted (source, target, attribute)
                 │      added one by one unless they close a cycle
                 │      ──► feedback edges
                 │
                 ▼
        deferred_attributes: source -> {attribute}
        scheduling_edges:    edges minus every (source, deferred attribute)

    An edge ``A -> B`` means "B is saved before A".  An edge is *fixed* when
    its attribute is part of the identity, a required attribute or an internal
    (parent or complement scope) dependency; it is *backed* when at least one
    record of the source really carries the attribute.  Only backed, non-fixed
    edges can become feedback edges.

Tie-break:
    Movable edges are tried in lexical ``(source, target, attribute)`` order
    and kept greedily; the first edge that would close a cycle becomes the
    feedback edge.  Same edge set, same result.

Examples:
    >>> graph = DependencyGraph.build([vms, hosts])
    >>> graph.deferred_attributes
    {'hosts': {'primary_vm'}}

Tags:
    graph, dag, cycle-detection, feedback-edge-set, inventory-refresh

Doc-Types:
    - API Reference
    - Algorithm Notes
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from inventory_spine.collection import INTERNAL_ATTRIBUTES, Collection
from inventory_spine.errors import ConfigurationError, CycleError, InvariantError
from inventory_spine.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    """``source`` depends on ``target`` through ``attribute``."""

    source: str
    target: str
    attribute: str
    fixed: bool
    backed: bool

    @property
    def movable(self) -> bool:
        return self.backed and not self.fixed

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.source, self.target, self.attribute)


def find_cycle(nodes: Iterable[str], adjacency: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one cycle as a node path, or None for an acyclic graph.

    Iterative depth-first search with three-color marking; a GRAY neighbor is
    on the current path, so reaching it closes a cycle.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {node: WHITE for node in nodes}

    for start in list(color):
        if color[start] != WHITE:
            continue
        color[start] = GRAY
        path = [start]
        stack = [iter(sorted(adjacency.get(start, ())))]
        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            state = color.setdefault(neighbor, WHITE)
            if state == GRAY:
                return path[path.index(neighbor):] + [neighbor]
            if state == WHITE:
                color[neighbor] = GRAY
                path.append(neighbor)
                stack.append(iter(sorted(adjacency.get(neighbor, ()))))
    return None


def _reaches(adjacency: Mapping[str, set[str]], start: str, goal: str) -> bool:
    queue = deque([start])
    seen = {start}
    while queue:
        node = queue.popleft()
        if node == goal:
            return True
        for neighbor in adjacency.get(node, ()):
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)
    return False


def _adjacency(edges: Iterable[DependencyEdge]) -> dict[str, set[str]]:
    adjacency: dict[str, set[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source, set()).add(edge.target)
    return adjacency


class DependencyGraph:
    """Graph over collections, made acyclic by :meth:`resolve_cycles`.

    Args:
        collections: Every collection of the refresh, in caller order.
        assert_integrity: Fail instead of warn when a deferred attribute can't
            be written afterwards.  Defaults to True when any collection runs
            with integrity assertions.
    """

    def __init__(self, collections: Iterable[Collection], *, assert_integrity: bool | None = None):
        self.collections: list[Collection] = list(collections)
        self.nodes: dict[str, Collection] = {c.name: c for c in self.collections}
        if assert_integrity is None:
            assert_integrity = any(c.assert_graph_integrity for c in self.collections)
        self.assert_integrity = assert_integrity
        self.edges: list[DependencyEdge] = self._build_edges()
        self.feedback_edges: list[DependencyEdge] = []
        self.deferred_attributes: dict[str, set[str]] = {}
        self.scheduling_edges: list[DependencyEdge] = list(self.edges)

    @classmethod
    def build(cls, collections: Iterable[Collection], **kwargs: Any) -> DependencyGraph:
        graph = cls(collections, **kwargs)
        graph.resolve_cycles()
        return graph

    def _build_edges(self) -> list[DependencyEdge]:
        edges = []
        for collection in self.collections:
            if collection.saved:
                continue
            fixed_attributes = collection.fixed_attributes | INTERNAL_ATTRIBUTES
            for attribute in sorted(collection.dependency_attributes):
                targets = collection.dependency_attributes[attribute]
                backed = any(attribute in r.data for r in collection.records) or any(
                    attribute in r.data for r in collection.skeletal_index.values()
                )
                for target in sorted(targets, key=lambda c: c.name):
                    if target.saved or self.nodes.get(target.name) is not target:
                        continue
                    edges.append(
                        DependencyEdge(
                            source=collection.name,
                            target=target.name,
                            attribute=attribute,
                            fixed=attribute in fixed_attributes,
                            backed=backed,
                        )
                    )
        return edges

    def resolve_cycles(self) -> None:
        """Select feedback edges so the scheduling graph is acyclic.

        Raises:
            CycleError: The unmovable edges alone form a cycle.
            ConfigurationError: With integrity assertions, a deferred
                attribute could never be written.
            InvariantError: The scheduling graph still has a cycle.
        """
        unmovable = [e for e in self.edges if not e.movable]
        cycle = find_cycle(self.nodes, _adjacency(unmovable))
        if cycle is not None:
            raise CycleError(cycle)

        acyclic = _adjacency(unmovable)
        self.feedback_edges = []
        for edge in sorted((e for e in self.edges if e.movable), key=lambda e: e.sort_key):
            if edge.source == edge.target or _reaches(acyclic, edge.target, edge.source):
                self.feedback_edges.append(edge)
                logger.debug(
                    "graph.feedback_edge",
                    source=edge.source,
                    target=edge.target,
                    attribute=edge.attribute,
                )
            else:
                acyclic.setdefault(edge.source, set()).add(edge.target)

        self.deferred_attributes = {}
        for edge in self.feedback_edges:
            self.deferred_attributes.setdefault(edge.source, set()).add(edge.attribute)
        self._check_deferrable()

        self.scheduling_edges = [
            e for e in self.edges if e.attribute not in self.deferred_attributes.get(e.source, ())
        ]
        cycle = find_cycle(self.nodes, _adjacency(self.scheduling_edges))
        if cycle is not None:
            raise InvariantError(f"Scheduling graph still has a cycle: {' -> '.join(cycle)}")

        if self.feedback_edges:
            logger.info(
                "graph.cycles_resolved",
                feedback_edges=len(self.feedback_edges),
                deferred={k: sorted(v) for k, v in self.deferred_attributes.items()},
            )

    def _check_deferrable(self) -> None:
        for name, attributes in self.deferred_attributes.items():
            collection = self.nodes[name]
            if not (collection.create_only or collection.custom_saver is not None):
                continue
            message = (
                f"Attributes {sorted(attributes)} of {name!r} close a dependency cycle but "
                "the collection can't be updated in a deferred pass"
            )
            if self.assert_integrity:
                raise ConfigurationError(message).with_context(collection=name)
            logger.warning("graph.undeferrable_attributes", collection=name, message=message)

    def dependencies_of(self, name: str) -> set[str]:
        """Names of collections that must be saved before *name*."""
        return {e.target for e in self.scheduling_edges if e.source == name}

    def to_graphviz(self, layers: list[list[Collection]] | None = None) -> str:
        """Render the scheduling graph as DOT text, one cluster per layer."""
        lines = ["digraph {"]
        if layers:
            for index, layer in enumerate(layers):
                lines.append(f"  subgraph cluster_{index} {{")
                lines.append(f'    label = "layer {index}";')
                for collection in layer:
                    lines.append(f'    "{collection.name}";')
                lines.append("  }")
        else:
            for name in self.nodes:
                lines.append(f'  "{name}";')
        for edge in self.scheduling_edges:
            style = "" if not edge.fixed else " [style=bold]"
            lines.append(f'  "{edge.source}" -> "{edge.target}"{style};')
        for edge in self.feedback_edges:
            lines.append(
                f'  "{edge.source}" -> "{edge.target}" '
                f'[style=dashed, label="{edge.attribute}"];'
            )
        lines.append("}")
        return "\n".join(lines)


__all__ = ["DependencyEdge", "DependencyGraph", "find_cycle"]
