"""
Whole-refresh save: scan, order, save layer by layer, then write deferred
attributes.

Manifesto:
    The caller hands over a flat list of collections.  Nothing about the
    order they were built in matters: the dependency graph decides which
    collection is written first, breaks cycles by deferring attributes,
    and the deferred pass writes those attributes once every row exists.

Architecture:
    ::

        collections
            │ Scanner.scan
            ▼
        DependencyGraph.build  ── feedback edges ──► deferred attributes
            │ topological_layers
            ▼
        layer 0 ─► layer 1 ─► ... ─► layer n       (save_collection each)
                                        │
                                        ▼
                               save_deferred per collection

    Collections inside one layer never depend on each other, so a layer may
    be saved by a thread pool (``max_workers > 1``).  The next layer only
    starts once every future of the current one has finished; the first
    failure is re-raised after the layer settles.

Examples:
    >>> result = save_inventory([hosts, vms], storage)   # doctest: +SKIP
    >>> [[c.name for c in layer] for layer in result.layers]  # doctest: +SKIP
    [['hosts'], ['vms']]

Tags:
    save-inventory, orchestration, layers, deferred-pass

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.graph.dependency_graph import DependencyGraph
from inventory_spine.graph.scanner import Scanner
from inventory_spine.graph.topological_sort import topological_layers
from inventory_spine.logging import get_logger
from inventory_spine.save.resolver import Resolver
from inventory_spine.save.saver import SaveReport, save_collection, save_deferred
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage.base import StorageBackend

logger = get_logger(__name__)


@dataclass
class InventorySaveResult:
    """Outcome of one :func:`save_inventory` call."""

    layers: list[list[Collection]]
    deferred_attributes: dict[str, set[str]]
    reports: dict[str, SaveReport] = field(default_factory=dict)
    deferred_reports: dict[str, SaveReport] = field(default_factory=dict)

    @property
    def unconnected_edges(self) -> int:
        return sum(len(c.unconnected_edges) for layer in self.layers for c in layer)

    def to_dict(self) -> dict[str, Any]:
        return {
            "layers": [[c.name for c in layer] for layer in self.layers],
            "deferred_attributes": {k: sorted(v) for k, v in self.deferred_attributes.items()},
            "reports": {name: report.to_dict() for name, report in self.reports.items()},
            "unconnected_edges": self.unconnected_edges,
        }


def save_inventory(
    collections: Iterable[Collection],
    storage: StorageBackend,
    *,
    associations: Mapping[str, str] | None = None,
    settings: RefreshSettings | None = None,
    max_workers: int = 1,
) -> InventorySaveResult:
    """Persist every collection of one refresh in dependency order.

    Args:
        collections: All collections of the refresh.
        storage: Backend to write to.
        associations: Through-relation map used to derive parent collections
            of targeted collections.
        settings: Overrides the process settings.
        max_workers: Threads used to save the collections of one layer.

    Returns:
        :class:`InventorySaveResult` with the layers, the deferred attributes
        and one report per saved collection.

    Raises:
        CycleError: Identity, required or parent dependencies form a cycle.
        ConfigurationError: Invalid collection configuration.
        StorageError: A storage batch failed; later layers are not saved.
    """
    settings = settings or get_settings()
    collections = list(collections)

    Scanner.scan(collections, associations)
    graph = DependencyGraph.build(collections)
    layers = topological_layers(graph)
    logger.info(
        "save_inventory.scheduled",
        collections=len(collections),
        layers=[[c.name for c in layer] for layer in layers],
    )
    logger.debug("save_inventory.graph", dot=graph.to_graphviz(layers))

    resolver = Resolver(storage, settings)
    result = InventorySaveResult(
        layers=layers,
        deferred_attributes={k: set(v) for k, v in graph.deferred_attributes.items()},
    )

    for index, layer in enumerate(layers):
        pending = [c for c in layer if not c.saved]
        logger.debug("save_inventory.layer", layer=index, collections=[c.name for c in pending])
        for collection, report in _save_layer(pending, storage, resolver, graph, settings, max_workers):
            result.reports[collection.name] = report
            if report.pending_attributes:
                result.deferred_attributes.setdefault(collection.name, set()).update(
                    report.pending_attributes
                )

    by_name = {c.name: c for c in collections}
    for name in sorted(result.deferred_attributes):
        attributes = result.deferred_attributes[name]
        result.deferred_reports[name] = save_deferred(
            by_name[name], attributes, storage, resolver=resolver, settings=settings
        )

    logger.info("save_inventory.finished", **result.to_dict())
    return result


def _save_layer(
    layer: list[Collection],
    storage: StorageBackend,
    resolver: Resolver,
    graph: DependencyGraph,
    settings: RefreshSettings,
    max_workers: int,
) -> list[tuple[Collection, SaveReport]]:
    def save(collection: Collection) -> SaveReport:
        return save_collection(
            collection,
            storage,
            resolver=resolver,
            settings=settings,
            exclude=graph.deferred_attributes.get(collection.name, ()),
        )

    if max_workers <= 1 or len(layer) <= 1:
        return [(collection, save(collection)) for collection in layer]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures: dict[Future, Collection] = {executor.submit(save, c): c for c in layer}
        wait(futures)
    # Surface the first failure in layer order once every save has settled
    return [(collection, future.result()) for future, collection in futures.items()]


__all__ = ["InventorySaveResult", "save_inventory"]
