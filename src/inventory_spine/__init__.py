"""
Inventory Spine - dependency-ordered persistence of provider inventory.

Provider records reference each other before any of them has a database id.
This package scans those references into a dependency graph, breaks
reference cycles by deferring attributes, saves collections layer by layer
while reconciling them against storage, and coordinates mark-and-sweep
retention across multi-part refreshes.

Modules:
- inventory_spine.collection: Collections, records and lazy references
- inventory_spine.graph: Scanner, dependency graph, topological layers
- inventory_spine.save: Resolver, savers, retention, save_inventory
- inventory_spine.refresh: Refresh states, sweeper, persister
- inventory_spine.storage: Storage protocol and SQLAlchemy backend
"""

__version__ = "0.1.0"

from inventory_spine.collection import Collection, CollectionConfig
from inventory_spine.enums import (
    PartStatus,
    RefreshStatus,
    ResolutionMode,
    RetentionStrategy,
    SaverStrategy,
    Strategy,
)
from inventory_spine.errors import (
    ConfigurationError,
    CoordinationError,
    CycleError,
    InventoryError,
    ResolutionError,
    StorageError,
)
from inventory_spine.graph import DependencyGraph, Scanner, topological_layers
from inventory_spine.hooks import CustomReconciler, CustomSaver, SaveContext
from inventory_spine.logging import configure_logging, get_logger
from inventory_spine.record import Record, UnconnectedEdge
from inventory_spine.references import LazyReference, ResolvedReference
from inventory_spine.refresh import Persister, RefreshStateStore, Sweeper
from inventory_spine.save import InventorySaveResult, SaveReport, save_collection, save_inventory
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage import SQLAlchemyStorage, StorageBackend

__all__ = [
    "Collection",
    "CollectionConfig",
    "ConfigurationError",
    "CoordinationError",
    "CustomReconciler",
    "CustomSaver",
    "CycleError",
    "DependencyGraph",
    "InventoryError",
    "InventorySaveResult",
    "LazyReference",
    "PartStatus",
    "Persister",
    "Record",
    "RefreshSettings",
    "RefreshStateStore",
    "RefreshStatus",
    "ResolutionError",
    "ResolutionMode",
    "ResolvedReference",
    "RetentionStrategy",
    "SQLAlchemyStorage",
    "SaveContext",
    "SaveReport",
    "SaverStrategy",
    "Scanner",
    "StorageBackend",
    "StorageError",
    "Strategy",
    "Sweeper",
    "UnconnectedEdge",
    "configure_logging",
    "get_logger",
    "get_settings",
    "save_collection",
    "save_inventory",
    "topological_layers",
]
