"""Saving collections: resolution, reconciliation, retention and orchestration."""

from inventory_spine.save.resolver import UNRESOLVED, Resolver
from inventory_spine.save.retention import RemovalResult, remove_records
from inventory_spine.save.save_inventory import InventorySaveResult, save_inventory
from inventory_spine.save.saver import (
    SAVERS,
    BaseSaver,
    BatchSaver,
    ConcurrentSafeBatchSaver,
    DefaultSaver,
    SaveReport,
    save_collection,
    save_deferred,
)

__all__ = [
    "BaseSaver",
    "BatchSaver",
    "ConcurrentSafeBatchSaver",
    "DefaultSaver",
    "InventorySaveResult",
    "RemovalResult",
    "Resolver",
    "SAVERS",
    "SaveReport",
    "UNRESOLVED",
    "remove_records",
    "save_collection",
    "save_deferred",
    "save_inventory",
]
