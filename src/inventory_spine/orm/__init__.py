"""SQLAlchemy ORM layer for refresh coordination state."""

from inventory_spine.orm.base import InventoryBase, TimestampMixin
from inventory_spine.orm.session import (
    InventorySession,
    create_inventory_engine,
    inventory_session_factory,
)
from inventory_spine.orm.tables import RefreshStatePartTable, RefreshStateTable

__all__ = [
    "InventoryBase",
    "InventorySession",
    "RefreshStatePartTable",
    "RefreshStateTable",
    "TimestampMixin",
    "create_inventory_engine",
    "inventory_session_factory",
]
