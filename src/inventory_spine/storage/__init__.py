"""Storage collaborator protocol and its SQLAlchemy implementation."""

from inventory_spine.storage.base import Row, StorageBackend
from inventory_spine.storage.sqlalchemy_backend import SQLAlchemyStorage, dialect_insert

__all__ = ["Row", "SQLAlchemyStorage", "StorageBackend", "dialect_insert"]
