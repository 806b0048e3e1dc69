"""Removal of stored records: destroy or archive.

Used by the saver for rows missing from a complete dataset, by the delete
complement of ``all_manager_uuids`` and by the sweeper.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.enums import RetentionStrategy
from inventory_spine.errors import ConfigurationError
from inventory_spine.logging import get_logger
from inventory_spine.storage.base import StorageBackend
from inventory_spine.timestamps import utc_now

logger = get_logger(__name__)


@dataclass
class RemovalResult:
    """Result of removing one set of ids."""

    collection: str
    strategy: RetentionStrategy
    removed: int


def remove_records(
    collection: Collection,
    storage: StorageBackend,
    ids: Sequence[Any],
    *,
    batch_size: int,
    now: datetime | None = None,
) -> RemovalResult:
    """Destroy or archive stored rows of *collection* by id.

    Parameters
    ----------
    collection
        Owner of the rows; its ``retention_strategy`` picks destroy or archive
        and its ``deleted_records`` receives the ids.
    storage
        Backend to write to.
    ids
        Storage ids to remove.
    batch_size
        Ids per storage call.
    now
        Archive timestamp, defaults to the current UTC time.

    Returns
    -------
    RemovalResult
        Number of rows the backend reported as changed.
    """
    strategy = collection.retention_strategy
    result = RemovalResult(collection=collection.name, strategy=strategy, removed=0)
    if not ids:
        return result

    if strategy is RetentionStrategy.ARCHIVE:
        if not storage.has_column(collection.table, "archived_at"):
            raise ConfigurationError(
                f"Collection {collection.name!r} archives records but table "
                f"{collection.table!r} has no archived_at column"
            )
        archived_at = now or utc_now()
        for start in range(0, len(ids), batch_size):
            result.removed += storage.archive_ids(
                collection.table, ids[start:start + batch_size], archived_at
            )
    else:
        for start in range(0, len(ids), batch_size):
            result.removed += storage.delete_ids(collection.table, ids[start:start + batch_size])

    collection.deleted_records.extend({"id": record_id} for record_id in ids)
    logger.info(
        "retention.removed",
        collection=collection.name,
        strategy=strategy.value,
        removed=result.removed,
    )
    return result


__all__ = ["RemovalResult", "remove_records"]
