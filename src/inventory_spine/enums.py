"""
Strategy and status enums for inventory refresh.

Collections are configured with plain strings (``"concurrent_safe_batch"``)
as often as with enum members, so every strategy enum is parsed through
:func:`coerce_enum`, which turns an unknown name into a configuration error
at collection-construction time.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar

from inventory_spine.errors import UnknownStrategyError


class Strategy(str, Enum):
    """Where lookups into a collection are answered from.

    ``None`` (no strategy) means the collection holds in-memory records that
    are saved by this refresh.
    """

    # Entire collection already in storage; lookups query storage
    LOCAL_DB_CACHE_ALL = "local_db_cache_all"
    # Only scanned references are looked up in storage
    LOCAL_DB_FIND_REFERENCES = "local_db_find_references"
    # In-memory records first, storage for whatever is missing
    LOCAL_DB_FIND_MISSING_REFERENCES = "local_db_find_missing_references"


class SaverStrategy(str, Enum):
    DEFAULT = "default"
    BATCH = "batch"
    CONCURRENT_SAFE_BATCH = "concurrent_safe_batch"


class RetentionStrategy(str, Enum):
    """What happens to stored rows that are no longer present in the source."""

    DESTROY = "destroy"
    ARCHIVE = "archive"


class ResolutionMode(str, Enum):
    """How a lazy reference takes part in scheduling.

    DEPENDENCY forces the target collection to be saved first.  TRANSITIVE only
    takes part in lookup and is resolved after the graph completes when it
    cannot be resolved earlier.
    """

    DEPENDENCY = "dependency"
    TRANSITIVE = "transitive"


class RefreshStatus(str, Enum):
    STARTED = "started"
    WAITING_FOR_REFRESH_STATE_PARTS = "waiting_for_refresh_state_parts"
    SWEEPING = "sweeping"
    FINISHED = "finished"
    ERROR = "error"


class PartStatus(str, Enum):
    STARTED = "started"
    FINISHED = "finished"
    ERROR = "error"


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: type[E], value: Any, kind: str) -> E:
    """Parse *value* into *enum_cls*, raising :class:`UnknownStrategyError`."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise UnknownStrategyError(kind, value, allowed) from None


__all__ = [
    "PartStatus",
    "RefreshStatus",
    "ResolutionMode",
    "RetentionStrategy",
    "SaverStrategy",
    "Strategy",
    "coerce_enum",
]
