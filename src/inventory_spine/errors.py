"""
Structured error types for inventory refresh.

Manifesto:
    An inventory refresh fails in four very different ways, and the host
    scheduler must react differently to each of them:

    - **Configuration errors:** A collection was declared wrong (unknown
      strategy, identity attribute that is a lookup, cycle that cannot be
      broken).  Retrying never helps; fix the declaration.
    - **Resolution errors:** A lazy reference points at nothing.  Normally
      absorbed as an "unconnected edge"; raised only when a collection runs
      with integrity assertions enabled.
    - **Storage errors:** A batch write or delete failed in the backend.
      Recorded on the refresh state, then re-raised so the host retries the
      whole refresh.
    - **Coordination errors:** The sweep could not run (bad scope, parts
      errored, retry ceiling reached).

    Every error carries a category, a retryable flag and a free-form context
    dict so log lines and refresh-state messages stay machine-readable.

Architecture:
    ::

        InventoryError (base)
        ├── ConfigurationError          (CONFIG, never retried)
        │   ├── UnknownStrategyError
        │   ├── InvalidIdentityError
        │   ├── DuplicateIdentityError
        │   ├── UnknownCollectionError
        │   ├── MissingDependencyError
        │   ├── NotAllowedPropertyError
        │   └── CycleError
        ├── ResolutionError             (RESOLUTION)
        │   ├── UnconnectedReferenceError
        │   └── ReferentialIntegrityError
        ├── StorageError                (STORAGE, retryable)
        ├── CoordinationError           (COORDINATION)
        │   └── SweeperError
        │       ├── SweeperNonUniformScopeKeyError
        │       ├── SweeperNonExistentScopeKeyError
        │       └── SweeperScopeBadFormatError
        └── InvariantError              (INTERNAL)

Examples:
    >>> try:
    ...     raise UnknownStrategyError("retention", "shred", ["destroy", "archive"])
    ... except InventoryError as e:
    ...     e.category, e.retryable
    (<ErrorCategory.CONFIG: 'CONFIG'>, False)

Tags:
    errors, exceptions, inventory-refresh, retry, categorization

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Broad category used for routing, alerting and retry decisions."""

    CONFIG = "CONFIG"
    RESOLUTION = "RESOLUTION"
    STORAGE = "STORAGE"
    COORDINATION = "COORDINATION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured context attached to an :class:`InventoryError`."""

    collection: str | None = None
    refresh_state_uuid: str | None = None
    refresh_state_part_uuid: str | None = None
    attribute: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.collection:
            result["collection"] = self.collection
        if self.refresh_state_uuid:
            result["refresh_state_uuid"] = self.refresh_state_uuid
        if self.refresh_state_part_uuid:
            result["refresh_state_part_uuid"] = self.refresh_state_part_uuid
        if self.attribute:
            result["attribute"] = self.attribute
        if self.metadata:
            result["metadata"] = self.metadata
        return result


class InventoryError(Exception):
    """Base exception for all inventory refresh errors.

    Args:
        message: Human-readable error message.
        category: Overrides the class default category.
        retryable: Overrides the class default retryable flag.
        context: Structured context for logging.
        cause: Underlying exception, also set as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> InventoryError:
        """Add context fields and return self for chaining."""
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigurationError(InventoryError):
    """A collection or refresh was declared in a way that can never work."""

    default_category = ErrorCategory.CONFIG


class UnknownStrategyError(ConfigurationError):
    """A strategy name is not one of the allowed values."""

    def __init__(self, kind: str, value: Any, allowed: list[str], **kwargs: Any):
        allowed_text = ", ".join(allowed)
        super().__init__(
            f"Unknown {kind} strategy: {value!r}, allowed strategies are {allowed_text}",
            **kwargs,
        )
        self.kind = kind
        self.value = value
        self.allowed = allowed


class InvalidIdentityError(ConfigurationError):
    """The identity definition (manager_ref) is malformed or misused."""


class DuplicateIdentityError(ConfigurationError):
    """Two records with the same identity were built into one collection."""

    def __init__(self, collection: str, identity: tuple, **kwargs: Any):
        super().__init__(
            f"Duplicate identity {identity!r} in collection {collection!r}",
            **kwargs,
        )
        self.with_context(collection=collection)
        self.identity = identity


class UnknownCollectionError(ConfigurationError):
    """A collection name could not be found among the known collections."""

    def __init__(self, name: str, referenced_from: str | None = None, **kwargs: Any):
        message = f"Can't find collection {name!r}"
        if referenced_from:
            message += f" referenced from {referenced_from!r}"
        super().__init__(message, **kwargs)
        self.name = name
        self.referenced_from = referenced_from


class MissingDependencyError(UnknownCollectionError):
    """A targeted collection references a collection that is not present."""


class NotAllowedPropertyError(ConfigurationError):
    """A collection was configured with a property it does not accept."""

    def __init__(self, prop: str, **kwargs: Any):
        super().__init__(f"property {prop!r} is not allowed", **kwargs)
        self.prop = prop


class CycleError(ConfigurationError):
    """A dependency cycle cannot be broken by deferring any attribute."""

    def __init__(self, cycle: list[str], **kwargs: Any):
        cycle_str = " -> ".join(cycle)
        super().__init__(f"Unbreakable cycle in dependency graph: {cycle_str}", **kwargs)
        self.cycle = cycle


# =============================================================================
# RESOLUTION ERRORS
# =============================================================================


class ResolutionError(InventoryError):
    """A reference could not be resolved (integrity assertions only)."""

    default_category = ErrorCategory.RESOLUTION


class UnconnectedReferenceError(ResolutionError):
    """A lazy reference did not resolve to any record."""


class ReferentialIntegrityError(ResolutionError):
    """A stored or incoming row violates identity or foreign key integrity."""


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(InventoryError):
    """A storage batch operation failed."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


# =============================================================================
# COORDINATION ERRORS
# =============================================================================


class CoordinationError(InventoryError):
    """The multi-part refresh could not be coordinated."""

    default_category = ErrorCategory.COORDINATION


class SweeperError(CoordinationError):
    """The sweep scope is invalid."""


class SweeperNonUniformScopeKeyError(SweeperError):
    """Targeted sweep conditions do not all use the same columns."""


class SweeperNonExistentScopeKeyError(SweeperError):
    """Targeted sweep conditions name a column the table does not have."""


class SweeperScopeBadFormatError(SweeperError):
    """The sweep scope is neither a list of names nor a mapping."""


# =============================================================================
# INTERNAL ERRORS
# =============================================================================


class InvariantError(InventoryError):
    """An internal invariant was violated; indicates a bug, not bad data."""

    default_category = ErrorCategory.INTERNAL


def is_retryable(error: BaseException) -> bool:
    """Return True if the host should retry the refresh after *error*."""
    if isinstance(error, InventoryError):
        return error.retryable
    return False


def truncate_message(message: str, limit: int = 150) -> str:
    """Cut *message* to *limit* characters for refresh-state columns."""
    return message[:limit]


__all__ = [
    "ConfigurationError",
    "CoordinationError",
    "CycleError",
    "DuplicateIdentityError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidIdentityError",
    "InvariantError",
    "InventoryError",
    "MissingDependencyError",
    "NotAllowedPropertyError",
    "ReferentialIntegrityError",
    "ResolutionError",
    "StorageError",
    "SweeperError",
    "SweeperNonExistentScopeKeyError",
    "SweeperNonUniformScopeKeyError",
    "SweeperScopeBadFormatError",
    "UnconnectedReferenceError",
    "UnknownCollectionError",
    "UnknownStrategyError",
    "is_retryable",
    "truncate_message",
]
