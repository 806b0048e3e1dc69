"""
Identity keys and lazy references.

A lazy reference is the handle one record holds on another record that may
not be saved yet.  It has two states, kept explicit so the data flow stays
auditable:

    ::

        LazyReference (unresolved)            ResolvedReference
        ┌──────────────────────────┐  bind()  ┌──────────────────┐
        │ collection, lookup, ref  │ ───────► │ id, value        │
        │ key, default, mode       │          └──────────────────┘
        └──────────────────────────┘

The saver resolves references while building rows and binds the resolution
back onto every reference that targets a saved record.

Identity keys are tuples of normalized attribute values.  Nested records and
references inside an identity normalize to ``(collection_name, identity)`` so
two lookups for the same target produce equal keys.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inventory_spine.enums import ResolutionMode, coerce_enum

if TYPE_CHECKING:
    from inventory_spine.collection import Collection

PRIMARY_REF = "manager_ref"

IdentityKey = tuple


def identity_part(value: Any) -> Any:
    """Normalize one identity attribute value into something hashable."""
    if isinstance(value, LazyReference):
        return (value.collection_name, value.identity)
    identity = getattr(value, "identity", None)
    collection = getattr(value, "collection", None)
    if identity is not None and collection is not None:
        # Record
        return (collection.name, identity)
    if isinstance(value, list):
        return tuple(identity_part(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, identity_part(v)) for k, v in value.items()))
    return value


def build_identity_key(data: Mapping[str, Any], keys: Sequence[str]) -> IdentityKey:
    """Build the identity key of *data* over the attribute list *keys*."""
    return tuple(identity_part(data.get(key)) for key in keys)


def stringify_identity(identity: IdentityKey) -> str:
    """Join identity values with ``__``, the form used in log lines."""
    return "__".join(str(part) for part in identity)


@dataclass(frozen=True, slots=True)
class ResolvedReference:
    """A reference whose target has been found.

    ``id`` is the storage identifier of the target record (None when the
    target was matched in memory but is not saved yet).  ``value`` is what the
    referencing column receives: the id itself, or the target attribute for
    ``key`` lookups.
    """

    id: Any
    value: Any


class LazyReference:
    """Deferred lookup of a record in another collection.

    Args:
        collection: Target collection (may be ``None`` until deserialized
            references are attached to their collection).
        lookup: Attribute values identifying the target under ``ref``.
        ref: Name of the identity definition used for the lookup.
        key: Attribute of the target record to read instead of its id.
        default: Value used when the target cannot be found.
        mode: DEPENDENCY or TRANSITIVE.  Defaults to TRANSITIVE for ``key``
            lookups and DEPENDENCY otherwise.
        collection_name: Target name, required when ``collection`` is None.
    """

    __slots__ = (
        "collection",
        "collection_name",
        "lookup",
        "ref",
        "key",
        "default",
        "mode",
        "resolution",
    )

    def __init__(
        self,
        collection: Collection | None,
        lookup: Mapping[str, Any],
        *,
        ref: str = PRIMARY_REF,
        key: str | None = None,
        default: Any = None,
        mode: ResolutionMode | str | None = None,
        collection_name: str | None = None,
    ) -> None:
        if collection is None and collection_name is None:
            raise ValueError("LazyReference needs a collection or a collection_name")
        self.collection = collection
        self.collection_name = collection.name if collection is not None else collection_name
        self.lookup = dict(lookup)
        self.ref = ref
        self.key = key
        self.default = default
        if mode is None:
            mode = ResolutionMode.TRANSITIVE if key else ResolutionMode.DEPENDENCY
        self.mode = coerce_enum(ResolutionMode, mode, "resolution mode")
        self.resolution: ResolvedReference | None = None

    @property
    def identity(self) -> IdentityKey:
        if self.collection is not None:
            keys = self.collection.index_keys(self.ref)
        else:
            keys = tuple(self.lookup)
        return build_identity_key(self.lookup, keys)

    @property
    def is_dependency(self) -> bool:
        return self.mode is ResolutionMode.DEPENDENCY

    @property
    def is_transitive(self) -> bool:
        return self.mode is ResolutionMode.TRANSITIVE

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    def bind(self, resolution: ResolvedReference) -> None:
        """Move this reference into the resolved state."""
        self.resolution = resolution

    def to_dict(self, serialize_value: Any) -> dict[str, Any]:
        return {
            "type": "LazyReference",
            "collection": self.collection_name,
            "lookup": {k: serialize_value(v) for k, v in self.lookup.items()},
            "ref": self.ref,
            "key": self.key,
            "default": self.default,
            "mode": self.mode.value,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LazyReference):
            return NotImplemented
        return (
            self.collection_name == other.collection_name
            and self.ref == other.ref
            and self.key == other.key
            and self.identity == other.identity
        )

    def __hash__(self) -> int:
        return hash((self.collection_name, self.ref, self.key, self.identity))

    def __repr__(self) -> str:
        state = f"resolved={self.resolution.value!r}" if self.resolution else "unresolved"
        return (
            f"LazyReference({self.collection_name!r}, {self.lookup!r}, "
            f"key={self.key!r}, mode={self.mode.value}, {state})"
        )


__all__ = [
    "PRIMARY_REF",
    "IdentityKey",
    "LazyReference",
    "ResolvedReference",
    "build_identity_key",
    "identity_part",
    "stringify_identity",
]
