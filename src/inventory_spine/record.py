"""Records and unconnected edges."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inventory_spine.errors import ConfigurationError
from inventory_spine.references import (
    PRIMARY_REF,
    IdentityKey,
    LazyReference,
    build_identity_key,
    stringify_identity,
)

if TYPE_CHECKING:
    from inventory_spine.collection import Collection


class Record:
    """One not-yet-saved entity owned by exactly one collection.

    Attribute values are scalars, other records, lazy references, or lists of
    those.  Data may change until the owning collection is finalized by the
    scanner; after that the record is read-only and only its storage ``id``
    is filled in by the saver.
    """

    __slots__ = ("collection", "data", "id", "partial", "_identity")

    def __init__(self, collection: Collection, data: dict[str, Any], *, partial: bool = False):
        self.collection = collection
        self.data = data
        self.partial = partial
        self.id: Any = None
        self._identity: IdentityKey = build_identity_key(data, collection.manager_ref)

    @property
    def identity(self) -> IdentityKey:
        return self._identity

    @property
    def stringified_identity(self) -> str:
        return stringify_identity(self._identity)

    def identity_for(self, ref: str) -> IdentityKey:
        if ref == PRIMARY_REF:
            return self._identity
        return build_identity_key(self.data, self.collection.index_keys(ref))

    @property
    def is_saved(self) -> bool:
        return self.id is not None

    def __getitem__(self, attribute: str) -> Any:
        return self.data[attribute]

    def __setitem__(self, attribute: str, value: Any) -> None:
        if self.collection.data_collection_finalized:
            raise ConfigurationError(
                f"Record {self.stringified_identity!r} of {self.collection.name!r} "
                "can't be changed after the collection was finalized"
            )
        if attribute in self.collection.manager_ref:
            raise ConfigurationError(
                f"Identity attribute {attribute!r} of {self.collection.name!r} can't be changed"
            )
        self.data[attribute] = value

    def get(self, attribute: str, default: Any = None) -> Any:
        return self.data.get(attribute, default)

    def __contains__(self, attribute: str) -> bool:
        return attribute in self.data

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def lazy(self) -> LazyReference:
        """Reference to this record, used when serializing nested records."""
        lookup = {key: self.data.get(key) for key in self.collection.manager_ref}
        return LazyReference(self.collection, lookup)

    def __repr__(self) -> str:
        return (
            f"Record({self.collection.name!r}, {self.stringified_identity!r}, "
            f"id={self.id!r}{', partial' if self.partial else ''})"
        )


@dataclass(frozen=True, slots=True)
class UnconnectedEdge:
    """A reference that could not be resolved while saving ``record``."""

    record: Record
    attribute: str
    reference: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.record.collection.name,
            "record": self.record.stringified_identity,
            "attribute": self.attribute,
            "reference": repr(self.reference),
        }


__all__ = ["Record", "UnconnectedEdge"]
