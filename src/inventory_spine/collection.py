"""
Collections: named, homogeneous sets of records.

Manifesto:
    A provider refresh produces thousands of loosely-typed records that point
    at each other before any of them has a database id.  A collection groups
    the records of one entity type, knows how they are identified
    (``manager_ref``), how they must be persisted (strategy, saver strategy,
    retention strategy) and indexes them so lookups by identity are O(1).

    - **Identity:** ``manager_ref`` uniquely determines one record
    - **Lookup:** ``find`` / ``lazy_find`` by primary or secondary refs
    - **Ownership:** the scanner finalizes, the saver marks saved
    - **Transfer:** ``to_dict`` / ``load_dict`` for cross-process handoff

Architecture:
    ::

        CollectionConfig  (opaque configuration, validated once)
              │
              ▼
        Collection
        ├── records            ordered list of Record
        ├── data index         identity -> Record
        ├── skeletal_index     identity -> partial Record
        ├── references         ref -> identity -> [LazyReference | Record]
        ├── dependency_attributes   attribute -> {Collection}
        └── flags              data_collection_finalized, saved

Examples:
    >>> vms = Collection("vms", manager_ref=["ems_ref"])
    >>> hosts = Collection("hosts", manager_ref=["ems_ref"])
    >>> vm = vms.build({"ems_ref": "vm-1", "host": hosts.lazy_find("host-1")})
    >>> vms.find("vm-1") is vm
    True

Tags:
    collection, identity, index, serialization, inventory-refresh

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any

from inventory_spine.enums import (
    RetentionStrategy,
    SaverStrategy,
    Strategy,
    coerce_enum,
)
from inventory_spine.errors import (
    ConfigurationError,
    DuplicateIdentityError,
    InvalidIdentityError,
    NotAllowedPropertyError,
)
from inventory_spine.hooks import CustomReconciler, CustomSaver
from inventory_spine.record import Record, UnconnectedEdge
from inventory_spine.references import (
    PRIMARY_REF,
    IdentityKey,
    LazyReference,
    build_identity_key,
)
from inventory_spine.settings import RefreshSettings, get_settings

_UNSET: Any = object()

LOCAL_DB_STRATEGIES = frozenset(
    {
        Strategy.LOCAL_DB_CACHE_ALL,
        Strategy.LOCAL_DB_FIND_REFERENCES,
        Strategy.LOCAL_DB_FIND_MISSING_REFERENCES,
    }
)

# Strategies whose collection is already in storage before the refresh starts
_PRESAVED_STRATEGIES = frozenset({Strategy.LOCAL_DB_CACHE_ALL, Strategy.LOCAL_DB_FIND_REFERENCES})

# Internal dependency attributes added by the scanner; never written to storage
PARENT_COLLECTIONS_ATTRIBUTE = "__parent_collections"
ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE = "__all_manager_uuids_scope"
INTERNAL_ATTRIBUTES = frozenset({PARENT_COLLECTIONS_ATTRIBUTE, ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE})


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass
class CollectionConfig:
    """Opaque per-collection configuration supplied by the host.

    Only the fields declared here are accepted; anything else raises
    :class:`NotAllowedPropertyError` in :meth:`from_properties`.
    """

    name: str
    manager_ref: tuple[str, ...] = ("ems_ref",)
    manager_ref_allowed_nil: tuple[str, ...] = ()
    table: str | None = None
    strategy: Strategy | None = None
    saver_strategy: SaverStrategy = SaverStrategy.DEFAULT
    retention_strategy: RetentionStrategy = RetentionStrategy.DESTROY
    complete: bool = True
    update_only: bool = False
    create_only: bool = False
    check_changed: bool = True
    targeted: bool = False
    assert_graph_integrity: bool | None = None
    required_attributes: tuple[str, ...] = ()
    secondary_refs: dict[str, tuple[str, ...]] = field(default_factory=dict)
    default_values: dict[str, Any] = field(default_factory=dict)
    attributes_blacklist: frozenset[str] = frozenset()
    attributes_whitelist: frozenset[str] = frozenset()
    foreign_keys: dict[str, str] = field(default_factory=dict)
    scope: dict[str, Any] = field(default_factory=dict)
    parent_collections: tuple[str, ...] | None = None
    targeted_parent_column: str | None = None
    dependency_attributes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    all_manager_uuids: list[Any] | None = None
    all_manager_uuids_scope: list[dict[str, Any]] | None = None
    all_manager_uuids_timestamp: datetime | None = None
    custom_saver: CustomSaver | None = None
    custom_reconciler: CustomReconciler | None = None

    def __post_init__(self) -> None:
        self.manager_ref = _as_tuple(self.manager_ref)
        if not self.manager_ref or not all(isinstance(a, str) and a for a in self.manager_ref):
            raise InvalidIdentityError(
                f"manager_ref of {self.name!r} must be a non-empty list of attribute names, "
                f"got {self.manager_ref!r}"
            )
        self.manager_ref_allowed_nil = _as_tuple(self.manager_ref_allowed_nil)
        self.required_attributes = _as_tuple(self.required_attributes)
        if self.strategy is not None:
            self.strategy = coerce_enum(Strategy, self.strategy, "collection")
        self.saver_strategy = coerce_enum(SaverStrategy, self.saver_strategy, "saver")
        self.retention_strategy = coerce_enum(
            RetentionStrategy, self.retention_strategy, "retention"
        )
        if self.update_only and self.create_only:
            raise ConfigurationError(
                f"Collection {self.name!r} can't be both update_only and create_only"
            )
        self.secondary_refs = {
            ref: _as_tuple(keys) for ref, keys in self.secondary_refs.items()
        }
        if PRIMARY_REF in self.secondary_refs:
            raise InvalidIdentityError(f"secondary ref of {self.name!r} can't be named {PRIMARY_REF!r}")
        if self.parent_collections is not None:
            self.parent_collections = _as_tuple(self.parent_collections)
        self.dependency_attributes = {
            attr: _as_tuple(names) for attr, names in self.dependency_attributes.items()
        }
        fixed = set(self.manager_ref) | set(self.required_attributes)
        # Identity and required attributes are always written
        self.attributes_blacklist = frozenset(self.attributes_blacklist) - fixed
        self.attributes_whitelist = frozenset(self.attributes_whitelist)
        if self.attributes_whitelist:
            self.attributes_whitelist |= fixed
        if self.all_manager_uuids_scope is not None:
            self.all_manager_uuids_scope = [dict(c) for c in self.all_manager_uuids_scope]
            keys = {frozenset(condition) for condition in self.all_manager_uuids_scope}
            if len(keys) > 1 or frozenset() in keys:
                raise ConfigurationError(
                    f"all_manager_uuids_scope keys of {self.name!r} must be uniform and non-empty, "
                    f"got {sorted(sorted(k) for k in keys)!r}"
                )

    @classmethod
    def from_properties(cls, name: str, properties: Mapping[str, Any]) -> CollectionConfig:
        """Build a config from a loose property mapping."""
        allowed = {f.name for f in fields(cls)} - {"name"}
        for prop in properties:
            if prop not in allowed:
                raise NotAllowedPropertyError(prop).with_context(collection=name)
        return cls(name=name, **properties)

    def evaluate(self, context: Any) -> CollectionConfig:
        """Return a copy with callable default values computed from *context*."""
        if not any(callable(v) for v in self.default_values.values()):
            return self
        values = {
            key: value(context) if callable(value) else value
            for key, value in self.default_values.items()
        }
        return replace(self, default_values=values)


class Collection:
    """A named, homogeneous set of records sharing an identity definition.

    Construct from keyword properties or from a :class:`CollectionConfig`.
    Callable default values are evaluated once, with *context*, at
    construction time.

    Args:
        name: Collection name, unique within one refresh.
        config: Pre-built configuration; mutually exclusive with properties.
        context: Run-time context passed to callable default values.
        settings: Overrides the process settings.
        **properties: Any :class:`CollectionConfig` field.
    """

    def __init__(
        self,
        name: str | None = None,
        *,
        config: CollectionConfig | None = None,
        context: Any = None,
        settings: RefreshSettings | None = None,
        **properties: Any,
    ) -> None:
        if config is None:
            if name is None:
                raise ConfigurationError("Collection needs a name or a config")
            config = CollectionConfig.from_properties(name, properties)
        elif properties:
            raise ConfigurationError("Pass either a config or properties, not both")
        self.config = config.evaluate(context)
        self.settings = settings or get_settings()

        self.records: list[Record] = []
        self.skeletal_index: dict[IdentityKey, Record] = {}
        self._data_index: dict[IdentityKey, Record] = {}
        self._secondary_indexes: dict[str, dict[IdentityKey, Record]] = {}
        self._column_cache: dict[str, str] = {}

        # Populated by the scanner
        self.references: dict[str, dict[IdentityKey, list[Any]]] = {}
        self.targeted_scope: dict[IdentityKey, dict[str, Any]] = {}
        self.dependency_attributes: dict[str, set[Collection]] = {}
        self.transitive_dependency_attributes: set[str] = set()
        self.dependees: set[Collection] = set()
        self.parent_collections: list[Collection] = []
        self.data_collection_finalized = self.config.strategy is Strategy.LOCAL_DB_CACHE_ALL

        # Populated by the saver
        self.saved = self.config.strategy in _PRESAVED_STRATEGIES
        self.unconnected_edges: list[UnconnectedEdge] = []
        self.created_records: list[dict[str, Any]] = []
        self.updated_records: list[dict[str, Any]] = []
        self.deleted_records: list[dict[str, Any]] = []

        self.all_manager_uuids: list[dict[str, Any]] | None = None
        if self.config.all_manager_uuids is not None:
            self.all_manager_uuids = [
                self.normalize_lookup(lookup) for lookup in self.config.all_manager_uuids
            ]

    # -- configuration ------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def table(self) -> str:
        return self.config.table or self.config.name

    @property
    def manager_ref(self) -> tuple[str, ...]:
        return self.config.manager_ref

    @property
    def strategy(self) -> Strategy | None:
        return self.config.strategy

    @property
    def saver_strategy(self) -> SaverStrategy:
        return self.config.saver_strategy

    @property
    def retention_strategy(self) -> RetentionStrategy:
        return self.config.retention_strategy

    @property
    def targeted(self) -> bool:
        return self.config.targeted

    @property
    def complete(self) -> bool:
        return self.config.complete

    @property
    def update_only(self) -> bool:
        return self.config.update_only

    @property
    def create_only(self) -> bool:
        return self.config.create_only

    @property
    def check_changed(self) -> bool:
        return self.config.check_changed

    @property
    def scope(self) -> dict[str, Any]:
        return self.config.scope

    @property
    def custom_saver(self) -> CustomSaver | None:
        return self.config.custom_saver

    @property
    def custom_reconciler(self) -> CustomReconciler | None:
        return self.config.custom_reconciler

    @property
    def assert_graph_integrity(self) -> bool:
        if self.config.assert_graph_integrity is None:
            return self.settings.assert_graph_integrity
        return self.config.assert_graph_integrity

    @property
    def is_local_db(self) -> bool:
        return self.config.strategy in LOCAL_DB_STRATEGIES

    @property
    def parallel_safe(self) -> bool:
        return self.config.saver_strategy is SaverStrategy.CONCURRENT_SAFE_BATCH

    @property
    def create_allowed(self) -> bool:
        return not self.config.update_only

    @property
    def delete_allowed(self) -> bool:
        """Whether stored rows absent from the incoming data may be removed."""
        if not self.config.complete or self.config.update_only or self.config.create_only:
            return False
        if self.config.targeted:
            return bool(self.parent_collections and self.config.targeted_parent_column)
        return True

    @property
    def fixed_attributes(self) -> frozenset[str]:
        """Attributes that can never be deferred or left unset."""
        return frozenset(self.manager_ref) | frozenset(self.config.required_attributes)

    def index_keys(self, ref: str = PRIMARY_REF) -> tuple[str, ...]:
        if ref == PRIMARY_REF:
            return self.manager_ref
        try:
            return self.config.secondary_refs[ref]
        except KeyError:
            raise InvalidIdentityError(
                f"Unknown ref {ref!r} for collection {self.name!r}"
            ) from None

    def saves_attribute(
        self,
        attribute: str,
        exclude: Iterable[str] = (),
        only: Iterable[str] | None = None,
    ) -> bool:
        """Whether *attribute* is written to storage in this pass."""
        if attribute.startswith("__"):
            return False
        if only is not None and attribute not in only:
            return False
        if attribute in self.fixed_attributes:
            return True
        if self.config.attributes_whitelist and attribute not in self.config.attributes_whitelist:
            return False
        return attribute not in self.config.attributes_blacklist and attribute not in exclude

    def column_for(self, attribute: str, value: Any = _UNSET) -> str:
        """Storage column written for *attribute*.

        References resolving to an id go to ``<attribute>_id`` unless
        ``foreign_keys`` maps the attribute explicitly.
        """
        if attribute in self.config.foreign_keys:
            return self.config.foreign_keys[attribute]
        if value is _UNSET:
            cached = self._column_cache.get(attribute)
            if cached is not None:
                return cached
            value = self._sample_value(attribute)
            column = self.column_for(attribute, value)
            if value is not None:
                self._column_cache[attribute] = column
            return column
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, Record) or (isinstance(value, LazyReference) and value.key is None):
            return f"{attribute}_id"
        return attribute

    @property
    def identity_columns(self) -> tuple[str, ...]:
        return tuple(self.column_for(attribute) for attribute in self.manager_ref)

    def _sample_value(self, attribute: str) -> Any:
        for record in self.iter_all_records():
            value = record.data.get(attribute)
            if value is not None:
                return value
        return None

    # -- building -----------------------------------------------------------

    def build(self, data: Mapping[str, Any]) -> Record:
        """Create a record from *data* merged over the default values."""
        record = self._new_record(data, partial=False)
        if record.identity in self._data_index:
            raise DuplicateIdentityError(self.name, record.identity)
        self.records.append(record)
        self._data_index[record.identity] = record
        self._secondary_indexes.clear()
        return record

    def build_partial(self, data: Mapping[str, Any]) -> Record:
        """Create or extend a skeletal record holding a subset of attributes.

        Skeletal records are upserted column by column; attributes of a
        second partial build for the same identity are merged in.
        """
        record = self._new_record(data, partial=True, with_defaults=False)
        existing = self.skeletal_index.get(record.identity)
        if existing is not None:
            existing.data.update(record.data)
            return existing
        self.skeletal_index[record.identity] = record
        return record

    def find_or_build(self, data: Mapping[str, Any]) -> Record:
        identity = build_identity_key(data, self.manager_ref)
        return self._data_index.get(identity) or self.build(data)

    def _new_record(self, data: Mapping[str, Any], *, partial: bool, with_defaults: bool = True) -> Record:
        if self.data_collection_finalized:
            raise ConfigurationError(f"Collection {self.name!r} is finalized, records can't be added")
        merged = {**self.config.default_values, **data} if with_defaults else dict(data)
        for attribute in self.manager_ref:
            value = merged.get(attribute)
            if value is None and attribute not in self.config.manager_ref_allowed_nil:
                raise InvalidIdentityError(
                    f"Identity attribute {attribute!r} missing for collection {self.name!r}: {dict(data)!r}"
                )
            if isinstance(value, LazyReference) and value.key is not None:
                raise InvalidIdentityError(
                    f"Identity attribute {attribute!r} of {self.name!r} can't be a lookup "
                    f"with key {value.key!r}"
                )
        return Record(self, merged, partial=partial)

    # -- lookup -------------------------------------------------------------

    def normalize_lookup(self, lookup: Any, ref: str = PRIMARY_REF) -> dict[str, Any]:
        """Turn a scalar, a positional tuple or a mapping into a lookup dict."""
        keys = self.index_keys(ref)
        if isinstance(lookup, Mapping):
            return {key: lookup.get(key) for key in keys}
        if isinstance(lookup, (tuple, list)):
            if len(lookup) != len(keys):
                raise InvalidIdentityError(
                    f"Lookup {lookup!r} doesn't match {ref} {keys!r} of {self.name!r}"
                )
            return dict(zip(keys, lookup, strict=True))
        if len(keys) != 1:
            raise InvalidIdentityError(
                f"Scalar lookup {lookup!r} needs a single-attribute {ref} on {self.name!r}"
            )
        return {keys[0]: lookup}

    def find(self, lookup: Any, ref: str = PRIMARY_REF) -> Record | None:
        """Find an in-memory record (full data first, then skeletal)."""
        lookup = self.normalize_lookup(lookup, ref)
        identity = build_identity_key(lookup, self.index_keys(ref))
        if ref == PRIMARY_REF:
            return self._data_index.get(identity) or self.skeletal_index.get(identity)
        index = self._secondary_index(ref)
        return index.get(identity)

    def _secondary_index(self, ref: str) -> dict[IdentityKey, Record]:
        index = self._secondary_indexes.get(ref)
        if index is None:
            index = {}
            for record in self.iter_all_records():
                index.setdefault(record.identity_for(ref), record)
            self._secondary_indexes[ref] = index
        return index

    def lazy_find(
        self,
        lookup: Any,
        *,
        ref: str = PRIMARY_REF,
        key: str | None = None,
        default: Any = None,
        mode: Any = None,
    ) -> LazyReference:
        """Reference a record of this collection that may not exist yet."""
        return LazyReference(
            self,
            self.normalize_lookup(lookup, ref),
            ref=ref,
            key=key,
            default=default,
            mode=mode,
        )

    def iter_all_records(self) -> Iterator[Record]:
        yield from self.records
        yield from self.skeletal_index.values()

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    # -- references & dependencies -----------------------------------------

    def add_reference(self, value: LazyReference | Record) -> None:
        """Register a reference pointing into this collection."""
        if isinstance(value, LazyReference):
            ref, identity = value.ref, value.identity
        else:
            ref, identity = PRIMARY_REF, value.identity
        self.references.setdefault(ref, {}).setdefault(identity, []).append(value)

    def referrers(self, record: Record) -> Iterator[LazyReference]:
        """Lazy references that target *record*, under any ref."""
        for ref, by_identity in self.references.items():
            for value in by_identity.get(record.identity_for(ref), ()):
                if isinstance(value, LazyReference):
                    yield value

    def dependencies(self) -> list[Collection]:
        """Collections that must be saved before this one."""
        result: list[Collection] = []
        for targets in self.dependency_attributes.values():
            for target in targets:
                if not target.saved and target not in result:
                    result.append(target)
        return result

    def fixed_dependencies(self) -> list[Collection]:
        """Dependencies induced by identity, required or parent attributes."""
        fixed = self.fixed_attributes | INTERNAL_ATTRIBUTES
        result: list[Collection] = []
        for attribute, targets in self.dependency_attributes.items():
            if attribute not in fixed:
                continue
            for target in targets:
                if not target.saved and target not in result:
                    result.append(target)
        return result

    def dependency_attributes_for(self, collections: Iterable[Collection]) -> set[str]:
        """Attributes of this collection that point into *collections*."""
        wanted = set(collections)
        return {
            attribute
            for attribute, targets in self.dependency_attributes.items()
            if targets & wanted
        }

    # -- state --------------------------------------------------------------

    @property
    def noop(self) -> bool:
        """True when saving this collection can't change storage."""
        if self.all_manager_uuids is not None:
            return False
        has_data = bool(self.records or self.skeletal_index)
        if self.targeted and self.custom_saver is None and not self.parent_collections:
            return not has_data and not self.targeted_scope
        if self.create_only or self.update_only:
            return not has_data
        return False

    @property
    def all_known_identities(self) -> set[IdentityKey] | None:
        if self.all_manager_uuids is None:
            return None
        return {build_identity_key(lookup, self.manager_ref) for lookup in self.all_manager_uuids}

    def mark_finalized(self) -> None:
        self.data_collection_finalized = True

    def mark_saved(self) -> None:
        self.saved = True

    # -- transfer format ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize pending state for cross-process handoff."""
        return {
            "name": self.name,
            "manager_uuids": [_serialize_map(lookup) for lookup in self.targeted_scope.values()],
            "all_manager_uuids": (
                None
                if self.all_manager_uuids is None
                else [_serialize_map(lookup) for lookup in self.all_manager_uuids]
            ),
            "data": [_serialize_map(record.data) for record in self.records],
            "partial_data": [_serialize_map(r.data) for r in self.skeletal_index.values()],
        }

    def load_dict(
        self,
        payload: Mapping[str, Any],
        available_collections: Mapping[str, Collection],
    ) -> Collection:
        """Fill this collection from a :meth:`to_dict` payload."""
        if payload.get("name") not in (None, self.name):
            raise ConfigurationError(
                f"Payload for {payload.get('name')!r} can't be loaded into {self.name!r}"
            )

        def load(value: Any) -> Any:
            return _deserialize_value(value, available_collections)

        for data in payload.get("data") or []:
            self.build({k: load(v) for k, v in data.items()})
        for data in payload.get("partial_data") or []:
            self.build_partial({k: load(v) for k, v in data.items()})
        for lookup in payload.get("manager_uuids") or []:
            lookup = self.normalize_lookup(load(lookup))
            self.targeted_scope[build_identity_key(lookup, self.manager_ref)] = lookup
        if payload.get("all_manager_uuids") is not None:
            self.all_manager_uuids = [
                self.normalize_lookup(load(lookup)) for lookup in payload["all_manager_uuids"]
            ]
        return self

    def __repr__(self) -> str:
        flags = []
        if self.targeted:
            flags.append("targeted")
        if self.saved:
            flags.append("saved")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        return f"Collection({self.name!r}, records={len(self.records)}){suffix}"


def serialize_value(value: Any) -> Any:
    """Transfer-format representation of one attribute value."""
    if isinstance(value, LazyReference):
        return value.to_dict(serialize_value)
    if isinstance(value, Record):
        return value.lazy().to_dict(serialize_value)
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def _serialize_map(data: Mapping[str, Any]) -> dict[str, Any]:
    return {key: serialize_value(value) for key, value in data.items()}


def _deserialize_value(value: Any, collections: Mapping[str, Collection]) -> Any:
    if isinstance(value, list):
        return [_deserialize_value(v, collections) for v in value]
    if isinstance(value, Mapping) and value.get("type") == "LazyReference":
        name = value["collection"]
        return LazyReference(
            collections.get(name),
            {k: _deserialize_value(v, collections) for k, v in value["lookup"].items()},
            ref=value.get("ref") or PRIMARY_REF,
            key=value.get("key"),
            default=value.get("default"),
            mode=value.get("mode"),
            collection_name=name,
        )
    if isinstance(value, Mapping):
        return {k: _deserialize_value(v, collections) for k, v in value.items()}
    return value


__all__ = [
    "ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE",
    "Collection",
    "CollectionConfig",
    "INTERNAL_ATTRIBUTES",
    "LOCAL_DB_STRATEGIES",
    "PARENT_COLLECTIONS_ATTRIBUTE",
    "serialize_value",
]
