"""
Dependency scanner.

Walks every record of every collection once, before anything is saved, and
turns the references it finds into:

* ``dependency_attributes`` on the referencing collection
  (attribute -> collections that must be saved first),
* ``references`` on the referenced collection, so the saver can look all of
  them up with one storage query,
* ``transitive_dependency_attributes`` for lookups that don't force ordering,
* ``targeted_scope`` for targeted collections without parents,
* ``parent_collections``, declared or inferred from a through-relation map,
* a dependency on every collection referenced by ``all_manager_uuids_scope``.

Finally each collection is marked finalized and registered as a dependee of
its dependencies.

Example::

    Scanner.scan([vms, hosts, disks], associations={"disks": "hardwares"})
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from inventory_spine.collection import (
    ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE,
    PARENT_COLLECTIONS_ATTRIBUTE,
    Collection,
)
from inventory_spine.errors import ConfigurationError, MissingDependencyError
from inventory_spine.logging import get_logger
from inventory_spine.record import Record, UnconnectedEdge
from inventory_spine.references import LazyReference

logger = get_logger(__name__)


class Scanner:
    """Scans one collection against the index of all known collections.

    Args:
        collection: The collection being scanned.
        indexed_collections: Every collection of this refresh, by name.
        associations: Through-relation map, collection name -> name of the
            collection its association goes through.
    """

    def __init__(
        self,
        collection: Collection,
        indexed_collections: Mapping[str, Collection],
        associations: Mapping[str, str],
    ) -> None:
        self.collection = collection
        self.indexed_collections = indexed_collections
        self.associations = associations

    @classmethod
    def scan(
        cls,
        collections: Iterable[Collection],
        associations: Mapping[str, str] | None = None,
    ) -> None:
        """Scan all *collections* and link dependees."""
        collections = list(collections)
        indexed: dict[str, Collection] = {}
        for collection in collections:
            if collection.name in indexed:
                raise ConfigurationError(f"Collection name {collection.name!r} is used twice")
            indexed[collection.name] = collection

        for collection in collections:
            cls(collection, indexed, associations or {}).scan_collection()

        for collection in collections:
            for dependency in collection.dependencies():
                dependency.dependees.add(collection)

    def scan_collection(self) -> None:
        collection = self.collection
        if collection.data_collection_finalized:
            logger.debug("scanner.skip_finalized", collection=collection.name)
            return

        track_scope = collection.targeted and not collection.config.parent_collections
        for record in collection.records:
            self._scan_record(record)
            if track_scope:
                # Identities to query from storage for a targeted refresh
                collection.targeted_scope[record.identity] = {
                    key: record.data.get(key) for key in collection.manager_ref
                }
        for record in collection.skeletal_index.values():
            self._scan_record(record)

        self._load_declared_dependencies()
        self._scan_all_manager_uuids_scope()
        self._build_parent_collections()

        collection.mark_finalized()
        logger.debug(
            "scanner.finalized",
            collection=collection.name,
            dependencies=sorted(c.name for c in collection.dependencies()),
            transitive=sorted(collection.transitive_dependency_attributes),
        )

    # -- records ------------------------------------------------------------

    def _scan_record(self, record: Record) -> None:
        for attribute, value in record.data.items():
            # Attributes never written don't order the save
            if not self.collection.saves_attribute(attribute):
                continue
            if isinstance(value, list):
                for item in value:
                    self._scan_attribute(record, attribute, item)
            else:
                self._scan_attribute(record, attribute, value)

    def _scan_attribute(self, record: Record, attribute: str, value: Any) -> None:
        if isinstance(value, Record):
            target = value.collection
            name = target.name
        elif isinstance(value, LazyReference):
            name = value.collection_name
            target = value.collection or self.indexed_collections.get(name)
            if value.collection is None and target is not None:
                value.collection = target
        else:
            return

        if target is None or self.indexed_collections.get(name) is not target:
            self._missing_reference(record, attribute, value, name)
            return

        if isinstance(value, Record) or value.is_dependency:
            self.collection.dependency_attributes.setdefault(attribute, set()).add(target)
        elif value.is_transitive:
            self.collection.transitive_dependency_attributes.add(attribute)
        target.add_reference(value)

    def _missing_reference(self, record: Record, attribute: str, value: Any, name: str) -> None:
        if self.collection.targeted:
            raise MissingDependencyError(name, self.collection.name).with_context(
                collection=self.collection.name, attribute=attribute
            )
        self.collection.unconnected_edges.append(UnconnectedEdge(record, attribute, value))
        logger.warning(
            "scanner.missing_collection",
            collection=self.collection.name,
            attribute=attribute,
            target=name,
        )

    # -- declared and inferred dependencies --------------------------------

    def _load_declared_dependencies(self) -> None:
        for attribute, names in self.collection.config.dependency_attributes.items():
            for name in names:
                target = self._load_collection(name)
                if target is not None:
                    self.collection.dependency_attributes.setdefault(attribute, set()).add(target)

    def _scan_all_manager_uuids_scope(self) -> None:
        """Register complement-scope references; they must resolve before this save."""
        for condition in self.collection.config.all_manager_uuids_scope or ():
            for value in condition.values():
                target = self._reference_target(value)
                if target is None:
                    continue
                self.collection.dependency_attributes.setdefault(
                    ALL_MANAGER_UUIDS_SCOPE_ATTRIBUTE, set()
                ).add(target)
                target.add_reference(value)

    def _reference_target(self, value: Any) -> Collection | None:
        if isinstance(value, Record):
            return value.collection
        if not isinstance(value, LazyReference):
            return None
        if value.collection is None:
            value.collection = self._load_collection(value.collection_name)
        return value.collection

    def _build_parent_collections(self) -> None:
        declared = self.collection.config.parent_collections
        parents: list[Collection] = []
        if declared is None:
            through = self.associations.get(self.collection.name)
            if through:
                # The immediate parent in a through relation is a dependency too
                immediate = self._load_collection(through)
                if immediate is not None:
                    self._add_parent_dependency(immediate)
                root = self._load_collection(self._find_root(through))
                if root is not None:
                    parents.append(root)
        else:
            parents = [c for c in map(self._load_collection, declared) if c is not None]

        self.collection.parent_collections = parents
        for parent in parents:
            self._add_parent_dependency(parent)

    def _find_root(self, name: str) -> str:
        seen = {self.collection.name}
        while name in self.associations and name not in seen:
            seen.add(name)
            name = self.associations[name]
        return name

    def _add_parent_dependency(self, parent: Collection) -> None:
        self.collection.dependency_attributes.setdefault(
            PARENT_COLLECTIONS_ATTRIBUTE, set()
        ).add(parent)

    def _load_collection(self, name: str) -> Collection | None:
        collection = self.indexed_collections.get(name)
        if collection is not None:
            return collection
        if self.collection.targeted:
            raise MissingDependencyError(name, self.collection.name)
        logger.warning(
            "scanner.unknown_collection",
            collection=self.collection.name,
            missing=name,
        )
        return None


__all__ = ["Scanner"]
