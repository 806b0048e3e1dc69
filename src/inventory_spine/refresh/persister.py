"""
Persister: one refresh part, or the sweep that closes a multi-part refresh.

Manifesto:
    A large refresh is split into parts that independent workers save.
    Each part is recorded as a refresh-state part; once every part has
    reported, one more job sweeps the rows nobody touched.  The persister
    is that job's entry point in both roles.

State machine:
    ::

        refresh state:  started ─► waiting_for_refresh_state_parts ─► sweeping ─► finished
                           │                   │   ▲                     │
                           │                   └───┘ requeue             │
                           └──────────────► error ◄──────────────────────┘
                                               ▲
                                    retry ceiling reached
                                    or any part errored

        refresh part:   started ─► finished
                           └─────► error

Return value:
    :meth:`Persister.persist` returns True when the host should re-queue the
    same job later (parts are still running); False when nothing is left to
    do.  Errors are recorded on the state or part, truncated, and re-raised.

Examples:
    >>> persister = Persister(storage, store, collections, ems_id=1,
    ...                       refresh_state_uuid="run-1",
    ...                       refresh_state_part_uuid="part-1")  # doctest: +SKIP
    >>> persister.persist()  # doctest: +SKIP
    False

Tags:
    persister, refresh-state, mark-and-sweep, coordination

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from inventory_spine.collection import Collection
from inventory_spine.enums import PartStatus, RefreshStatus
from inventory_spine.errors import ConfigurationError, truncate_message
from inventory_spine.logging import LogContext, get_logger
from inventory_spine.orm.tables import RefreshStateTable
from inventory_spine.refresh.state import RefreshStateStore
from inventory_spine.refresh.sweeper import Sweeper
from inventory_spine.save.save_inventory import InventorySaveResult, save_inventory
from inventory_spine.settings import RefreshSettings, get_settings
from inventory_spine.storage.base import StorageBackend
from inventory_spine.timestamps import as_utc

logger = get_logger(__name__)

_COMPLETED_PART_STATUSES = (PartStatus.FINISHED.value, PartStatus.ERROR.value)


class Persister:
    """Saves the collections of one refresh part, or sweeps a finished refresh.

    Args:
        storage: Backend for entity data.
        state_store: Repository for refresh states and parts.
        collections: Collections of this part (or, for the sweep job, the
            collections that take part in retention).
        ems_id: Owner of the refresh states.
        refresh_state_uuid: Logical refresh run.  Without it, parts are not
            tracked and :meth:`persist` just saves.
        refresh_state_part_uuid: This part.
        total_parts: Set only on the sweep job; switches :meth:`persist` to
            :meth:`sweep_inactive_records`.
        sweep_scope: Restricts the sweep, see :func:`~inventory_spine.refresh.sweeper.build_scope`.
        associations: Passed through to :func:`save_inventory`.
        settings: Overrides the process settings.
        max_workers: Threads used per layer when saving.
    """

    def __init__(
        self,
        storage: StorageBackend,
        state_store: RefreshStateStore,
        collections: Iterable[Collection],
        *,
        ems_id: int,
        refresh_state_uuid: str | None = None,
        refresh_state_part_uuid: str | None = None,
        total_parts: int | None = None,
        sweep_scope: Any = None,
        associations: Mapping[str, str] | None = None,
        settings: RefreshSettings | None = None,
        max_workers: int = 1,
    ) -> None:
        self.storage = storage
        self.state_store = state_store
        self.collections = list(collections)
        self.ems_id = ems_id
        self.refresh_state_uuid = refresh_state_uuid
        self.refresh_state_part_uuid = refresh_state_part_uuid
        self.total_parts = total_parts
        self.sweep_scope = sweep_scope
        self.associations = associations
        self.settings = settings or get_settings()
        self.max_workers = max_workers

    def persist(self) -> bool:
        """Run this job; True means re-queue it."""
        with LogContext(
            refresh_state_uuid=self.refresh_state_uuid,
            refresh_state_part_uuid=self.refresh_state_part_uuid,
        ):
            if self.total_parts is not None:
                return self.sweep_inactive_records()
            self.persist_collections()
            return False

    # -- saving a part ------------------------------------------------------

    def persist_collections(self) -> InventorySaveResult:
        """Save the collections and record the part's outcome.

        Raises:
            Exception: Whatever saving raised, after the part was marked
                ``error`` with the truncated message.
        """
        if self.refresh_state_uuid is None:
            return self._save()
        if self.refresh_state_part_uuid is None:
            raise ConfigurationError("A tracked refresh part needs a refresh_state_part_uuid")

        # Created as started by the first part; later parts leave the status alone
        state = self.state_store.upsert_state(self.ems_id, self.refresh_state_uuid)
        self.state_store.upsert_part(state.id, self.refresh_state_part_uuid, status=PartStatus.STARTED)
        try:
            result = self._save()
        except Exception as exc:
            self.state_store.upsert_part(
                state.id,
                self.refresh_state_part_uuid,
                status=PartStatus.ERROR,
                error_message=truncate_message(str(exc), self.settings.error_message_max_length),
            )
            logger.error("persister.part_failed", error=f"{type(exc).__name__}: {exc}")
            raise
        self.state_store.upsert_part(state.id, self.refresh_state_part_uuid, status=PartStatus.FINISHED)
        logger.info("persister.part_finished")
        return result

    def _save(self) -> InventorySaveResult:
        return save_inventory(
            self.collections,
            self.storage,
            associations=self.associations,
            settings=self.settings,
            max_workers=self.max_workers,
        )

    # -- sweeping -----------------------------------------------------------

    def sweep_inactive_records(self) -> bool:
        """Sweep once every part has completed; True means re-queue.

        Raises:
            Exception: Whatever sweeping raised, after the state was marked
                ``error`` with ``"Error while sweeping: <message>"``.
        """
        if self.refresh_state_uuid is None:
            raise ConfigurationError("Sweeping needs a refresh_state_uuid")

        state = self.state_store.upsert_state(
            self.ems_id,
            self.refresh_state_uuid,
            status=RefreshStatus.WAITING_FOR_REFRESH_STATE_PARTS,
            total_parts=self.total_parts,
            sweep_scope=self.sweep_scope,
        )
        try:
            counts = self.state_store.part_status_counts(state.id)
            completed = sum(counts[status] for status in _COMPLETED_PART_STATUSES)
            if completed < self.total_parts:
                return self._wait_for_parts(state, completed)
            self._start_sweeping(state, counts)
        except Exception as exc:
            message = truncate_message(str(exc), self.settings.error_message_max_length)
            self.state_store.update_state(
                state.id,
                status=RefreshStatus.ERROR,
                error_message=f"Error while sweeping: {message}",
            )
            logger.error("persister.sweep_failed", error=f"{type(exc).__name__}: {exc}")
            raise
        return False

    def _wait_for_parts(self, state: RefreshStateTable, completed: int) -> bool:
        limit = self.settings.sweep_retry_count_limit
        retries = self.state_store.increment_retry_count(state.id)
        if retries > limit:
            self.state_store.update_state(
                state.id,
                status=RefreshStatus.ERROR,
                error_message=f"Sweep retry count limit of {limit} was reached.",
            )
            logger.warning("persister.sweep_retry_limit", retries=retries, limit=limit)
            return False
        logger.info(
            "persister.sweep_wait",
            completed_parts=completed,
            total_parts=self.total_parts,
            retries=retries,
        )
        return True

    def _start_sweeping(self, state: RefreshStateTable, counts: Mapping[str, int]) -> None:
        if counts[PartStatus.ERROR.value]:
            self.state_store.update_state(
                state.id,
                status=RefreshStatus.ERROR,
                error_message="Error when saving one or more parts, sweeping can't be done.",
            )
            logger.warning("persister.sweep_skipped", errored_parts=counts[PartStatus.ERROR.value])
            return

        self.state_store.update_state(state.id, status=RefreshStatus.SWEEPING)
        removed = Sweeper(self.storage, self.settings).sweep(
            self.collections, as_utc(state.created_at), self.sweep_scope
        )
        self.state_store.update_state(state.id, status=RefreshStatus.FINISHED)
        logger.info("persister.sweep_finished", removed=removed)

    # -- transfer format ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize this job for handoff to another worker."""
        return {
            "ems_id": self.ems_id,
            "refresh_state_uuid": self.refresh_state_uuid,
            "refresh_state_part_uuid": self.refresh_state_part_uuid,
            "total_parts": self.total_parts,
            "sweep_scope": self.sweep_scope,
            "collections": [c.to_dict() for c in self.collections],
        }

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        storage: StorageBackend,
        state_store: RefreshStateStore,
        collections: Iterable[Collection],
        **kwargs: Any,
    ) -> Persister:
        """Rebuild a job from :meth:`to_dict` into freshly configured *collections*."""
        available = {c.name: c for c in collections}
        for data in payload.get("collections") or []:
            collection = available.get(data["name"])
            if collection is None:
                raise ConfigurationError(f"No collection named {data['name']!r} to load into")
            collection.load_dict(data, available)
        return cls(
            storage,
            state_store,
            available.values(),
            ems_id=payload["ems_id"],
            refresh_state_uuid=payload.get("refresh_state_uuid"),
            refresh_state_part_uuid=payload.get("refresh_state_part_uuid"),
            total_parts=payload.get("total_parts"),
            sweep_scope=payload.get("sweep_scope"),
            **kwargs,
        )


__all__ = ["Persister"]
