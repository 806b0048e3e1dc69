"""Repository over the ``refresh_states`` / ``refresh_state_parts`` tables.

Every worker of a multi-part refresh writes the same refresh-state row, so
creation goes through ``INSERT ... ON CONFLICT`` on the natural key instead of
a read-then-insert.  Counters are incremented in SQL.

Usage:
    >>> store = RefreshStateStore.from_engine(engine)          # doctest: +SKIP
    >>> state = store.upsert_state(1, "run-1", status="started")  # doctest: +SKIP
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from inventory_spine.enums import PartStatus, RefreshStatus
from inventory_spine.errors import InvariantError
from inventory_spine.orm.base import InventoryBase
from inventory_spine.orm.session import inventory_session_factory
from inventory_spine.orm.tables import RefreshStatePartTable, RefreshStateTable
from inventory_spine.storage.sqlalchemy_backend import dialect_insert
from inventory_spine.timestamps import utc_now


def _status_value(status: Any) -> Any:
    return status.value if isinstance(status, (RefreshStatus, PartStatus)) else status


class RefreshStateStore:
    """Reads and writes refresh coordination state.

    Args:
        session_factory: Callable returning a new ``Session``; one session is
            opened per operation.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: Engine, *, create_tables: bool = True) -> RefreshStateStore:
        if create_tables:
            InventoryBase.metadata.create_all(engine)
        return cls(inventory_session_factory(engine))

    # -- refresh states -----------------------------------------------------

    def upsert_state(self, ems_id: int, uuid: str, **values: Any) -> RefreshStateTable:
        """Create the refresh state or update the given columns of it."""
        values = {k: _status_value(v) for k, v in values.items()}
        now = utc_now()
        with self.session_factory() as session, session.begin():
            insert = dialect_insert(session.get_bind().dialect.name)
            stmt = insert(RefreshStateTable.__table__).values(
                ems_id=ems_id,
                uuid=uuid,
                created_at=now,
                updated_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["ems_id", "uuid"],
                set_={**values, "updated_at": now},
            )
            session.execute(stmt)
        state = self.get_state(ems_id, uuid)
        if state is None:
            raise InvariantError(f"Refresh state {uuid!r} vanished right after its upsert")
        return state

    def get_state(self, ems_id: int, uuid: str) -> RefreshStateTable | None:
        with self.session_factory() as session:
            return session.scalars(
                select(RefreshStateTable).where(
                    RefreshStateTable.ems_id == ems_id,
                    RefreshStateTable.uuid == uuid,
                )
            ).one_or_none()

    def update_state(self, state_id: int, **values: Any) -> None:
        values = {k: _status_value(v) for k, v in values.items()}
        with self.session_factory() as session, session.begin():
            session.execute(
                update(RefreshStateTable)
                .where(RefreshStateTable.id == state_id)
                .values(**values, updated_at=utc_now())
            )

    def increment_retry_count(self, state_id: int) -> int:
        """Add one to ``sweep_retry_count`` and return the new value."""
        with self.session_factory() as session, session.begin():
            session.execute(
                update(RefreshStateTable)
                .where(RefreshStateTable.id == state_id)
                .values(
                    sweep_retry_count=RefreshStateTable.sweep_retry_count + 1,
                    updated_at=utc_now(),
                )
            )
            return session.scalar(
                select(RefreshStateTable.sweep_retry_count).where(RefreshStateTable.id == state_id)
            )

    # -- refresh state parts ------------------------------------------------

    def upsert_part(self, state_id: int, uuid: str, **values: Any) -> RefreshStatePartTable:
        values = {k: _status_value(v) for k, v in values.items()}
        now = utc_now()
        with self.session_factory() as session, session.begin():
            insert = dialect_insert(session.get_bind().dialect.name)
            stmt = insert(RefreshStatePartTable.__table__).values(
                refresh_state_id=state_id,
                uuid=uuid,
                created_at=now,
                updated_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["refresh_state_id", "uuid"],
                set_={**values, "updated_at": now},
            )
            session.execute(stmt)
            return session.scalars(
                select(RefreshStatePartTable).where(
                    RefreshStatePartTable.refresh_state_id == state_id,
                    RefreshStatePartTable.uuid == uuid,
                )
            ).one()

    def part_status_counts(self, state_id: int) -> Counter[str]:
        """Number of parts per status for one refresh state."""
        with self.session_factory() as session:
            rows = session.execute(
                select(RefreshStatePartTable.status, func.count())
                .where(RefreshStatePartTable.refresh_state_id == state_id)
                .group_by(RefreshStatePartTable.status)
            ).all()
        return Counter({status: count for status, count in rows})

    def parts(self, state_id: int) -> list[RefreshStatePartTable]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(RefreshStatePartTable)
                    .where(RefreshStatePartTable.refresh_state_id == state_id)
                    .order_by(RefreshStatePartTable.id)
                )
            )


__all__ = ["RefreshStateStore"]
