"""SQLAlchemy 2.0 ORM models for refresh coordination state.

Tables
------
* ``refresh_states``       -- one row per logical refresh run (``ems_id``, ``uuid``)
* ``refresh_state_parts``  -- one row per independently processed part

Both are upserted by workers that race on the same run, so each carries a
unique constraint on its natural key.
"""

from __future__ import annotations

from sqlalchemy import JSON, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_spine.enums import PartStatus, RefreshStatus
from inventory_spine.orm.base import InventoryBase, TimestampMixin


class RefreshStateTable(TimestampMixin, InventoryBase):
    __tablename__ = "refresh_states"
    __table_args__ = (UniqueConstraint("ems_id", "uuid", name="uq_refresh_states_ems_uuid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(Text, nullable=False)
    ems_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, default=RefreshStatus.STARTED.value, nullable=False)
    total_parts: Mapped[int | None] = mapped_column(Integer)
    sweep_scope: Mapped[dict | list | None] = mapped_column(JSON, default=None)
    sweep_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    parts: Mapped[list[RefreshStatePartTable]] = relationship(
        "RefreshStatePartTable", back_populates="refresh_state", cascade="all, delete-orphan"
    )


class RefreshStatePartTable(TimestampMixin, InventoryBase):
    __tablename__ = "refresh_state_parts"
    __table_args__ = (
        UniqueConstraint("refresh_state_id", "uuid", name="uq_refresh_state_parts_state_uuid"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_state_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("refresh_states.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(Text, default=PartStatus.STARTED.value, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    refresh_state: Mapped[RefreshStateTable] = relationship(
        "RefreshStateTable", back_populates="parts"
    )
