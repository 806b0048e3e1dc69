"""Declarative base, mixins and type-map for the refresh coordination tables.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types.

Mixins
------
* **TimestampMixin** -- ``created_at`` / ``updated_at`` set from Python so
  sub-second ordering against ``last_seen_at`` holds on every backend.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from inventory_spine.timestamps import utc_now


class InventoryBase(DeclarativeBase):
    """Shared declarative base for the coordination tables.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``datetime.datetime`` → ``DateTime``
    * ``dict`` / ``list`` → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        datetime.datetime: DateTime,
        dict: JSON,
        list: JSON,
    }


class TimestampMixin:
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        default=utc_now,
        onupdate=utc_now,
    )
