"""SQLAlchemy engine and session factories.

* ``create_inventory_engine``   -- Engine from a URL with SQLite tweaks.
* ``InventorySession``          -- Session with ``expire_on_commit=False``.
* ``inventory_session_factory`` -- ``sessionmaker`` producing the above.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from inventory_spine.settings import get_settings


def create_inventory_engine(
    url: str | None = None,
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``); the
        ``database_url`` setting when omitted.
    echo:
        If ``True``, log all SQL to stdout.
    pool_size, max_overflow:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url is None:
        url = get_settings().database_url
    if url.startswith("sqlite"):
        # Layer workers share the file; wait on locks instead of failing
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class InventorySession(Session):
    """Pre-configured session with ``expire_on_commit=False``."""

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def inventory_session_factory(engine: Engine) -> sessionmaker[InventorySession]:
    """Return a ``sessionmaker`` bound to *engine* producing ``InventorySession``."""
    return sessionmaker(bind=engine, class_=InventorySession)
