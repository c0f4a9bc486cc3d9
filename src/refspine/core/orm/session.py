"""Engine and session factory for the SQL reference store.

SQLite gets WAL journaling for file databases and a single shared
connection for in-memory ones; every other backend is passed through to
``sqlalchemy.create_engine`` untouched.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def create_refspine_engine(url: str = "sqlite:///refspine.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, **kwargs)

    in_memory = url in _IN_MEMORY_URLS
    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if in_memory:
        # every checkout must see the same database
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class RefSpineSession(Session):
    """Session whose loaded rows survive the commit (``expire_on_commit=False``)."""

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def refspine_session_factory(engine: Engine) -> sessionmaker[RefSpineSession]:
    return sessionmaker(bind=engine, class_=RefSpineSession)
