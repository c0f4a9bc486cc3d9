"""SQLAlchemy 2.0 ORM layer backing ``SqlReferenceStore``.

Modules
-------
base        RefSpineBase (declarative base)
session     Engine factory, RefSpineSession
tables      Mapped table classes (ConceptTable, AssociationTable, ...)
"""

from __future__ import annotations

from refspine.core.orm.base import RefSpineBase
from refspine.core.orm.session import (
    RefSpineSession,
    create_refspine_engine,
    refspine_session_factory,
)
from refspine.core.orm.tables import *  # noqa: F401,F403

__all__ = [
    "RefSpineBase",
    "create_refspine_engine",
    "RefSpineSession",
    "refspine_session_factory",
]
