"""Concept store: the arena every component reads from and writes through."""

from refspine.store.memory import InMemoryReferenceStore
from refspine.store.protocol import AssociationKey, ReferenceStore
from refspine.store.sql import SqlReferenceStore

__all__ = [
    "AssociationKey",
    "ReferenceStore",
    "InMemoryReferenceStore",
    "SqlReferenceStore",
]
