"""
Reference store protocol.

The store is the node+edge arena every other component reads from: concepts
keyed by URI, hierarchy trees keyed by dimension, associations keyed by
``(source_feature_id, collection, item_id)``, cached external features keyed
by ``(collection, item_id)`` and the local features needed for validation.

Writes to concepts, associations and cache entries are compare-and-set on
the record's ``version``: the caller passes the version it read (``None`` for
"must not exist yet") and the write fails with ``ConcurrentModificationError``
if any other write landed in between. The store owns ``version`` and bumps it
on every write, ``commit_hierarchy`` included; the returned record carries the
new one. ``last_modified`` is content time and stays the caller's to set.
``commit_hierarchy`` bumps only concepts whose closures actually change, and
refuses the whole commit if a closure's source version is out of date.

Backends:
    - ``InMemoryReferenceStore``: dict arenas guarded by a re-entrant lock
    - ``SqlReferenceStore``: SQLAlchemy ORM, one JSON record per row

Tags:
    store, repository, compare-and-set, protocol, refspine
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from refspine.core.errors import StorageError
from refspine.models import (
    Association,
    CacheEntry,
    Closures,
    Concept,
    FeatureOfInterest,
    HierarchyTree,
)

AssociationKey = tuple[str, str, str]


@runtime_checkable
class ReferenceStore(Protocol):
    # ── Concepts ─────────────────────────────────────────────────
    def get_concept(self, uri: str) -> Concept | None: ...

    def list_concepts(self, dimension: str | None = None) -> list[Concept]: ...

    def find_concepts_by_code(self, code: str) -> list[Concept]: ...

    def upsert_concept(
        self, concept: Concept, expected_version: int | None = None
    ) -> Concept: ...

    def delete_concept(self, uri: str) -> bool: ...

    def list_dimensions(self) -> list[str]: ...

    # ── Hierarchy ────────────────────────────────────────────────
    def get_tree(self, dimension: str) -> HierarchyTree | None: ...

    def commit_hierarchy(self, tree: HierarchyTree, closures: dict[str, Closures]) -> None: ...

    # ── Associations ─────────────────────────────────────────────
    def get_association(self, key: AssociationKey) -> Association | None: ...

    def list_associations(self, source_feature_id: str | None = None) -> list[Association]: ...

    def list_associations_for_target(self, collection: str, item_id: str) -> list[Association]: ...

    def upsert_association(
        self, association: Association, expected_version: int | None = None
    ) -> Association: ...

    # ── Cached external features ─────────────────────────────────
    def get_cache_entry(self, collection: str, item_id: str) -> CacheEntry | None: ...

    def put_cache_entry(
        self, entry: CacheEntry, expected_version: int | None = None
    ) -> CacheEntry: ...

    def list_cache_entries(self, collection: str | None = None) -> list[CacheEntry]: ...

    # ── Local features ───────────────────────────────────────────
    def get_feature(self, feature_id: str) -> FeatureOfInterest | None: ...

    def put_feature(self, feature: FeatureOfInterest) -> None: ...


def require_last_modified(kind: str, key: object, value: datetime | None) -> datetime:
    if value is None:
        raise StorageError(f"{kind} {key} has no last_modified")
    return value


__all__ = ["ReferenceStore", "AssociationKey", "require_last_modified"]
