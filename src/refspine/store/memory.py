"""In-memory reference store.

Records are held serialized (``to_dict``) and rebuilt on every read, so
callers never share mutable state with the arena and the semantics match the
SQL backend exactly. Every write bumps the record's ``version``. A single re-entrant lock guards every arena; hierarchy
commits take it once for the tree and all closures.
"""

from __future__ import annotations

import threading
from typing import Any

from refspine.core.errors import ConcurrentModificationError
from refspine.core.logging import get_logger
from refspine.models import (
    Association,
    CacheEntry,
    Closures,
    Concept,
    FeatureOfInterest,
    HierarchyTree,
)
from refspine.store.protocol import AssociationKey, require_last_modified

log = get_logger(__name__)


class InMemoryReferenceStore:
    """Dict-backed ``ReferenceStore``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._concepts: dict[str, dict[str, Any]] = {}
        self._trees: dict[str, dict[str, Any]] = {}
        self._associations: dict[AssociationKey, dict[str, Any]] = {}
        self._cache_entries: dict[tuple[str, str], dict[str, Any]] = {}
        self._features: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------ #
    # Concepts
    # ------------------------------------------------------------------ #

    def get_concept(self, uri: str) -> Concept | None:
        with self._lock:
            data = self._concepts.get(uri)
            return Concept.from_dict(data) if data is not None else None

    def list_concepts(self, dimension: str | None = None) -> list[Concept]:
        with self._lock:
            concepts = [Concept.from_dict(d) for _, d in sorted(self._concepts.items())]
        if dimension is None:
            return concepts
        return [c for c in concepts if c.dimension == dimension]

    def find_concepts_by_code(self, code: str) -> list[Concept]:
        with self._lock:
            return [
                Concept.from_dict(d)
                for _, d in sorted(self._concepts.items())
                if d["code"] == code
            ]

    def upsert_concept(self, concept: Concept, expected_version: int | None = None) -> Concept:
        require_last_modified("concept", concept.uri, concept.last_modified)
        with self._lock:
            current = self._concepts.get(concept.uri)
            self._concepts[concept.uri] = self._versioned(concept.uri, concept, current, expected_version)
            return Concept.from_dict(self._concepts[concept.uri])

    def delete_concept(self, uri: str) -> bool:
        with self._lock:
            removed = self._concepts.pop(uri, None) is not None
        if removed:
            log.info("store.concept_deleted", uri=uri)
        return removed

    def list_dimensions(self) -> list[str]:
        with self._lock:
            dims = {
                d["classification"]["dimension"]
                for d in self._concepts.values()
                if d["classification"].get("dimension")
            }
            dims.update(self._trees)
        return sorted(dims)

    # ------------------------------------------------------------------ #
    # Hierarchy
    # ------------------------------------------------------------------ #

    def get_tree(self, dimension: str) -> HierarchyTree | None:
        with self._lock:
            data = self._trees.get(dimension)
            return HierarchyTree.from_dict(data) if data is not None else None

    def commit_hierarchy(self, tree: HierarchyTree, closures: dict[str, Closures]) -> None:
        with self._lock:
            staged = {}
            for uri, closure in closures.items():
                data = self._concepts.get(uri)
                if data is None:
                    continue
                if closure.version is not None and data["version"] != closure.version:
                    raise ConcurrentModificationError(uri, closure.version, data["version"])
                up, down = sorted(closure.broader_transitive), sorted(closure.narrower_transitive)
                if data["broader_transitive"] == up and data["narrower_transitive"] == down:
                    continue
                staged[uri] = {
                    **data,
                    "broader_transitive": up,
                    "narrower_transitive": down,
                    "version": data["version"] + 1,
                }
            self._concepts.update(staged)
            self._trees[tree.dimension] = tree.to_dict()

    # ------------------------------------------------------------------ #
    # Associations
    # ------------------------------------------------------------------ #

    def get_association(self, key: AssociationKey) -> Association | None:
        with self._lock:
            data = self._associations.get(tuple(key))
            return Association.from_dict(data) if data is not None else None

    def list_associations(self, source_feature_id: str | None = None) -> list[Association]:
        with self._lock:
            return [
                Association.from_dict(d)
                for k, d in sorted(self._associations.items())
                if source_feature_id is None or k[0] == source_feature_id
            ]

    def list_associations_for_target(self, collection: str, item_id: str) -> list[Association]:
        with self._lock:
            return [
                Association.from_dict(d)
                for k, d in sorted(self._associations.items())
                if k[1] == collection and k[2] == item_id
            ]

    def upsert_association(
        self, association: Association, expected_version: int | None = None
    ) -> Association:
        key = association.key
        require_last_modified("association", key, association.last_modified)
        with self._lock:
            current = self._associations.get(key)
            self._associations[key] = self._versioned(key, association, current, expected_version)
            return Association.from_dict(self._associations[key])

    # ------------------------------------------------------------------ #
    # Cache entries
    # ------------------------------------------------------------------ #

    def get_cache_entry(self, collection: str, item_id: str) -> CacheEntry | None:
        with self._lock:
            data = self._cache_entries.get((collection, item_id))
            return CacheEntry.from_dict(data) if data is not None else None

    def put_cache_entry(self, entry: CacheEntry, expected_version: int | None = None) -> CacheEntry:
        require_last_modified("cache entry", entry.key, entry.last_modified)
        with self._lock:
            current = self._cache_entries.get(entry.key)
            self._cache_entries[entry.key] = self._versioned(entry.key, entry, current, expected_version)
            return CacheEntry.from_dict(self._cache_entries[entry.key])

    def list_cache_entries(self, collection: str | None = None) -> list[CacheEntry]:
        with self._lock:
            return [
                CacheEntry.from_dict(d)
                for k, d in sorted(self._cache_entries.items())
                if collection is None or k[0] == collection
            ]

    # ------------------------------------------------------------------ #
    # Features
    # ------------------------------------------------------------------ #

    def get_feature(self, feature_id: str) -> FeatureOfInterest | None:
        with self._lock:
            data = self._features.get(feature_id)
            return FeatureOfInterest.from_dict(data) if data is not None else None

    def put_feature(self, feature: FeatureOfInterest) -> None:
        with self._lock:
            self._features[feature.id] = feature.to_dict()

    # ------------------------------------------------------------------ #

    @staticmethod
    def _versioned(
        key: Any, record: Any, current: dict[str, Any] | None, expected: int | None
    ) -> dict[str, Any]:
        actual = current["version"] if current is not None else None
        if actual != expected:
            raise ConcurrentModificationError(str(key), expected, actual)
        data = record.to_dict()
        data["version"] = (actual or 0) + 1
        return data


__all__ = ["InMemoryReferenceStore"]
