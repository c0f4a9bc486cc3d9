"""
Entry storages for the cache controller.

The controller works on ``CacheEntry`` values; a storage maps them onto the
record they live in. ``FeatureCacheStorage`` stores them as-is;
``ConceptCacheStorage`` projects a ``Concept`` (content + cache block) onto a
``CacheEntry`` and back, so on-demand unit refreshes follow exactly the same
freshness rules as external features.

Architecture:
    ::

        EntryStorage (Protocol)
        ├── FeatureCacheStorage   key (collection, item_id) → CacheEntry record
        └── ConceptCacheStorage   key uri                   → Concept.cache block

        API: load(key)        → CacheEntry | None
             save(entry, expected_version)
             fingerprint(payload) → content hash
             category(key, entry) → expiry-policy category
             key_of(entry)        → storage key
"""

from __future__ import annotations

from collections.abc import Hashable
from typing import Any, Protocol

from refspine.core.errors import ConcurrentModificationError
from refspine.core.hashing import content_hash
from refspine.core.logging import get_logger
from refspine.models import CacheEntry, CacheMetadata, Concept
from refspine.store import ReferenceStore

log = get_logger(__name__)

CONCEPT_COLLECTION = "concepts"


class EntryStorage(Protocol):
    def load(self, key: Hashable) -> CacheEntry | None: ...

    def save(self, entry: CacheEntry, expected_version: int | None) -> CacheEntry: ...

    def fingerprint(self, payload: dict[str, Any]) -> str: ...

    def category(self, key: Hashable, entry: CacheEntry | None) -> str | None: ...

    def key_of(self, entry: CacheEntry) -> Hashable: ...

    def blank(self, key: Hashable) -> CacheEntry: ...


# ---------------------------------------------------------------------------
# FeatureCacheStorage
# ---------------------------------------------------------------------------


class FeatureCacheStorage:
    """External OGC features cached as ``CacheEntry`` records.

    Keys are ``(collection, item_id)``; the expiry category is the collection.
    """

    def __init__(self, store: ReferenceStore):
        self.store = store

    def load(self, key: tuple[str, str]) -> CacheEntry | None:
        collection, item_id = key
        return self.store.get_cache_entry(collection, item_id)

    def save(self, entry: CacheEntry, expected_version: int | None) -> CacheEntry:
        return self.store.put_cache_entry(entry, expected_version)

    def fingerprint(self, payload: dict[str, Any]) -> str:
        return content_hash(payload)

    def category(self, key: tuple[str, str], entry: CacheEntry | None) -> str | None:
        return key[0]

    def key_of(self, entry: CacheEntry) -> tuple[str, str]:
        return entry.key

    def blank(self, key: tuple[str, str]) -> CacheEntry:
        collection, item_id = key
        return CacheEntry(collection=collection, item_id=item_id)

    def add_dependent(self, key: tuple[str, str], dependent_id: str, attempts: int = 3) -> bool:
        """Record that ``dependent_id`` depends on the entry; False if it is not cached."""
        for _ in range(attempts):
            entry = self.load(key)
            if entry is None:
                return False
            if dependent_id in entry.dependents:
                return True
            expected = entry.version
            entry.dependents = sorted({*entry.dependents, dependent_id})
            try:
                self.save(entry, expected)
                return True
            except ConcurrentModificationError:
                log.debug("cache.dependent_conflict", key=key, dependent=dependent_id)
        raise ConcurrentModificationError(str(key), None, "<contended>")


# ---------------------------------------------------------------------------
# ConceptCacheStorage
# ---------------------------------------------------------------------------


class ConceptCacheStorage:
    """Projects concepts onto cache entries.

    ``payload`` is the concept's content (``Concept.content_dict()``). Saving
    keeps the stored usage statistics and closures; those are never owned by
    the source. Dependents of a unit are its transitive narrower concepts.
    The expiry category is the concept's dimension.
    """

    def __init__(self, store: ReferenceStore):
        self.store = store

    def load(self, key: str) -> CacheEntry | None:
        concept = self.store.get_concept(key)
        if concept is None:
            return None
        return self.to_entry(concept)

    def save(self, entry: CacheEntry, expected_version: int | None) -> CacheEntry:
        current = self.store.get_concept(entry.item_id)
        concept = Concept.from_dict(entry.payload or {"uri": entry.item_id, "code": entry.item_id})
        if current is not None:
            concept.usage = current.usage
            concept.broader_transitive = list(current.broader_transitive)
            concept.narrower_transitive = list(current.narrower_transitive)
            source_version = current.cache.source_version
        else:
            source_version = None
        concept.cache = CacheMetadata(
            last_fetched=entry.last_fetched,
            expiry=entry.expiry,
            change_token=entry.change_token,
            sync_status=entry.sync_status,
            source_version=source_version,
            last_error=entry.last_error,
            retry_after=entry.retry_after,
        )
        concept.last_modified = entry.last_modified
        saved = self.store.upsert_concept(concept, expected_version)
        return self.to_entry(saved)

    def fingerprint(self, payload: dict[str, Any]) -> str:
        return Concept.from_dict(payload).content_fingerprint()

    def category(self, key: str, entry: CacheEntry | None) -> str | None:
        if entry is None or not entry.payload:
            return None
        return (entry.payload.get("classification") or {}).get("dimension")

    def key_of(self, entry: CacheEntry) -> str:
        return entry.item_id

    def blank(self, key: str) -> CacheEntry:
        return CacheEntry(collection=CONCEPT_COLLECTION, item_id=key)

    @staticmethod
    def to_entry(concept: Concept) -> CacheEntry:
        return CacheEntry(
            collection=CONCEPT_COLLECTION,
            item_id=concept.uri,
            payload=concept.content_dict(),
            change_token=concept.cache.change_token,
            content_hash=concept.content_fingerprint(),
            last_fetched=concept.cache.last_fetched,
            expiry=concept.cache.expiry,
            last_modified=concept.last_modified,
            sync_status=concept.cache.sync_status,
            last_error=concept.cache.last_error,
            retry_after=concept.cache.retry_after,
            dependents=list(concept.narrower_transitive),
            version=concept.version,
        )


__all__ = [
    "EntryStorage",
    "FeatureCacheStorage",
    "ConceptCacheStorage",
    "CONCEPT_COLLECTION",
]
