"""Cache controller, expiry policy and entry storages."""

from refspine.cache.controller import (
    CacheController,
    ExpiryPolicy,
    Fetched,
    FetchFailed,
    Fetcher,
    FetchOutcome,
    NotModified,
    stale_warning,
)
from refspine.cache.storage import (
    CONCEPT_COLLECTION,
    ConceptCacheStorage,
    EntryStorage,
    FeatureCacheStorage,
)

__all__ = [
    "CacheController",
    "ExpiryPolicy",
    "Fetched",
    "FetchFailed",
    "Fetcher",
    "FetchOutcome",
    "NotModified",
    "stale_warning",
    "CONCEPT_COLLECTION",
    "ConceptCacheStorage",
    "EntryStorage",
    "FeatureCacheStorage",
]
