"""
Cache controller - freshness, conditional refresh and single-flight fetches.

Wraps every external fetch. A fresh entry is returned without touching the
source; an expired one is refreshed by exactly one leader per key while
concurrent callers for that key wait for the leader's result.

Manifesto:
    - **Expiry is the contract:** Fresh means ``now < expiry``; expiry is set
      from the fetch time and never extended speculatively
    - **Stale beats nothing:** A failed refresh keeps serving the previous
      payload, marked ``error``, until ``retry_after``
    - **One fetch per key:** Concurrent misses collapse into one call and
      all callers see the same outcome, never a torn value

Architecture:
    ::

        get_or_fetch(key, fetcher)
              │
              ├── fresh / in error backoff ─────────▶ entry (no fetch)
              │
              ▼
        _flights[key]?  ──yes──▶ wait(leader) ─▶ leader's entry or error
              │ no
              ▼
        fetcher(prior) ─▶ Fetched      payload replaced, last_modified advanced
                                       only if the content hash changed
                          NotModified  expiry = now + ttl
                          FetchFailed  prior kept, status=error, retry_after set
                                       (no prior → FetchError to this key's callers)

    State machine: fresh → refreshing → {fresh, error}

Examples:
    >>> controller = CacheController(FeatureCacheStorage(store), ExpiryPolicy())
    >>> entry = controller.get_or_fetch(("watersheds", "ws-7"), feature_fetcher(ogc, "watersheds", "ws-7"))

Tags:
    cache, single-flight, etag, conditional-fetch, stale-while-error, refspine
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any

from refspine.cache.storage import EntryStorage
from refspine.core.errors import (
    ConcurrentModificationError,
    FetchError,
    RefSpineError,
    StaleCacheWarning,
)
from refspine.core.logging import get_logger
from refspine.core.timestamps import Clock, SystemClock, next_modified
from refspine.models import CacheEntry, SyncStatus

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Fetch outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Fetched:
    payload: dict[str, Any]
    change_token: str | None = None


@dataclass(frozen=True, slots=True)
class NotModified:
    change_token: str | None = None


@dataclass(frozen=True, slots=True)
class FetchFailed:
    error: RefSpineError


FetchOutcome = Fetched | NotModified | FetchFailed
Fetcher = Callable[[CacheEntry | None], FetchOutcome]


# ---------------------------------------------------------------------------
# Expiry policy
# ---------------------------------------------------------------------------


@dataclass
class ExpiryPolicy:
    """TTL per category (dimension, collection or association type)."""

    default_ttl: timedelta = timedelta(days=30)
    overrides: dict[str, timedelta] = field(default_factory=dict)
    error_retry: timedelta = timedelta(minutes=5)

    def ttl_for(self, category: str | None) -> timedelta:
        if category is not None and category in self.overrides:
            return self.overrides[category]
        return self.default_ttl

    @classmethod
    def from_settings(cls, settings: Any) -> ExpiryPolicy:
        return cls(
            default_ttl=settings.cache_ttl,
            overrides=settings.ttl_overrides,
            error_retry=settings.error_retry,
        )


def stale_warning(entry: CacheEntry) -> StaleCacheWarning | None:
    """Warning describing ``entry`` if it is being served after a failed refresh."""
    if entry.sync_status != SyncStatus.ERROR:
        return None
    return StaleCacheWarning(
        f"{entry.collection}/{entry.item_id}",
        f"serving stale data after failed refresh: {entry.last_error}",
    )


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class _Flight:
    __slots__ = ("done", "result", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: CacheEntry | None = None
        self.error: BaseException | None = None


class CacheController:
    """Freshness and single-flight control over one ``EntryStorage``."""

    def __init__(
        self,
        storage: EntryStorage,
        policy: ExpiryPolicy | None = None,
        clock: Clock | None = None,
    ):
        self.storage = storage
        self.policy = policy or ExpiryPolicy()
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._flights: dict[Hashable, _Flight] = {}
        self._stats = {"hits": 0, "fetches": 0, "joined": 0, "failures": 0}

    def get_or_fetch(
        self, key: Hashable, fetcher: Fetcher, category: str | None = None
    ) -> CacheEntry:
        """Return the entry for ``key``, refreshing it through ``fetcher`` if needed.

        Raises:
            FetchError: the refresh failed and nothing was cached for ``key``
        """
        entry = self.storage.load(key)
        if entry is not None and self._servable(entry):
            self._count("hits")
            return entry
        return self._single_flight(key, fetcher, category, force=False)

    def refresh(
        self, key: Hashable, fetcher: Fetcher, category: str | None = None
    ) -> CacheEntry:
        """Run ``fetcher`` for ``key`` regardless of freshness (sync passes)."""
        return self._single_flight(key, fetcher, category, force=True)

    def _single_flight(
        self, key: Hashable, fetcher: Fetcher, category: str | None, force: bool
    ) -> CacheEntry:
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight

        if not leader:
            self._count("joined")
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            flight.result = self._refresh(key, fetcher, category, force)
            return flight.result
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()

    def peek(self, key: Hashable) -> CacheEntry | None:
        return self.storage.load(key)

    def is_fresh(self, key: Hashable) -> bool:
        entry = self.storage.load(key)
        return entry is not None and entry.is_fresh(self.clock.now())

    def invalidate(self, key: Hashable) -> list[str]:
        """Mark ``key`` stale (expiry = now) and return its dependents."""
        for _ in range(3):
            entry = self.storage.load(key)
            if entry is None:
                return []
            updated = replace(entry, expiry=self.clock.now(), sync_status=SyncStatus.STALE)
            try:
                self.storage.save(updated, entry.version)
            except ConcurrentModificationError:
                continue
            log.info("cache.invalidated", key=key, dependents=len(entry.dependents))
            return list(entry.dependents)
        raise ConcurrentModificationError(str(key), None, "<contended>")

    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)

    # ------------------------------------------------------------------ #

    def _servable(self, entry: CacheEntry) -> bool:
        now = self.clock.now()
        if entry.is_fresh(now):
            return True
        return entry.sync_status == SyncStatus.ERROR and entry.in_error_backoff(now)

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    def _refresh(
        self, key: Hashable, fetcher: Fetcher, category: str | None, force: bool
    ) -> CacheEntry:
        prior = self.storage.load(key)
        # another leader may have finished between the caller's check and ours
        if not force and prior is not None and self._servable(prior):
            self._count("hits")
            return prior

        self._count("fetches")
        try:
            outcome = fetcher(prior)
        except RefSpineError as exc:
            outcome = FetchFailed(exc)

        now = self.clock.now()

        if isinstance(outcome, NotModified) and prior is None:
            outcome = FetchFailed(FetchError(f"{key}: source reported not-modified but nothing is cached"))

        if isinstance(outcome, FetchFailed):
            return self._record_failure(key, prior, outcome.error)

        if isinstance(outcome, NotModified):
            updated = replace(
                prior,
                last_fetched=now,
                change_token=outcome.change_token or prior.change_token,
                sync_status=SyncStatus.CURRENT,
                last_error=None,
                retry_after=None,
            )
            updated.expiry = now + self.policy.ttl_for(category or self.storage.category(key, updated))
            log.debug("cache.not_modified", key=key)
            return self._save(key, updated, prior)

        digest = self.storage.fingerprint(outcome.payload)
        if prior is None:
            updated = replace(
                self.storage.blank(key),
                payload=outcome.payload,
                change_token=outcome.change_token,
                content_hash=digest,
                last_fetched=now,
                last_modified=now,
                sync_status=SyncStatus.CURRENT,
            )
        else:
            # collection pages carry no per-item token; unchanged content keeps the prior one
            updated = replace(
                prior,
                change_token=outcome.change_token or prior.change_token,
                last_fetched=now,
                sync_status=SyncStatus.CURRENT,
                last_error=None,
                retry_after=None,
            )
            if digest != prior.content_hash:
                updated.payload = outcome.payload
                updated.content_hash = digest
                updated.change_token = outcome.change_token
                updated.last_modified = next_modified(prior.last_modified, now)
        updated.expiry = now + self.policy.ttl_for(category or self.storage.category(key, updated))
        log.debug("cache.fetched", key=key, changed=prior is None or digest != prior.content_hash)
        return self._save(key, updated, prior)

    def _record_failure(
        self, key: Hashable, prior: CacheEntry | None, error: RefSpineError
    ) -> CacheEntry:
        self._count("failures")
        if prior is None:
            log.warning("cache.fetch_failed", key=key, error=str(error))
            if isinstance(error, FetchError):
                raise error
            raise FetchError(
                f"{key}: {error.message}", retryable=error.retryable, cause=error
            ) from error

        now = self.clock.now()
        updated = replace(
            prior,
            sync_status=SyncStatus.ERROR,
            last_error=str(error),
            retry_after=now + self.policy.error_retry,
        )
        log.warning(
            "cache.serving_stale",
            key=key,
            error=str(error),
            retry_after=updated.retry_after.isoformat(),
        )
        return self._save(key, updated, prior)

    def _save(self, key: Hashable, entry: CacheEntry, prior: CacheEntry | None) -> CacheEntry:
        expected = prior.version if prior is not None else None
        try:
            return self.storage.save(entry, expected)
        except ConcurrentModificationError:
            # a sync pass wrote the record meanwhile; its version wins
            log.info("cache.write_conflict", key=key)
            current = self.storage.load(key)
            if current is None:
                raise
            return current


__all__ = [
    "Fetched",
    "NotModified",
    "FetchFailed",
    "FetchOutcome",
    "Fetcher",
    "ExpiryPolicy",
    "CacheController",
    "stale_warning",
]
