"""
Sync orchestrator - paginated, retrying, cancellable synchronization passes.

Manifesto:
    - **A bad page is not a bad pass:** A page that exhausts its retries is
      recorded and the pass moves on to the next one
    - **A bad item is not a bad page:** Malformed items become item errors;
      the rest of the page is applied
    - **Idempotent upserts:** Re-running a pass over unchanged content
      leaves every record as it was, bar cache timestamps
    - **Trigger-agnostic:** Whoever calls ``sync_all`` (scheduler, service,
      test) gets the same pass; cancellation is an event, checked between pages

Architecture:
    ::

        sync_all(source, cancel)
          │   LogContext(sync_run_id, source)
          ▼
        page 0, 1, 2, ...      RetryContext(ExponentialBackoff 2,4,8,16s)
          │   exhausted ─────▶ report.failed_pages, continue
          ▼
        parse_item ──────────▶ report.item_errors on ParseError
          │
          ├── ConceptSource: CAS upsert keyed by URI ─▶ affected dimensions
          │                                              └▶ HierarchyBuilder.rebuild
          │
          └── FeatureSource: CacheController.refresh ─▶ AssociationValidator
                                                        .on_target_refreshed

        refresh_stale(source, limit): expired concepts by decayed
        frequency_score, through the concept CacheController

        refresh_feature(source, item_id, force): one target item through the
        feature CacheController (invalidated first when forced), then fan-out

Examples:
    >>> orchestrator = SyncOrchestrator(store, builder=HierarchyBuilder(store))
    >>> report = orchestrator.sync_all(SkosmosConceptSource())
    >>> report.created, report.failed_pages
    (1320, [])

Tags:
    sync, pagination, retry, backoff, cancellation, idempotent, refspine
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from refspine.associations import AssociationValidator
from refspine.cache import (
    CacheController,
    ConceptCacheStorage,
    ExpiryPolicy,
    FeatureCacheStorage,
    Fetched,
    stale_warning,
)
from refspine.core.errors import (
    ConcurrentModificationError,
    ConfigError,
    HierarchyError,
    RefSpineError,
)
from refspine.core.logging import LogContext, get_logger
from refspine.core.retry import ExponentialBackoff, RetryContext, RetryStrategy
from refspine.core.timestamps import (
    Clock,
    SystemClock,
    generate_ulid,
    next_modified,
    to_iso8601,
)
from refspine.hierarchy import HierarchyBuilder
from refspine.models import CacheEntry, CacheMetadata, Concept, SyncStatus, UsageStats
from refspine.store import ReferenceStore
from refspine.sync.sources import (
    ConceptSource,
    FeatureSource,
    Page,
    ParsedFeature,
    concept_fetcher,
    feature_fetcher,
)

log = get_logger(__name__)

CREATED, UPDATED, UNCHANGED = "created", "updated", "unchanged"


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class PageFailure:
    page_number: int
    attempts: int
    error: str
    retryable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "attempts": self.attempts,
            "error": self.error,
            "retryable": self.retryable,
        }


@dataclass
class ItemError:
    page_number: int | None
    index: int | None
    key: str | None
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "index": self.index,
            "key": self.key,
            "error": self.error,
        }


@dataclass
class SyncReport:
    """Outcome of one pass. ``ok`` is True only for a clean, complete pass."""

    source: str
    sync_run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    pages_ok: int = 0
    failed_pages: list[PageFailure] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    item_errors: list[ItemError] = field(default_factory=list)
    rebuilt_dimensions: list[str] = field(default_factory=list)
    hierarchy_errors: dict[str, str] = field(default_factory=dict)
    associations_updated: int = 0
    associations_invalidated: int = 0
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    next_sync_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not (
            self.failed_pages or self.item_errors or self.hierarchy_errors or self.cancelled
        )

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "sync_run_id": self.sync_run_id,
            "started_at": to_iso8601(self.started_at),
            "finished_at": to_iso8601(self.finished_at),
            "pages_ok": self.pages_ok,
            "failed_pages": [p.to_dict() for p in self.failed_pages],
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "item_errors": [e.to_dict() for e in self.item_errors],
            "rebuilt_dimensions": list(self.rebuilt_dimensions),
            "hierarchy_errors": dict(self.hierarchy_errors),
            "associations_updated": self.associations_updated,
            "associations_invalidated": self.associations_invalidated,
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "next_sync_at": to_iso8601(self.next_sync_at),
            "ok": self.ok,
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    def __init__(
        self,
        store: ReferenceStore,
        *,
        builder: HierarchyBuilder | None = None,
        validator: AssociationValidator | None = None,
        policy: ExpiryPolicy | None = None,
        clock: Clock | None = None,
        page_size: int = 100,
        retry: RetryStrategy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        max_consecutive_page_failures: int = 3,
        sync_interval: timedelta = timedelta(minutes=60),
        usage_half_life_days: float = 7.0,
        cas_attempts: int = 3,
        concept_cache: CacheController | None = None,
        feature_cache: CacheController | None = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.builder = builder or HierarchyBuilder(store, self.clock)
        self.validator = validator
        self.policy = policy or ExpiryPolicy()
        self.page_size = page_size
        self.retry = retry or ExponentialBackoff()
        self.sleep = sleep
        self.max_consecutive_page_failures = max_consecutive_page_failures
        self.sync_interval = sync_interval
        self.usage_half_life_days = usage_half_life_days
        self.cas_attempts = cas_attempts
        # single flight holds per controller; build_refspine hands the service the same one
        self.concept_cache = concept_cache or CacheController(ConceptCacheStorage(store), self.policy, self.clock)
        self.feature_cache = feature_cache or CacheController(FeatureCacheStorage(store), self.policy, self.clock)

    # ------------------------------------------------------------------ #
    # Full passes
    # ------------------------------------------------------------------ #

    def sync_all(
        self,
        source: ConceptSource | FeatureSource,
        cancel: threading.Event | None = None,
    ) -> SyncReport:
        """Run one full pass over ``source``.

        The current page always finishes; once ``cancel`` is set no further
        page is requested and the upserts already made stay committed.
        """
        report = SyncReport(source=source.name, sync_run_id=generate_ulid(), started_at=self.clock.now())
        with LogContext(sync_run_id=report.sync_run_id, source=source.name):
            log.info("sync.started", page_size=self.page_size)
            if isinstance(source, FeatureSource):
                self._feature_pass(source, report, cancel)
            elif isinstance(source, ConceptSource):
                self._concept_pass(source, report, cancel)
            else:
                raise ConfigError(f"{source!r} is neither a concept nor a feature source")
            self._finish(report)
        return report

    def _concept_pass(
        self, source: ConceptSource, report: SyncReport, cancel: threading.Event | None
    ) -> None:
        affected: set[str] = set()
        for page in self._pages(source, report, cancel):
            for index, raw in enumerate(page.items):
                try:
                    concept = source.parse_item(raw)
                    outcome, dimensions = self._upsert_concept(concept, source.name)
                except RefSpineError as exc:
                    self._item_error(report, page.page_number, index, _raw_key(raw), exc)
                    continue
                report.count(outcome)
                affected.update(dimensions)
        self._rebuild(affected, report)

    def _feature_pass(
        self, source: FeatureSource, report: SyncReport, cancel: threading.Event | None
    ) -> None:
        for page in self._pages(source, report, cancel):
            for index, raw in enumerate(page.items):
                try:
                    parsed = source.parse_item(raw)
                    self._apply_feature(parsed, report)
                except RefSpineError as exc:
                    self._item_error(report, page.page_number, index, _raw_key(raw), exc)

    def _apply_feature(self, parsed: ParsedFeature, report: SyncReport) -> None:
        before = self.store.get_cache_entry(*parsed.key)
        entry = self.feature_cache.refresh(
            parsed.key,
            lambda prior: Fetched(payload=parsed.payload, change_token=parsed.change_token),
            category=parsed.collection,
        )
        if parsed.href and entry.href != parsed.href:
            entry = self._remember_href(entry, parsed.href)
        self._fan_out(before, entry, report)

    def _fan_out(self, before: CacheEntry | None, entry: CacheEntry, report: SyncReport) -> None:
        if before is None:
            report.count(CREATED)
        elif before.content_hash != entry.content_hash:
            report.count(UPDATED)
        else:
            report.count(UNCHANGED)

        if self.validator is not None:
            geometry_changed = before is not None and before.geometry != entry.geometry
            fan_out = self.validator.on_target_refreshed(entry, geometry_changed)
            report.associations_updated += fan_out.updated
            report.associations_invalidated += fan_out.invalidated

    def _remember_href(self, entry: CacheEntry, href: str) -> CacheEntry:
        try:
            return self.store.put_cache_entry(replace(entry, href=href), entry.version)
        except ConcurrentModificationError:
            return self.store.get_cache_entry(*entry.key) or entry

    # ------------------------------------------------------------------ #
    # On-demand refresh
    # ------------------------------------------------------------------ #

    def refresh_stale(
        self,
        source: ConceptSource,
        limit: int | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncReport:
        """Refresh expired concepts, most used first, through the cache controller.

        Concepts waiting out an error backoff are skipped. A failed refresh
        keeps the stored concept and adds a stale-data warning to the report.
        """
        report = SyncReport(source=source.name, sync_run_id=generate_ulid(), started_at=self.clock.now())
        with LogContext(sync_run_id=report.sync_run_id, source=source.name):
            now = self.clock.now()
            candidates = [
                c for c in self.store.list_concepts()
                if not c.cache.is_fresh(now) and not c.cache.in_error_backoff(now)
            ]
            candidates.sort(key=lambda c: (-c.usage.decayed_score(now, self.usage_half_life_days), c.uri))
            if limit is not None:
                candidates = candidates[:limit]
            log.info("sync.refresh_stale", candidates=len(candidates))

            affected: set[str] = set()
            for concept in candidates:
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    break
                before = concept.content_fingerprint()
                try:
                    entry = self.concept_cache.get_or_fetch(
                        concept.uri, concept_fetcher(source, concept.uri), category=concept.dimension
                    )
                except RefSpineError as exc:
                    self._item_error(report, None, None, concept.uri, exc)
                    continue
                warning = stale_warning(entry)
                if warning is not None:
                    report.warnings.append(str(warning))
                elif entry.content_hash != before:
                    report.count(UPDATED)
                    affected.update(self.builder.affected_dimensions(concept, self.store.get_concept(concept.uri)))
                else:
                    report.count(UNCHANGED)
            self._rebuild(affected, report)
            self._finish(report)
        return report

    def refresh_feature(self, source: FeatureSource, item_id: str, force: bool = False) -> SyncReport:
        """Refresh one cached target item on demand and fan it out to its dependents.

        A fresh entry is served as-is unless ``force`` invalidates it first;
        the refetch is still conditional on the stored change token.
        """
        key = (source.collection, item_id)
        report = SyncReport(source=source.name, sync_run_id=generate_ulid(), started_at=self.clock.now())
        with LogContext(sync_run_id=report.sync_run_id, source=source.name):
            if force:
                dependents = self.feature_cache.invalidate(key)
                log.info("sync.feature_invalidated", item_id=item_id, dependents=dependents)
            before = self.store.get_cache_entry(*key)
            try:
                entry = self.feature_cache.get_or_fetch(
                    key, feature_fetcher(source, *key), category=source.collection
                )
            except RefSpineError as exc:
                self._item_error(report, None, None, item_id, exc)
            else:
                warning = stale_warning(entry)
                if warning is not None:
                    report.warnings.append(str(warning))
                elif before is not None and entry.version == before.version:
                    report.count(UNCHANGED)
                else:
                    self._fan_out(before, entry, report)
            self._finish(report)
        return report

    # ------------------------------------------------------------------ #
    # Pagination
    # ------------------------------------------------------------------ #

    def _pages(
        self,
        source: ConceptSource | FeatureSource,
        report: SyncReport,
        cancel: threading.Event | None,
    ) -> Iterator[Page]:
        """Yield pages in order, retrying each under the retry strategy.

        An exhausted page is recorded and skipped. With a known total the pass
        continues until the total is covered; without one it gives up after
        ``max_consecutive_page_failures`` failures in a row.
        """
        page_number = 0
        total: int | None = None
        consecutive_failures = 0
        while True:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                log.info("sync.cancelled", next_page=page_number)
                return

            context = RetryContext(
                self.retry,
                on_retry=lambda attempt, exc, delay, page=page_number: log.info(
                    "sync.page_retry", page=page, attempt=attempt, delay=delay, error=str(exc)
                ),
                sleep=self.sleep,
            )
            try:
                page = context.run(source.fetch_page, page_number, self.page_size)
            except RefSpineError as exc:
                report.failed_pages.append(
                    PageFailure(page_number, context.attempts, str(exc), exc.retryable)
                )
                log.warning("sync.page_failed", page=page_number, attempts=context.attempts, error=str(exc))
                consecutive_failures += 1
                if total is not None:
                    if (page_number + 1) * self.page_size >= total:
                        return
                elif consecutive_failures >= self.max_consecutive_page_failures:
                    report.warnings.append(
                        f"stopped after {consecutive_failures} consecutive page failures"
                    )
                    return
                page_number += 1
                continue

            consecutive_failures = 0
            if page.total_items is not None:
                total = page.total_items
            yield page
            report.pages_ok += 1
            log.debug("sync.page_done", page=page_number, items=len(page.items))
            if not page.has_more:
                return
            page_number += 1

    # ------------------------------------------------------------------ #
    # Upserts
    # ------------------------------------------------------------------ #

    def _upsert_concept(self, incoming: Concept, source_name: str) -> tuple[str, set[str]]:
        """CAS upsert keyed by URI; returns the outcome and the dimensions to rebuild."""
        ttl = self.policy.ttl_for(incoming.dimension)
        for _ in range(self.cas_attempts):
            now = self.clock.now()
            current = self.store.get_concept(incoming.uri)
            cache = CacheMetadata(
                last_fetched=now,
                expiry=now + ttl,
                change_token=incoming.cache.change_token,
                sync_status=SyncStatus.CURRENT,
                source_version=source_name,
            )
            if current is None:
                outcome = CREATED
                record = replace(
                    incoming,
                    cache=cache,
                    usage=UsageStats(),
                    broader_transitive=[],
                    narrower_transitive=[],
                    last_modified=now,
                )
            elif current.content_fingerprint() == incoming.content_fingerprint():
                outcome = UNCHANGED
                record = replace(current, cache=cache)
            else:
                outcome = UPDATED
                record = replace(
                    incoming,
                    cache=cache,
                    usage=current.usage,
                    broader_transitive=list(current.broader_transitive),
                    narrower_transitive=list(current.narrower_transitive),
                    last_modified=next_modified(current.last_modified, now),
                )

            try:
                self.store.upsert_concept(record, current.version if current else None)
            except ConcurrentModificationError:
                log.debug("sync.upsert_conflict", uri=incoming.uri)
                continue

            if outcome == UNCHANGED:
                return outcome, set()
            return outcome, self.builder.affected_dimensions(current, record)
        raise ConcurrentModificationError(incoming.uri, None, "<contended>")

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _rebuild(self, dimensions: set[str], report: SyncReport) -> None:
        for dimension in sorted(dimensions):
            try:
                self.builder.rebuild(dimension)
            except HierarchyError as exc:
                report.hierarchy_errors[dimension] = str(exc)
                continue
            report.rebuilt_dimensions.append(dimension)

    def _item_error(
        self,
        report: SyncReport,
        page_number: int | None,
        index: int | None,
        key: str | None,
        exc: RefSpineError,
    ) -> None:
        report.item_errors.append(ItemError(page_number, index, key, str(exc)))
        log.warning("sync.item_failed", page=page_number, index=index, key=key, error=str(exc))

    def _finish(self, report: SyncReport) -> None:
        report.finished_at = self.clock.now()
        report.next_sync_at = report.finished_at + self.sync_interval
        log.info(
            "sync.completed",
            pages_ok=report.pages_ok,
            failed_pages=len(report.failed_pages),
            created=report.created,
            updated=report.updated,
            unchanged=report.unchanged,
            item_errors=len(report.item_errors),
            rebuilt=report.rebuilt_dimensions,
            cancelled=report.cancelled,
        )


def _raw_key(raw: Any) -> str | None:
    if isinstance(raw, dict):
        key = raw.get("uri") or raw.get("id")
        return str(key) if key is not None else None
    return None


__all__ = ["SyncOrchestrator", "SyncReport", "PageFailure", "ItemError"]
