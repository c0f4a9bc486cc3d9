"""
Composition root: build every refspine component from settings.

Nothing in refspine is a global singleton; ``build_refspine`` wires one set
of components around one store and one clock and hands them back together.

Examples:
    >>> spine = build_refspine(RefSpineSettings(database_url="sqlite:///refspine.db"))
    >>> report = spine.sync_units()
    >>> spine.service.convert(1.0, ATM, PASCAL)
    101325.0
    >>> scheduler = spine.scheduler()
    >>> scheduler.start(interval_seconds=spine.settings.sync_interval.total_seconds())
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from refspine.associations import AssociationValidator
from refspine.cache import CacheController, ConceptCacheStorage, ExpiryPolicy, FeatureCacheStorage
from refspine.core.errors import ConfigError
from refspine.core.logging import configure_logging, get_logger
from refspine.core.retry import ExponentialBackoff
from refspine.core.settings import RefSpineSettings
from refspine.core.timestamps import Clock, SystemClock
from refspine.hierarchy import HierarchyBuilder
from refspine.service import ReferenceDataService
from refspine.store import InMemoryReferenceStore, ReferenceStore, SqlReferenceStore
from refspine.sync import (
    OgcFeatureSource,
    SkosmosConceptSource,
    SyncOrchestrator,
    SyncReport,
    SyncScheduler,
)

log = get_logger(__name__)


def create_store(settings: RefSpineSettings) -> ReferenceStore:
    if not settings.database_url:
        return InMemoryReferenceStore()
    return SqlReferenceStore.from_url(settings.database_url)


def create_retry(settings: RefSpineSettings) -> ExponentialBackoff:
    return ExponentialBackoff(
        max_retries=settings.retry_max_retries,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        honor_retry_after=True,
    )


@dataclass
class RefSpine:
    """One wired set of components."""

    settings: RefSpineSettings
    store: ReferenceStore
    clock: Clock
    builder: HierarchyBuilder
    validator: AssociationValidator
    orchestrator: SyncOrchestrator
    service: ReferenceDataService
    concept_source: SkosmosConceptSource | None = None
    feature_sources: list[OgcFeatureSource] = field(default_factory=list)

    def sync_units(self, cancel: threading.Event | None = None) -> SyncReport:
        if self.concept_source is None:
            raise ConfigError("unit sync is disabled")
        return self.orchestrator.sync_all(self.concept_source, cancel)

    def sync_features(self, cancel: threading.Event | None = None) -> list[SyncReport]:
        reports = []
        for source in self.feature_sources:
            if cancel is not None and cancel.is_set():
                break
            reports.append(self.orchestrator.sync_all(source, cancel))
        return reports

    def refresh_target(self, collection: str, item_id: str, force: bool = False) -> SyncReport:
        """Refresh one target item now, e.g. when its publisher announces a change."""
        for source in self.feature_sources:
            if source.collection == collection:
                return self.orchestrator.refresh_feature(source, item_id, force=force)
        raise ConfigError(f"no feature source for collection {collection!r}")

    def run_once(self, cancel: threading.Event | None = None) -> list[SyncReport]:
        """One scheduled run: units first, then every feature collection."""
        reports = []
        if self.concept_source is not None:
            reports.append(self.sync_units(cancel))
        reports.extend(self.sync_features(cancel))
        return reports

    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(self.run_once)

    def close(self) -> None:
        for source in [self.concept_source, *self.feature_sources]:
            if source is not None:
                source.close()


def build_refspine(
    settings: RefSpineSettings | None = None,
    *,
    store: ReferenceStore | None = None,
    clock: Clock | None = None,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    configure_logs: bool = False,
) -> RefSpine:
    """Wire store, builder, validator, orchestrator and service from ``settings``.

    The orchestrator and the service share one concept cache controller, so
    a scheduled refresh and an on-demand lookup of the same unit fetch once.
    """
    settings = settings or RefSpineSettings()
    if configure_logs:
        configure_logging(level=settings.log_level, json_format=settings.log_json)

    store = store or create_store(settings)
    clock = clock or SystemClock()
    policy = ExpiryPolicy.from_settings(settings)
    builder = HierarchyBuilder(store, clock, lang=settings.finto_language)
    validator = AssociationValidator(store, clock, api_base_url=settings.ogcapi_base_url or "")
    concept_cache = CacheController(ConceptCacheStorage(store), policy, clock)
    feature_cache = CacheController(FeatureCacheStorage(store), policy, clock)

    concept_source = None
    if settings.ucum_sync_enabled:
        concept_source = SkosmosConceptSource(
            settings.finto_api_url,
            settings.finto_vocabulary,
            lang=settings.finto_language,
            timeout=settings.http_timeout_seconds,
            api_key=settings.api_key,
            http_client=http_client,
        )

    feature_sources = []
    if settings.feature_sync_enabled and settings.ogcapi_base_url:
        feature_sources = [
            OgcFeatureSource(
                settings.ogcapi_base_url,
                collection,
                timeout=settings.http_timeout_seconds,
                api_key=settings.api_key,
                http_client=http_client,
            )
            for collection in settings.ogcapi_collections
        ]

    orchestrator = SyncOrchestrator(
        store,
        builder=builder,
        validator=validator,
        policy=policy,
        clock=clock,
        page_size=settings.page_size,
        retry=create_retry(settings),
        sleep=sleep,
        max_consecutive_page_failures=settings.max_consecutive_page_failures,
        sync_interval=settings.sync_interval,
        concept_cache=concept_cache,
        feature_cache=feature_cache,
    )
    service = ReferenceDataService(
        store,
        concept_source=concept_source,
        policy=policy,
        clock=clock,
        builder=builder,
        concept_cache=concept_cache,
    )
    log.info(
        "refspine.built",
        store=type(store).__name__,
        unit_sync=concept_source is not None,
        feature_collections=[s.collection for s in feature_sources],
    )
    return RefSpine(
        settings=settings,
        store=store,
        clock=clock,
        builder=builder,
        validator=validator,
        orchestrator=orchestrator,
        service=service,
        concept_source=concept_source,
        feature_sources=feature_sources,
    )


__all__ = ["RefSpine", "build_refspine", "create_store", "create_retry"]
