"""
Read façade for observation stores.

``ReferenceDataService`` is what an observation pipeline talks to: unit
lookup, conversion, hierarchy navigation and association lookup, all served
from the local store. With a concept source configured, a missing or expired
unit is refreshed through the cache controller; when that refresh fails the
stored unit is served as-is and a stale-data warning is logged.

Examples:
    >>> service = ReferenceDataService(store, concept_source=finto)
    >>> service.convert(1.0, ATM, PASCAL)
    101325.0
    >>> service.get_ancestors(MILLIBAR)
    ['http://urn.fi/URN:NBN:fi:au:ucum:r1', 'http://urn.fi/URN:NBN:fi:au:ucum:r102']

Tags:
    service, facade, units, conversion, associations, refspine
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from refspine.cache import CacheController, ConceptCacheStorage, ExpiryPolicy, stale_warning
from refspine.conversion import ConversionResolver
from refspine.core.errors import (
    ConcurrentModificationError,
    FetchError,
    HierarchyError,
    SourceNotFoundError,
    UnknownConceptError,
)
from refspine.core.logging import get_logger
from refspine.core.timestamps import Clock, SystemClock
from refspine.hierarchy import HierarchyBuilder
from refspine.models import Association, Concept, HierarchyTree, ObservationResult, UsageStats
from refspine.store import ReferenceStore
from refspine.sync.sources import ConceptSource, concept_fetcher

log = get_logger(__name__)


class ReferenceDataService:
    def __init__(
        self,
        store: ReferenceStore,
        *,
        concept_source: ConceptSource | None = None,
        policy: ExpiryPolicy | None = None,
        clock: Clock | None = None,
        builder: HierarchyBuilder | None = None,
        usage_half_life_days: float = 7.0,
        cas_attempts: int = 3,
        concept_cache: CacheController | None = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.concept_source = concept_source
        self.builder = builder or HierarchyBuilder(store, self.clock)
        self.resolver = ConversionResolver(store)
        self.concept_cache = concept_cache or CacheController(ConceptCacheStorage(store), policy, self.clock)
        self.usage_half_life_days = usage_half_life_days
        self.cas_attempts = cas_attempts

    # ------------------------------------------------------------------ #
    # Units
    # ------------------------------------------------------------------ #

    def resolve_unit(self, uri: str) -> Concept | None:
        """The unit with ``uri``, refreshed first if it is missing or expired.

        Returns None when the unit is neither stored nor known to the source.

        Raises:
            FetchError: the unit is not stored and the source could not be reached
        """
        concept = self.store.get_concept(uri)
        if self.concept_source is None:
            return concept
        now = self.clock.now()
        if concept is not None and (concept.cache.is_fresh(now) or concept.cache.in_error_backoff(now)):
            return concept

        try:
            entry = self.concept_cache.get_or_fetch(
                uri,
                concept_fetcher(self.concept_source, uri),
                category=concept.dimension if concept else None,
            )
        except FetchError as exc:
            if isinstance(exc.cause, SourceNotFoundError):
                log.info("service.unit_unknown", uri=uri)
                return None
            raise

        warning = stale_warning(entry)
        if warning is not None:
            log.warning("service.serving_stale", uri=uri, reason=str(warning))
        elif concept is None or entry.content_hash != concept.content_fingerprint():
            self._rebuild(uri, concept)
        return self.store.get_concept(uri)

    def resolve_unit_by_code(self, code: str) -> Concept | None:
        """Unit by UCUM code, matching the case-insensitive code before the case-sensitive one."""
        matches = self.store.find_concepts_by_code(code)
        if not matches:
            matches = [c for c in self.store.list_concepts() if c.code_case_sensitive == code]
        if not matches:
            return None
        return self.resolve_unit(matches[0].uri) or matches[0]

    def _rebuild(self, uri: str, previous: Concept | None) -> None:
        current = self.store.get_concept(uri)
        for dimension in sorted(self.builder.affected_dimensions(previous, current)):
            try:
                self.builder.rebuild(dimension)
            except HierarchyError as exc:
                # the previous tree stays; the next sync pass reports it
                log.warning("service.rebuild_failed", dimension=dimension, error=str(exc))

    # ------------------------------------------------------------------ #
    # Conversion
    # ------------------------------------------------------------------ #

    def convert(self, value: float, from_uri: str, to_uri: str) -> float:
        return self.resolver.convert(value, from_uri, to_uri).value

    def convert_result(self, result: ObservationResult | Any, from_uri: str, to_uri: str) -> float:
        """Convert an observation result; raw values are normalized first."""
        if not isinstance(result, ObservationResult):
            result = ObservationResult.from_raw(result)
        return self.resolver.convert_result(result, from_uri, to_uri).value

    def compatible_units(self, uri: str) -> list[str]:
        return self.resolver.compatible_units(uri)

    # ------------------------------------------------------------------ #
    # Hierarchy
    # ------------------------------------------------------------------ #

    def get_tree(self, dimension: str) -> HierarchyTree:
        return self.builder.get_tree(dimension)

    def get_ancestors(self, uri: str) -> list[str]:
        return self.builder.ancestors(uri)

    def get_descendants(self, uri: str) -> list[str]:
        return self.builder.descendants(uri)

    # ------------------------------------------------------------------ #
    # Associations
    # ------------------------------------------------------------------ #

    def resolve_association(
        self,
        foi_id: str,
        at: datetime | None = None,
        include_inactive: bool = False,
    ) -> list[Association]:
        """Associations of a feature of interest, most confident first.

        By default only associations that are active and valid at ``at``
        (now when omitted) are returned.
        """
        at = at or self.clock.now()
        associations = self.store.list_associations(foi_id)
        if not include_inactive:
            associations = [a for a in associations if a.is_current(at)]
        return sorted(associations, key=lambda a: (-a.confidence, a.target.collection, a.target.item_id))

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    def record_usage(self, uri: str, observations: int = 1) -> UsageStats:
        """Count ``observations`` new uses of a unit and boost its frequency score.

        Raises:
            UnknownConceptError: the unit is not stored
        """
        for _ in range(self.cas_attempts):
            current = self.store.get_concept(uri)
            if current is None:
                raise UnknownConceptError(uri, uri, uri)
            now = self.clock.now()
            usage = replace(current.usage)
            usage.record(now, observations, self.usage_half_life_days)
            try:
                return self.store.upsert_concept(replace(current, usage=usage), current.version).usage
            except ConcurrentModificationError:
                log.debug("service.usage_conflict", uri=uri)
        raise ConcurrentModificationError(uri, None, "<contended>")


__all__ = ["ReferenceDataService"]
