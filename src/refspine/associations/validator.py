"""
Association validator - derives, scores and re-checks spatial associations.

Manifesto:
    - **Geometry decides:** The relation comes from the cached geometries,
      never from a caller's claim
    - **Never delete:** A relation that stops holding moves the association
      to ``invalid`` and records why; history stays queryable
    - **No auto-correction:** A mismatch is reported, not silently rewritten
      to the newly computed relation

Architecture:
    ::

        evaluate(feature, entry)  ─▶ relate(shape, shape) ─▶ Association
                                       │                     confidence =
                                       ▼                     strength × mean quality
                                 None → NoSpatialRelationError

        revalidate(association)   ─▶ relate again ─▶ holds?  ─▶ valid
                                                    mismatch ─▶ active → invalid
                                                                + issue

        on_target_refreshed(entry)  (sync fan-out)
              └── every association pointing at entry:
                    synchronization.cache ← entry, next_scheduled_sync advanced,
                    revalidated when the geometry changed

Examples:
    >>> validator = AssociationValidator(store, api_base_url="https://ogc.example.org")
    >>> assoc = validator.establish(lake, ("watersheds", "ws-7"))
    >>> assoc.spatial_relation, assoc.confidence
    (<SpatialRelation.WITHIN: 'within'>, 0.98)

Tags:
    associations, validation, confidence, provenance, geometry, refspine
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime

from refspine.associations.geometry import (
    RELATION_STRENGTH,
    parse_geometry,
    relate,
    relation_holds,
)
from refspine.cache import FeatureCacheStorage
from refspine.core.errors import (
    ConcurrentModificationError,
    NoSpatialRelationError,
    RelationshipMismatchError,
    SourceNotFoundError,
    ValidationError,
)
from refspine.core.logging import get_logger
from refspine.core.timestamps import Clock, SystemClock, next_modified
from refspine.models import (
    Association,
    AssociationStatus,
    CacheEntry,
    CacheMetadata,
    FeatureOfInterest,
    Provenance,
    QualityMetrics,
    SynchronizationBlock,
    SyncFrequency,
    TargetRef,
    ValidationBlock,
)
from refspine.store import ReferenceStore

log = get_logger(__name__)

CONFIDENCE_DIGITS = 4
GEOMETRY_UNAVAILABLE = "geometry unavailable"


@dataclass
class FanOutResult:
    """What a target refresh did to the associations pointing at it."""

    updated: int = 0
    revalidated: int = 0
    invalidated: int = 0


class AssociationValidator:
    def __init__(
        self,
        store: ReferenceStore,
        clock: Clock | None = None,
        *,
        api_base_url: str = "",
        frequency: SyncFrequency = SyncFrequency.DAILY,
        cas_attempts: int = 3,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.api_base_url = api_base_url
        self.frequency = frequency
        self.cas_attempts = cas_attempts

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #

    def evaluate(
        self,
        source_feature: FeatureOfInterest,
        target_entry: CacheEntry,
        method: str = "geometry",
        agent: str = "refspine",
        quality: QualityMetrics | None = None,
        *,
        role: str | None = None,
        thematic_label: str | None = None,
        valid_from: datetime | None = None,
        valid_to: datetime | None = None,
    ) -> Association:
        """Compute the relation between a local feature and a cached external one.

        Confidence is the relation's strength times the mean of the quality
        metrics (the feature's own when ``quality`` is not given), rounded to
        four digits. The result is not persisted; see ``establish``.

        Raises:
            ValidationError: either geometry is missing or malformed
            NoSpatialRelationError: the geometries are disjoint
        """
        source_shape = parse_geometry(source_feature.geometry)
        target_shape = parse_geometry(target_entry.geometry)
        relation = relate(source_shape, target_shape)
        target = f"{target_entry.collection}/{target_entry.item_id}"
        if relation is None:
            raise NoSpatialRelationError(
                f"{source_feature.id} is disjoint from {target}"
            ).with_context(uri=target)

        quality = quality or source_feature.quality
        confidence = round(RELATION_STRENGTH[relation] * quality.mean(), CONFIDENCE_DIGITS)
        now = self.clock.now()
        log.debug(
            "association.evaluated",
            feature=source_feature.id,
            target=target,
            relation=relation.value,
            confidence=confidence,
        )
        return Association(
            source_feature_id=source_feature.id,
            target=TargetRef(
                api_base_url=self.api_base_url,
                collection=target_entry.collection,
                item_id=target_entry.item_id,
                href=target_entry.href,
            ),
            spatial_relation=relation,
            confidence=confidence,
            provenance=Provenance(method=method, agent=agent, established_at=now, quality=quality),
            role=role,
            thematic_label=thematic_label,
            valid_from=valid_from,
            valid_to=valid_to,
            synchronization=SynchronizationBlock(
                cache=_cache_block(target_entry),
                frequency=self.frequency,
                next_scheduled_sync=now + self.frequency.interval,
            ),
            validation=ValidationBlock(last_validated=now, is_valid=True),
            last_modified=now,
        )

    def establish(
        self,
        source_feature: FeatureOfInterest,
        target_key: tuple[str, str],
        method: str = "geometry",
        agent: str = "refspine",
        quality: QualityMetrics | None = None,
        **kwargs,
    ) -> Association:
        """Evaluate against the cached target, store the association and register
        the feature as a dependent of the cache entry."""
        entry = self.store.get_cache_entry(*target_key)
        if entry is None:
            raise SourceNotFoundError(f"{target_key[0]}/{target_key[1]} is not cached")
        association = self.evaluate(source_feature, entry, method, agent, quality, **kwargs)
        self.store.put_feature(source_feature)

        current = self.store.get_association(association.key)
        if current is not None:
            association.last_modified = next_modified(current.last_modified, association.last_modified)
        saved = self.store.upsert_association(
            association, current.version if current else None
        )
        FeatureCacheStorage(self.store).add_dependent(target_key, source_feature.id)
        log.info(
            "association.established",
            feature=source_feature.id,
            target=f"{target_key[0]}/{target_key[1]}",
            relation=saved.spatial_relation.value,
            confidence=saved.confidence,
        )
        return saved

    # ------------------------------------------------------------------ #
    # Revalidation
    # ------------------------------------------------------------------ #

    def revalidate(self, association: Association) -> bool:
        """Re-check the declared relation against the current cached geometries.

        Returns True when it still holds. On a mismatch an active association
        becomes ``invalid`` and the mismatch is appended to its issues; it is
        never deleted and its relation is left as declared. A missing geometry
        records an issue and returns False without changing the status.
        """
        saved = self._update(association.key, lambda current, now: self._check(current, now))
        return saved.validation.is_valid

    def on_target_refreshed(self, entry: CacheEntry, geometry_changed: bool) -> FanOutResult:
        """Carry a refreshed cache entry to the associations of its dependents.

        ``entry.dependents`` is filled by ``establish``; a dependent whose
        association has since been removed is skipped.
        """
        result = FanOutResult()
        for feature_id in entry.dependents:
            association = self.store.get_association((feature_id, entry.collection, entry.item_id))
            if association is None:
                continue

            def apply(current: Association, now: datetime) -> Association:
                updated = replace(
                    current,
                    synchronization=replace(
                        current.synchronization,
                        cache=_cache_block(entry),
                        next_scheduled_sync=now + current.synchronization.frequency.interval,
                    ),
                )
                if geometry_changed:
                    updated = self._check(updated, now)
                return updated

            was_active = association.status == AssociationStatus.ACTIVE
            saved = self._update(association.key, apply)
            result.updated += 1
            if geometry_changed:
                result.revalidated += 1
                if was_active and saved.status == AssociationStatus.INVALID:
                    result.invalidated += 1
        return result

    def _check(self, association: Association, now: datetime) -> Association:
        feature = self.store.get_feature(association.source_feature_id)
        entry = self.store.get_cache_entry(association.target.collection, association.target.item_id)
        issues = list(association.validation.issues)
        try:
            computed = relate(
                parse_geometry(feature.geometry if feature else None),
                parse_geometry(entry.geometry if entry else None),
            )
        except ValidationError as exc:
            issues.append(f"{GEOMETRY_UNAVAILABLE}: {exc.message}")
            log.warning("association.geometry_unavailable", key=association.key, error=exc.message)
            return replace(
                association,
                validation=ValidationBlock(last_validated=now, is_valid=False, issues=issues),
            )

        declared = association.spatial_relation
        if relation_holds(declared, computed):
            return replace(
                association,
                validation=ValidationBlock(last_validated=now, is_valid=True, issues=issues),
            )

        mismatch = RelationshipMismatchError(
            declared.value,
            computed.value if computed else None,
            f"{association.target.collection}/{association.target.item_id}",
        )
        issues.append(mismatch.message)
        status = association.status
        if status == AssociationStatus.ACTIVE:
            status = AssociationStatus.INVALID
        log.warning(
            "association.invalidated",
            key=association.key,
            declared=declared.value,
            computed=computed.value if computed else None,
        )
        return replace(
            association,
            status=status,
            validation=ValidationBlock(last_validated=now, is_valid=False, issues=issues),
        )

    def _update(
        self,
        key: tuple[str, str, str],
        apply: Callable[[Association, datetime], Association],
    ) -> Association:
        for _ in range(self.cas_attempts):
            current = self.store.get_association(key)
            if current is None:
                raise SourceNotFoundError(f"association {key} does not exist")
            now = self.clock.now()
            updated = apply(current, now)
            updated.last_modified = next_modified(current.last_modified, now)
            try:
                return self.store.upsert_association(updated, current.version)
            except ConcurrentModificationError:
                log.debug("association.write_conflict", key=key)
        raise ConcurrentModificationError(str(key), None, "<contended>")


def _cache_block(entry: CacheEntry) -> CacheMetadata:
    return CacheMetadata(
        last_fetched=entry.last_fetched,
        expiry=entry.expiry,
        change_token=entry.change_token,
        sync_status=entry.sync_status,
        last_error=entry.last_error,
        retry_after=entry.retry_after,
    )


__all__ = ["AssociationValidator", "FanOutResult"]
