"""
Association - a derived link between a local feature and an external one.

Associations are created by the association validator from geometry, carry
provenance and a confidence score, and are kept in step with the external
feature through their synchronization block. They are never deleted when the
relationship stops holding; they move to ``invalid`` and record the issue.

Examples:
    >>> assoc.key
    ('lake-42', 'watersheds', 'ws-7')
    >>> assoc.status
    <AssociationStatus.ACTIVE: 'active'>

Tags:
    association, provenance, confidence, ogc-api-features, refspine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from refspine.core.timestamps import from_iso8601, to_iso8601
from refspine.models.cache import CacheMetadata
from refspine.models.enums import AssociationStatus, SpatialRelation, SyncFrequency
from refspine.models.feature import QualityMetrics


@dataclass
class TargetRef:
    """Pointer to an item of an OGC API Features collection."""

    api_base_url: str
    collection: str
    item_id: str
    href: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_base_url": self.api_base_url,
            "collection": self.collection,
            "item_id": self.item_id,
            "href": self.href,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TargetRef:
        return cls(
            api_base_url=data["api_base_url"],
            collection=data["collection"],
            item_id=data["item_id"],
            href=data.get("href"),
        )


@dataclass
class Provenance:
    method: str
    agent: str
    established_at: datetime
    quality: QualityMetrics = field(default_factory=QualityMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "agent": self.agent,
            "established_at": to_iso8601(self.established_at),
            "quality": self.quality.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Provenance:
        return cls(
            method=data["method"],
            agent=data["agent"],
            established_at=from_iso8601(data["established_at"]),
            quality=QualityMetrics.from_dict(data.get("quality")),
        )


@dataclass
class SynchronizationBlock:
    cache: CacheMetadata = field(default_factory=CacheMetadata)
    frequency: SyncFrequency = SyncFrequency.DAILY
    next_scheduled_sync: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cache": self.cache.to_dict(),
            "frequency": self.frequency.value,
            "next_scheduled_sync": to_iso8601(self.next_scheduled_sync),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SynchronizationBlock:
        data = data or {}
        return cls(
            cache=CacheMetadata.from_dict(data.get("cache")),
            frequency=SyncFrequency(data.get("frequency", "daily")),
            next_scheduled_sync=from_iso8601(data.get("next_scheduled_sync")),
        )


@dataclass
class ValidationBlock:
    last_validated: datetime | None = None
    is_valid: bool = True
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_validated": to_iso8601(self.last_validated),
            "is_valid": self.is_valid,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ValidationBlock:
        data = data or {}
        return cls(
            last_validated=from_iso8601(data.get("last_validated")),
            is_valid=bool(data.get("is_valid", True)),
            issues=list(data.get("issues", [])),
        )


@dataclass
class Association:
    source_feature_id: str
    target: TargetRef
    spatial_relation: SpatialRelation
    confidence: float
    provenance: Provenance
    role: str | None = None
    thematic_label: str | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    synchronization: SynchronizationBlock = field(default_factory=SynchronizationBlock)
    status: AssociationStatus = AssociationStatus.ACTIVE
    validation: ValidationBlock = field(default_factory=ValidationBlock)
    last_modified: datetime | None = None
    version: int = 0

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_feature_id, self.target.collection, self.target.item_id)

    def is_current(self, at: datetime) -> bool:
        """Active and inside its validity window at ``at``."""
        if self.status != AssociationStatus.ACTIVE:
            return False
        if self.valid_from is not None and at < self.valid_from:
            return False
        if self.valid_to is not None and at >= self.valid_to:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_feature_id": self.source_feature_id,
            "target": self.target.to_dict(),
            "spatial_relation": self.spatial_relation.value,
            "confidence": self.confidence,
            "provenance": self.provenance.to_dict(),
            "role": self.role,
            "thematic_label": self.thematic_label,
            "valid_from": to_iso8601(self.valid_from),
            "valid_to": to_iso8601(self.valid_to),
            "synchronization": self.synchronization.to_dict(),
            "status": self.status.value,
            "validation": self.validation.to_dict(),
            "last_modified": to_iso8601(self.last_modified),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Association:
        return cls(
            source_feature_id=data["source_feature_id"],
            target=TargetRef.from_dict(data["target"]),
            spatial_relation=SpatialRelation(data["spatial_relation"]),
            confidence=float(data["confidence"]),
            provenance=Provenance.from_dict(data["provenance"]),
            role=data.get("role"),
            thematic_label=data.get("thematic_label"),
            valid_from=from_iso8601(data.get("valid_from")),
            valid_to=from_iso8601(data.get("valid_to")),
            synchronization=SynchronizationBlock.from_dict(data.get("synchronization")),
            status=AssociationStatus(data.get("status", "active")),
            validation=ValidationBlock.from_dict(data.get("validation")),
            last_modified=from_iso8601(data.get("last_modified")),
            version=int(data.get("version", 0)),
        )
