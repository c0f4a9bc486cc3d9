"""Reference-data records: concepts, associations, cache entries, trees."""

from refspine.models.association import (
    Association,
    Provenance,
    SynchronizationBlock,
    TargetRef,
    ValidationBlock,
)
from refspine.models.cache import CacheEntry, CacheMetadata
from refspine.models.concept import (
    Classification,
    Compliance,
    Concept,
    ConceptRef,
    Conversion,
    Labels,
    UsageStats,
)
from refspine.models.enums import (
    AssociationStatus,
    ComplianceStatus,
    ConversionOperation,
    ResultType,
    SpatialRelation,
    SyncFrequency,
    SyncStatus,
    UnitSystem,
)
from refspine.models.feature import FeatureOfInterest, QualityMetrics
from refspine.models.hierarchy import Closures, HierarchyNode, HierarchyTree
from refspine.models.observation import ObservationResult

__all__ = [
    "Association",
    "Provenance",
    "SynchronizationBlock",
    "TargetRef",
    "ValidationBlock",
    "CacheEntry",
    "CacheMetadata",
    "Classification",
    "Compliance",
    "Concept",
    "ConceptRef",
    "Conversion",
    "Labels",
    "UsageStats",
    "AssociationStatus",
    "ComplianceStatus",
    "ConversionOperation",
    "ResultType",
    "SpatialRelation",
    "SyncFrequency",
    "SyncStatus",
    "UnitSystem",
    "FeatureOfInterest",
    "QualityMetrics",
    "Closures",
    "HierarchyNode",
    "HierarchyTree",
    "ObservationResult",
]
