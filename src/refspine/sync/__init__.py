"""External sources, payload transforms, the sync orchestrator and its scheduler."""

from refspine.sync.http import HttpSource, OgcFeatureSource, SkosmosConceptSource
from refspine.sync.orchestrator import ItemError, PageFailure, SyncOrchestrator, SyncReport
from refspine.sync.scheduler import SyncScheduler
from refspine.sync.sources import (
    ConceptSource,
    FeatureSource,
    Page,
    ParsedFeature,
    StaticConceptSource,
    concept_fetcher,
    feature_fetcher,
)
from refspine.sync.transform import concept_from_record, concept_from_skosmos

__all__ = [
    "ConceptSource",
    "FeatureSource",
    "Page",
    "ParsedFeature",
    "StaticConceptSource",
    "concept_fetcher",
    "feature_fetcher",
    "HttpSource",
    "SkosmosConceptSource",
    "OgcFeatureSource",
    "SyncOrchestrator",
    "SyncReport",
    "PageFailure",
    "ItemError",
    "SyncScheduler",
    "concept_from_record",
    "concept_from_skosmos",
]
