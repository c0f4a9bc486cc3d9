"""
refspine - local mirror of external hierarchical reference data.

Keeps a unit-of-measure ontology (UCUM from a Skosmos vocabulary) and a
registry of geospatial feature associations (OGC API Features) close to a
high-volume observation store, so units, conversions and spatial context
resolve without a network call per read.

Packages:
    core          errors, logging, settings, timestamps, retry, hashing, ORM
    models        concept, association, cache entry, hierarchy, observation records
    store         ReferenceStore protocol; in-memory and SQLAlchemy backends
    hierarchy     HierarchyBuilder: trees and transitive closures per dimension
    conversion    ConversionResolver: factor chains through base units
    cache         CacheController: expiry, conditional refresh, single-flight
    sync          sources, SyncOrchestrator, SyncScheduler
    associations  geometry predicates and AssociationValidator
    service       ReferenceDataService read façade
    factory       build_refspine(settings)
"""

from refspine.factory import RefSpine, build_refspine
from refspine.service import ReferenceDataService

__version__ = "0.1.0"

__all__ = ["RefSpine", "ReferenceDataService", "build_refspine", "__version__"]
