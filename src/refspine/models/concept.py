"""
Concept - a node of an externally sourced reference vocabulary.

A concept is identified by its URI. Codes (notations such as ``Pa`` or
``mbar``) are not unique on their own. Hierarchy edges reference other
concepts by URI only; the transitive closures are derived and written by the
hierarchy builder, never taken from the source payload.

Manifesto:
    - **URI identity:** Every edge, tree and closure refers to URIs
    - **Derived data is derived:** Closures are recomputed, never hand-edited
    - **Content vs metadata:** Change detection fingerprints the content only,
      so cache bookkeeping never looks like a modification

Examples:
    >>> pa = Concept(uri="http://urn.fi/URN:NBN:fi:au:ucum:r102", code="Pa")
    >>> pa.classification.is_base_unit = True
    >>> Concept.from_dict(pa.to_dict()) == pa
    True

Tags:
    concept, skos, ucum, unit-of-measure, reference-data, refspine
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from refspine.core.errors import ValidationError
from refspine.core.hashing import content_hash
from refspine.core.timestamps import from_iso8601, to_iso8601
from refspine.models.cache import CacheMetadata
from refspine.models.enums import ComplianceStatus, ConversionOperation, UnitSystem

# Boost applied per recorded observation before saturation at 1.0
USAGE_BOOST = 0.1


@dataclass
class ConceptRef:
    """Edge to another concept (``broader`` / ``narrower``)."""

    uri: str
    code: str | None = None
    label: str | None = None
    distance: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "code": self.code, "label": self.label, "distance": self.distance}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConceptRef:
        return cls(
            uri=data["uri"],
            code=data.get("code"),
            label=data.get("label"),
            distance=int(data.get("distance", 1)),
        )


@dataclass
class Labels:
    """Multilingual labels.

    ``preferred`` holds exactly one value per language tag; ``alternative``
    is an ordered list of ``(lang, value)`` pairs.
    """

    preferred: dict[str, str] = field(default_factory=dict)
    alternative: list[tuple[str, str]] = field(default_factory=list)
    definition: dict[str, str] = field(default_factory=dict)

    def best(self, lang: str = "en") -> str | None:
        if lang in self.preferred:
            return self.preferred[lang]
        if self.preferred:
            return next(iter(self.preferred.values()))
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "preferred": dict(self.preferred),
            "alternative": [{"lang": lang, "value": value} for lang, value in self.alternative],
            "definition": dict(self.definition),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Labels:
        data = data or {}
        return cls(
            preferred=dict(data.get("preferred", {})),
            alternative=[(a["lang"], a["value"]) for a in data.get("alternative", [])],
            definition=dict(data.get("definition", {})),
        )


@dataclass
class Conversion:
    """Conversion of a unit onto its base unit.

    ``value_in_base = value <operation> factor``. ``factor`` is strictly
    positive and finite; for additive operations it is the offset.
    """

    factor: float
    base_uri: str
    base_code: str | None = None
    operation: ConversionOperation = ConversionOperation.MULTIPLY
    formula: str | None = None
    is_metric: bool = False

    def __post_init__(self) -> None:
        self.operation = ConversionOperation(self.operation)
        if isinstance(self.factor, bool) or not isinstance(self.factor, (int, float)):
            raise ValidationError("conversion factor must be a number", field="factor", value=self.factor)
        self.factor = float(self.factor)
        if not math.isfinite(self.factor) or self.factor <= 0:
            raise ValidationError(
                "conversion factor must be positive and finite",
                field="factor",
                value=self.factor,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "factor": self.factor,
            "base_uri": self.base_uri,
            "base_code": self.base_code,
            "operation": self.operation.value,
            "formula": self.formula,
            "is_metric": self.is_metric,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Conversion | None:
        if not data:
            return None
        return cls(
            factor=data["factor"],
            base_uri=data["base_uri"],
            base_code=data.get("base_code"),
            operation=ConversionOperation(data.get("operation", "multiply")),
            formula=data.get("formula"),
            is_metric=bool(data.get("is_metric", False)),
        )


@dataclass
class Classification:
    dimension: str | None = None
    quantity_kind: str | None = None
    system: UnitSystem = UnitSystem.OTHER
    categories: list[str] = field(default_factory=list)
    is_base_unit: bool = False
    is_arbitrary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension,
            "quantity_kind": self.quantity_kind,
            "system": self.system.value,
            "categories": list(self.categories),
            "is_base_unit": self.is_base_unit,
            "is_arbitrary": self.is_arbitrary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Classification:
        data = data or {}
        return cls(
            dimension=data.get("dimension"),
            quantity_kind=data.get("quantity_kind"),
            system=UnitSystem(data.get("system", "other")),
            categories=list(data.get("categories", [])),
            is_base_unit=bool(data.get("is_base_unit", False)),
            is_arbitrary=bool(data.get("is_arbitrary", False)),
        )


@dataclass
class Compliance:
    standard: str = "ISO 80000"
    compliant: bool = False
    part: str | None = None
    section: str | None = None
    status: ComplianceStatus = ComplianceStatus.ACCEPTED
    alternative_symbols: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "standard": self.standard,
            "compliant": self.compliant,
            "part": self.part,
            "section": self.section,
            "status": self.status.value,
            "alternative_symbols": list(self.alternative_symbols),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Compliance:
        data = data or {}
        return cls(
            standard=data.get("standard", "ISO 80000"),
            compliant=bool(data.get("compliant", False)),
            part=data.get("part"),
            section=data.get("section"),
            status=ComplianceStatus(data.get("status", "accepted")),
            alternative_symbols=list(data.get("alternative_symbols", [])),
        )


@dataclass
class UsageStats:
    """Usage counters. ``frequency_score`` only orders refresh work."""

    observation_count: int = 0
    datastream_count: int = 0
    last_used: datetime | None = None
    frequency_score: float = 0.0

    def decayed_score(self, now: datetime, half_life_days: float) -> float:
        if self.last_used is None or half_life_days <= 0:
            return self.frequency_score
        elapsed = max((now - self.last_used).total_seconds(), 0.0) / 86400.0
        return self.frequency_score * 0.5 ** (elapsed / half_life_days)

    def record(self, now: datetime, observations: int = 1, half_life_days: float = 7.0) -> None:
        """Decay the score to ``now`` then boost it for ``observations`` new uses."""
        score = self.decayed_score(now, half_life_days)
        keep = (1.0 - USAGE_BOOST) ** max(observations, 0)
        self.frequency_score = min(1.0, max(0.0, 1.0 - (1.0 - score) * keep))
        self.observation_count += observations
        self.last_used = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "observation_count": self.observation_count,
            "datastream_count": self.datastream_count,
            "last_used": to_iso8601(self.last_used),
            "frequency_score": self.frequency_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UsageStats:
        data = data or {}
        return cls(
            observation_count=int(data.get("observation_count", 0)),
            datastream_count=int(data.get("datastream_count", 0)),
            last_used=from_iso8601(data.get("last_used")),
            frequency_score=float(data.get("frequency_score", 0.0)),
        )


@dataclass
class Concept:
    uri: str
    code: str
    labels: Labels = field(default_factory=Labels)
    broader: list[ConceptRef] = field(default_factory=list)
    narrower: list[ConceptRef] = field(default_factory=list)
    broader_transitive: list[str] = field(default_factory=list)
    narrower_transitive: list[str] = field(default_factory=list)
    conversion: Conversion | None = None
    classification: Classification = field(default_factory=Classification)
    compliance: Compliance = field(default_factory=Compliance)
    cache: CacheMetadata = field(default_factory=CacheMetadata)
    usage: UsageStats = field(default_factory=UsageStats)
    code_case_sensitive: str | None = None
    last_modified: datetime | None = None
    version: int = 0

    @property
    def dimension(self) -> str | None:
        return self.classification.dimension

    @property
    def is_base_unit(self) -> bool:
        return self.classification.is_base_unit

    @property
    def broader_uris(self) -> list[str]:
        return [ref.uri for ref in self.broader]

    def label(self, lang: str = "en") -> str | None:
        return self.labels.best(lang)

    def content_dict(self) -> dict[str, Any]:
        """Source-owned content: excludes cache metadata, usage, closures and timestamps."""
        data = self.to_dict()
        for derived in ("cache", "usage", "broader_transitive", "narrower_transitive", "last_modified", "version"):
            data.pop(derived)
        return data

    def content_fingerprint(self) -> str:
        return content_hash(self.content_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "code": self.code,
            "code_case_sensitive": self.code_case_sensitive,
            "labels": self.labels.to_dict(),
            "broader": [ref.to_dict() for ref in self.broader],
            "narrower": [ref.to_dict() for ref in self.narrower],
            "broader_transitive": sorted(self.broader_transitive),
            "narrower_transitive": sorted(self.narrower_transitive),
            "conversion": self.conversion.to_dict() if self.conversion else None,
            "classification": self.classification.to_dict(),
            "compliance": self.compliance.to_dict(),
            "cache": self.cache.to_dict(),
            "usage": self.usage.to_dict(),
            "last_modified": to_iso8601(self.last_modified),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Concept:
        return cls(
            uri=data["uri"],
            code=data["code"],
            code_case_sensitive=data.get("code_case_sensitive"),
            labels=Labels.from_dict(data.get("labels")),
            broader=[ConceptRef.from_dict(r) for r in data.get("broader", [])],
            narrower=[ConceptRef.from_dict(r) for r in data.get("narrower", [])],
            broader_transitive=sorted(data.get("broader_transitive", [])),
            narrower_transitive=sorted(data.get("narrower_transitive", [])),
            conversion=Conversion.from_dict(data.get("conversion")),
            classification=Classification.from_dict(data.get("classification")),
            compliance=Compliance.from_dict(data.get("compliance")),
            cache=CacheMetadata.from_dict(data.get("cache")),
            usage=UsageStats.from_dict(data.get("usage")),
            last_modified=from_iso8601(data.get("last_modified")),
            version=int(data.get("version", 0)),
        )
