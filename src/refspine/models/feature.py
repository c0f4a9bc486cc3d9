"""Local features of interest and their quality metrics."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from refspine.core.errors import ValidationError


@dataclass
class QualityMetrics:
    """Quality of a feature's geometry, each metric in [0, 1]."""

    accuracy: float = 1.0
    completeness: float = 1.0
    consistency: float = 1.0

    def __post_init__(self) -> None:
        for name in ("accuracy", "completeness", "consistency"):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be within [0, 1]", field=name, value=value)
            setattr(self, name, value)

    def mean(self) -> float:
        return (self.accuracy + self.completeness + self.consistency) / 3.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "completeness": self.completeness,
            "consistency": self.consistency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QualityMetrics:
        data = data or {}
        return cls(
            accuracy=data.get("accuracy", 1.0),
            completeness=data.get("completeness", 1.0),
            consistency=data.get("consistency", 1.0),
        )


@dataclass
class FeatureOfInterest:
    """A locally owned feature with a GeoJSON geometry."""

    id: str
    name: str
    geometry: dict[str, Any] | None = None
    quality: QualityMetrics = field(default_factory=QualityMetrics)
    description: str | None = None
    feature_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "geometry": self.geometry,
            "quality": self.quality.to_dict(),
            "description": self.description,
            "feature_type": self.feature_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureOfInterest:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            geometry=data.get("geometry"),
            quality=QualityMetrics.from_dict(data.get("quality")),
            description=data.get("description"),
            feature_type=data.get("feature_type"),
        )
