"""Enumerations used across the reference-data model."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum


class ConversionOperation(str, Enum):
    """How a unit's value maps onto its base unit.

    ``value_in_base = value <op> factor``.
    """

    MULTIPLY = "multiply"
    DIVIDE = "divide"
    ADD = "add"
    SUBTRACT = "subtract"

    @property
    def inverse(self) -> ConversionOperation:
        return _INVERSE[self]

    @property
    def is_additive(self) -> bool:
        return self in (ConversionOperation.ADD, ConversionOperation.SUBTRACT)


_INVERSE = {
    ConversionOperation.MULTIPLY: ConversionOperation.DIVIDE,
    ConversionOperation.DIVIDE: ConversionOperation.MULTIPLY,
    ConversionOperation.ADD: ConversionOperation.SUBTRACT,
    ConversionOperation.SUBTRACT: ConversionOperation.ADD,
}


class UnitSystem(str, Enum):
    SI = "SI"
    SI_DERIVED = "SI-derived"
    IMPERIAL = "imperial"
    US_CUSTOMARY = "US-customary"
    OTHER = "other"


class ComplianceStatus(str, Enum):
    ACCEPTED = "accepted"
    DEPRECATED = "deprecated"
    OBSOLETE = "obsolete"


class SyncStatus(str, Enum):
    """Freshness state of a cached record."""

    CURRENT = "current"
    STALE = "stale"
    ERROR = "error"


class SpatialRelation(str, Enum):
    WITHIN = "within"
    CONTAINS = "contains"
    INTERSECTS = "intersects"
    TOUCHES = "touches"
    OVERLAPS = "overlaps"
    PART_OF = "part_of"


class AssociationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"
    INVALID = "invalid"


class SyncFrequency(str, Enum):
    """Refresh cadence of an external association target."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def interval(self) -> timedelta:
        return _FREQUENCY_INTERVALS[self]


_FREQUENCY_INTERVALS = {
    SyncFrequency.HOURLY: timedelta(hours=1),
    SyncFrequency.DAILY: timedelta(days=1),
    SyncFrequency.WEEKLY: timedelta(weeks=1),
    SyncFrequency.MONTHLY: timedelta(days=30),
}


class ResultType(str, Enum):
    """Variant tag of an observation result."""

    NUMERIC = "numeric"
    STRING = "string"
    BOOLEAN = "boolean"
    OBJECT = "object"
