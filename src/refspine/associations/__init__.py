"""Geometry predicates and the association validator."""

from refspine.associations.geometry import Shape, parse_geometry, relate, relation_holds
from refspine.associations.validator import AssociationValidator, FanOutResult

__all__ = [
    "Shape",
    "parse_geometry",
    "relate",
    "relation_holds",
    "AssociationValidator",
    "FanOutResult",
]
