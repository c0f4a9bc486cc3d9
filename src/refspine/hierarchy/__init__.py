"""Hierarchy materialization over ``broader`` edges."""

from refspine.hierarchy.builder import HierarchyBuilder

__all__ = ["HierarchyBuilder"]
