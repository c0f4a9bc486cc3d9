"""Materialized hierarchy of one dimension."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from refspine.core.timestamps import from_iso8601, to_iso8601


@dataclass
class HierarchyNode:
    """One concept's position in a dimension tree.

    ``path`` joins codes from a root along the first parent found breadth
    first; ``ancestors`` lists every ancestor URI nearest first.
    """

    uri: str
    code: str
    label: str | None
    depth: int
    path: str
    parent: str | None = None
    ancestors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "code": self.code,
            "label": self.label,
            "depth": self.depth,
            "path": self.path,
            "parent": self.parent,
            "ancestors": list(self.ancestors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HierarchyNode:
        return cls(
            uri=data["uri"],
            code=data["code"],
            label=data.get("label"),
            depth=int(data["depth"]),
            path=data["path"],
            parent=data.get("parent"),
            ancestors=list(data.get("ancestors", [])),
        )


@dataclass
class HierarchyTree:
    """Roots, child adjacency and the flattened node list of one dimension.

    Nodes are in breadth-first order. Trees reference concepts by URI only.
    """

    dimension: str
    roots: list[str] = field(default_factory=list)
    children: dict[str, list[str]] = field(default_factory=dict)
    nodes: list[HierarchyNode] = field(default_factory=list)
    built_at: datetime | None = None

    @classmethod
    def empty(cls, dimension: str) -> HierarchyTree:
        return cls(dimension=dimension)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def node(self, uri: str) -> HierarchyNode | None:
        for node in self.nodes:
            if node.uri == uri:
                return node
        return None

    def as_nested(self) -> list[dict[str, Any]]:
        """Render the tree as nested ``{"uri", "code", "children"}`` dicts."""
        by_uri = {n.uri: n for n in self.nodes}

        def render(uri: str, seen: frozenset[str]) -> dict[str, Any]:
            node = by_uri[uri]
            kids = [c for c in self.children.get(uri, []) if c not in seen]
            return {
                "uri": uri,
                "code": node.code,
                "label": node.label,
                "children": [render(c, seen | {c}) for c in kids],
            }

        return [render(root, frozenset({root})) for root in self.roots]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension,
            "roots": list(self.roots),
            "children": {k: list(v) for k, v in self.children.items()},
            "nodes": [n.to_dict() for n in self.nodes],
            "built_at": to_iso8601(self.built_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HierarchyTree:
        return cls(
            dimension=data["dimension"],
            roots=list(data.get("roots", [])),
            children={k: list(v) for k, v in data.get("children", {}).items()},
            nodes=[HierarchyNode.from_dict(n) for n in data.get("nodes", [])],
            built_at=from_iso8601(data.get("built_at")),
        )


@dataclass(frozen=True, slots=True)
class Closures:
    """Transitive closures computed for one concept during a rebuild.

    ``version`` is the concept version the closures were computed from; the
    commit is refused if the concept has been written since. ``None`` skips
    the check.
    """

    broader_transitive: tuple[str, ...]
    narrower_transitive: tuple[str, ...]
    version: int | None = None
