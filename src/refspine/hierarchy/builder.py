"""
Hierarchy builder - materializes dimension trees and transitive closures.

External vocabularies describe hierarchy one edge at a time (``broader``).
The builder turns those edges into a queryable tree per dimension and
recomputes ``broader_transitive`` / ``narrower_transitive`` for every member,
all in one atomic store commit.

Manifesto:
    - **Recompute, never patch:** Closures are rebuilt in full from edges
    - **All or nothing:** A cycle aborts the rebuild; the previous tree and
      closures stay exactly as they were
    - **DAGs are fine:** A concept with two parents is visited once;
      its closure is the union over every parent path

Architecture:
    ::

        store.list_concepts()               all concepts (edges may cross dimensions)
              │
              ▼
        _find_cycle()  ──cycle──▶  HierarchyCycleError(chain)   (nothing written)
              │
              ▼
        _closure(broader)  _closure(inverse)    BFS per member, distance-annotated
              │
              ▼
        BFS from roots restricted to members → nodes (depth, path, ancestors)
              │
              ▼
        store.commit_hierarchy(tree, closures)  single commit

Examples:
    >>> builder = HierarchyBuilder(store)
    >>> tree = builder.rebuild("pressure")
    >>> tree.node(MBAR).path
    'Pa/atm/mbar'

Tags:
    hierarchy, transitive-closure, bfs, dag, skos, refspine
"""

from __future__ import annotations

from collections import deque

from refspine.core.errors import ConcurrentModificationError, HierarchyCycleError, HierarchyError
from refspine.core.logging import get_logger
from refspine.core.timestamps import Clock, SystemClock
from refspine.models import Closures, Concept, HierarchyNode, HierarchyTree
from refspine.store import ReferenceStore

log = get_logger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


class HierarchyBuilder:
    def __init__(
        self,
        store: ReferenceStore,
        clock: Clock | None = None,
        lang: str = "en",
        commit_attempts: int = 3,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.lang = lang
        self.commit_attempts = commit_attempts

    # ------------------------------------------------------------------ #
    # Rebuild
    # ------------------------------------------------------------------ #

    def rebuild(self, dimension: str) -> HierarchyTree:
        """Rebuild the tree and closures of ``dimension``.

        A concept written while the closures were being computed makes the
        commit fail as a whole; the rebuild then starts over from the new state.

        Raises:
            HierarchyCycleError: a member reaches itself through ``broader``
                edges. Nothing is written.
        """
        for _ in range(self.commit_attempts):
            try:
                return self._rebuild(dimension)
            except ConcurrentModificationError as exc:
                log.info("hierarchy.commit_conflict", dimension=dimension, uri=exc.key)
        raise ConcurrentModificationError(dimension, None, "<contended>")

    def _rebuild(self, dimension: str) -> HierarchyTree:
        concepts = {c.uri: c for c in self.store.list_concepts()}
        members = {uri: c for uri, c in concepts.items() if c.dimension == dimension}

        if not members and self.store.get_tree(dimension) is None:
            return HierarchyTree.empty(dimension)

        broader = {uri: _unique(c.broader_uris) for uri, c in concepts.items()}
        narrower: dict[str, list[str]] = {}
        for child in sorted(concepts):
            for parent in broader[child]:
                narrower.setdefault(parent, []).append(child)

        cycle = _find_cycle(sorted(members), broader)
        if cycle:
            log.warning("hierarchy.cycle_detected", dimension=dimension, chain=cycle)
            raise HierarchyCycleError(dimension, cycle)

        closures: dict[str, Closures] = {}
        ancestor_distance: dict[str, dict[str, int]] = {}
        for uri in members:
            up = _closure(uri, broader)
            down = _closure(uri, narrower)
            ancestor_distance[uri] = up
            closures[uri] = Closures(
                broader_transitive=tuple(sorted(up)),
                narrower_transitive=tuple(sorted(down)),
                version=members[uri].version,
            )

        tree = self._layout(dimension, members, concepts, broader, ancestor_distance)
        self.store.commit_hierarchy(tree, closures)
        log.info(
            "hierarchy.rebuilt",
            dimension=dimension,
            roots=len(tree.roots),
            nodes=len(tree.nodes),
        )
        return tree

    def affected_dimensions(self, previous: Concept | None, current: Concept | None) -> set[str]:
        """Dimensions to rebuild after ``previous`` was replaced by ``current``.

        Closures follow ``broader`` edges across dimensions. When the edges
        move, the dimensions of the old ancestors, the new ancestors and the
        stored descendants are affected as well as the concept's own.
        ``previous`` is None for a new concept, ``current`` for a deleted one.
        """
        versions = [c for c in (previous, current) if c is not None]
        dimensions = {c.dimension for c in versions}
        edges_moved = previous is None or current is None or set(previous.broader_uris) != set(current.broader_uris)
        if edges_moved:
            related: set[str] = set()
            for concept in versions:
                related.update(concept.broader_transitive)
                related.update(concept.narrower_transitive)
            # closures carried on an upsert predate the move; reach the new
            # ancestors through the parents and new descendants through the children
            for concept in versions:
                for uri in concept.broader_uris:
                    related.add(uri)
                    parent = self.store.get_concept(uri)
                    if parent is not None:
                        related.update(parent.broader_transitive)
                for ref in concept.narrower:
                    related.add(ref.uri)
                    child = self.store.get_concept(ref.uri)
                    if child is not None:
                        related.update(child.narrower_transitive)
            for uri in sorted(related):
                stored = self.store.get_concept(uri)
                if stored is not None:
                    dimensions.add(stored.dimension)
        return {d for d in dimensions if d}

    def rebuild_all(self) -> dict[str, HierarchyError]:
        """Rebuild every known dimension; returns the errors keyed by dimension."""
        errors: dict[str, HierarchyError] = {}
        for dimension in self.store.list_dimensions():
            try:
                self.rebuild(dimension)
            except HierarchyError as exc:
                errors[dimension] = exc
        return errors

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_tree(self, dimension: str) -> HierarchyTree:
        return self.store.get_tree(dimension) or HierarchyTree.empty(dimension)

    def ancestors(self, uri: str) -> list[str]:
        """Ancestor URIs nearest first; empty for unknown concepts."""
        concept = self.store.get_concept(uri)
        if concept is None:
            return []
        if concept.dimension:
            tree = self.store.get_tree(concept.dimension)
            node = tree.node(uri) if tree else None
            if node is not None:
                return list(node.ancestors)
        return sorted(concept.broader_transitive)

    def descendants(self, uri: str) -> list[str]:
        concept = self.store.get_concept(uri)
        if concept is None:
            return []
        return sorted(concept.narrower_transitive)

    # ------------------------------------------------------------------ #
    # Layout
    # ------------------------------------------------------------------ #

    def _layout(
        self,
        dimension: str,
        members: dict[str, Concept],
        concepts: dict[str, Concept],
        broader: dict[str, list[str]],
        ancestor_distance: dict[str, dict[str, int]],
    ) -> HierarchyTree:
        def order(uri: str) -> tuple[str, str]:
            concept = concepts.get(uri)
            return (concept.code if concept else uri, uri)

        children: dict[str, list[str]] = {}
        for uri in members:
            for parent in broader[uri]:
                if parent in members and parent != uri:
                    children.setdefault(parent, []).append(uri)
        for kids in children.values():
            kids.sort(key=order)

        roots = sorted(
            (uri for uri in members if not any(p in members for p in broader[uri])),
            key=order,
        )

        nodes: list[HierarchyNode] = []
        seen: dict[str, HierarchyNode] = {}
        queue: deque[tuple[str, HierarchyNode | None]] = deque((r, None) for r in roots)
        while queue:
            uri, parent = queue.popleft()
            if uri in seen:
                continue
            concept = members[uri]
            distances = ancestor_distance[uri]
            node = HierarchyNode(
                uri=uri,
                code=concept.code,
                label=concept.label(self.lang),
                depth=parent.depth + 1 if parent else 0,
                path=f"{parent.path}/{concept.code}" if parent else concept.code,
                parent=parent.uri if parent else None,
                ancestors=sorted(distances, key=lambda a: (distances[a], *order(a))),
            )
            seen[uri] = node
            nodes.append(node)
            for child in children.get(uri, []):
                if child not in seen:
                    queue.append((child, node))

        return HierarchyTree(
            dimension=dimension,
            roots=roots,
            children=children,
            nodes=nodes,
            built_at=self.clock.now(),
        )


def _unique(uris: list[str]) -> list[str]:
    return list(dict.fromkeys(uris))


def _closure(start: str, edges: dict[str, list[str]]) -> dict[str, int]:
    """BFS distances from ``start`` along ``edges``; unknown nodes are leaves."""
    distance: dict[str, int] = {}
    queue = deque([(start, 0)])
    while queue:
        uri, depth = queue.popleft()
        for nxt in edges.get(uri, []):
            if nxt == start or nxt in distance:
                continue
            distance[nxt] = depth + 1
            queue.append((nxt, depth + 1))
    return distance


def _find_cycle(starts: list[str], edges: dict[str, list[str]]) -> list[str] | None:
    """Iterative DFS; returns the URI chain of the first cycle found."""
    color: dict[str, int] = {}
    for start in starts:
        if color.get(start, _WHITE) != _WHITE:
            continue
        path = [start]
        stack = [iter(edges.get(start, []))]
        color[start] = _GRAY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            state = color.get(nxt, _WHITE)
            if state == _GRAY:
                return path[path.index(nxt):] + [nxt]
            if state == _WHITE and nxt in edges:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append(iter(edges[nxt]))
    return None


__all__ = ["HierarchyBuilder"]
