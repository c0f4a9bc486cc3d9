"""Tests for HierarchyBuilder: trees, closures, cycles and DAG edges."""

from collections import deque

import pytest

from refspine.core.errors import HierarchyCycleError
from refspine.hierarchy import HierarchyBuilder
from refspine.models import ConceptRef
from refspine.store import InMemoryReferenceStore

from _support import ATM, CEL, DEGF, DEGR, K, MBAR, PA, make_concept, pressure_units, seed, temperature_units

UNIT = "urn:test:"


def _bfs_reach(start, edges):
    seen, queue = set(), deque([start])
    while queue:
        for nxt in edges.get(queue.popleft(), []):
            if nxt not in seen and nxt != start:
                seen.add(nxt)
                queue.append(nxt)
    return seen


class TestPressureTree:
    def setup_method(self):
        self.store = InMemoryReferenceStore()

    def test_tree_shape(self, clock):
        seed(self.store, pressure_units(), clock.now())
        tree = HierarchyBuilder(self.store, clock).rebuild("pressure")

        assert tree.roots == [PA]
        assert tree.children == {PA: [ATM], ATM: [MBAR]}
        assert [n.uri for n in tree.nodes] == [PA, ATM, MBAR]
        mbar = tree.node(MBAR)
        assert mbar.path == "Pa/atm/mbar"
        assert mbar.depth == 2
        assert mbar.parent == ATM
        assert mbar.ancestors == [ATM, PA]
        assert tree.built_at == clock.now()

    def test_closures_are_stored(self, clock):
        seed(self.store, pressure_units(), clock.now())
        builder = HierarchyBuilder(self.store, clock)
        builder.rebuild("pressure")

        assert self.store.get_concept(MBAR).broader_transitive == sorted([ATM, PA])
        assert self.store.get_concept(PA).narrower_transitive == sorted([ATM, MBAR])
        assert builder.ancestors(MBAR) == [ATM, PA]
        assert builder.descendants(PA) == sorted([ATM, MBAR])
        assert builder.ancestors("urn:unknown") == []
        assert builder.descendants("urn:unknown") == []

    def test_nested_rendering(self, clock):
        seed(self.store, pressure_units(), clock.now())
        tree = HierarchyBuilder(self.store, clock).rebuild("pressure")
        nested = tree.as_nested()
        assert nested[0]["code"] == "Pa"
        assert nested[0]["children"][0]["children"][0]["code"] == "mbar"

    def test_rebuild_is_deterministic(self, clock):
        seed(self.store, pressure_units(), clock.now())
        builder = HierarchyBuilder(self.store, clock)
        first = builder.rebuild("pressure")
        second = builder.rebuild("pressure")
        assert first == second


class TestDag:
    def test_node_with_two_parents(self, clock):
        store = InMemoryReferenceStore()
        seed(
            store,
            [
                make_concept(UNIT + "a", "a", "dim", base=True),
                make_concept(UNIT + "b", "b", "dim", broader=(UNIT + "a",)),
                make_concept(UNIT + "c", "c", "dim", broader=(UNIT + "a",)),
                make_concept(UNIT + "d", "d", "dim", broader=(UNIT + "c", UNIT + "b")),
            ],
            clock.now(),
        )
        tree = HierarchyBuilder(store, clock).rebuild("dim")

        d = tree.node(UNIT + "d")
        assert d.parent == UNIT + "b"
        assert d.path == "a/b/d"
        assert d.ancestors == [UNIT + "b", UNIT + "c", UNIT + "a"]
        assert [n.uri for n in tree.nodes].count(UNIT + "d") == 1
        assert store.get_concept(UNIT + "a").narrower_transitive == [UNIT + "b", UNIT + "c", UNIT + "d"]

    def test_missing_parent_makes_a_root(self, clock):
        store = InMemoryReferenceStore()
        seed(store, [make_concept(UNIT + "x", "x", "dim", broader=(UNIT + "gone",))], clock.now())
        tree = HierarchyBuilder(store, clock).rebuild("dim")
        assert tree.roots == [UNIT + "x"]
        assert store.get_concept(UNIT + "x").broader_transitive == [UNIT + "gone"]


class TestCycles:
    def test_cycle_raises_and_keeps_previous_tree(self, clock):
        store = InMemoryReferenceStore()
        seed(store, pressure_units(), clock.now())
        builder = HierarchyBuilder(store, clock)
        previous = builder.rebuild("pressure")

        pa = store.get_concept(PA)
        expected = pa.version
        pa.broader = [ConceptRef(uri=MBAR)]
        clock.advance(minutes=1)
        pa.last_modified = clock.now()
        store.upsert_concept(pa, expected)

        with pytest.raises(HierarchyCycleError) as info:
            builder.rebuild("pressure")
        assert info.value.dimension == "pressure"
        assert info.value.chain[0] == info.value.chain[-1]
        assert store.get_tree("pressure") == previous
        assert store.get_concept(MBAR).broader_transitive == sorted([ATM, PA])

    def test_self_loop_is_a_cycle(self, clock):
        store = InMemoryReferenceStore()
        seed(store, [make_concept(UNIT + "s", "s", "dim", broader=(UNIT + "s",))], clock.now())
        with pytest.raises(HierarchyCycleError):
            HierarchyBuilder(store, clock).rebuild("dim")

    def test_rebuild_all_reports_errors_per_dimension(self, clock):
        store = InMemoryReferenceStore()
        seed(
            store,
            pressure_units()
            + [
                make_concept(UNIT + "p", "p", "loop", broader=(UNIT + "q",)),
                make_concept(UNIT + "q", "q", "loop", broader=(UNIT + "p",)),
            ],
            clock.now(),
        )
        errors = HierarchyBuilder(store, clock).rebuild_all()
        assert list(errors) == ["loop"]
        assert isinstance(errors["loop"], HierarchyCycleError)
        assert store.get_tree("pressure") is not None


class TestEmptyDimension:
    def test_unknown_dimension_is_empty_and_not_written(self, clock):
        store = InMemoryReferenceStore()
        builder = HierarchyBuilder(store, clock)
        tree = builder.rebuild("nothing")
        assert tree.is_empty
        assert store.get_tree("nothing") is None
        assert builder.get_tree("nothing").is_empty


class TestAffectedDimensions:
    def setup_method(self):
        self.store = InMemoryReferenceStore()
        self.units = [
            make_concept(UNIT + "p", "P", "y", base=True),
            make_concept(UNIT + "p2", "P2", "z", base=True),
            make_concept(UNIT + "q", "Q", "y", broader=(UNIT + "p",)),
            make_concept(UNIT + "r", "R", "x", broader=(UNIT + "q",)),
        ]

    def _built(self, clock):
        seed(self.store, self.units, clock.now())
        builder = HierarchyBuilder(self.store, clock)
        builder.rebuild_all()
        return builder

    def test_unchanged_edges_only_touch_own_dimension(self, clock):
        builder = self._built(clock)
        q = self.store.get_concept(UNIT + "q")
        renamed = make_concept(UNIT + "q", "Q", "w", broader=(UNIT + "p",))

        assert builder.affected_dimensions(q, q) == {"y"}
        assert builder.affected_dimensions(q, renamed) == {"w", "y"}

    def test_moved_edge_reaches_old_and_new_ancestors_and_descendants(self, clock):
        builder = self._built(clock)
        q = self.store.get_concept(UNIT + "q")
        moved = make_concept(UNIT + "q", "Q", "y", broader=(UNIT + "p2",))

        assert builder.affected_dimensions(q, moved) == {"x", "y", "z"}

    def test_new_concept_reaches_declared_children(self, clock):
        builder = self._built(clock)
        top = make_concept(UNIT + "top", "T", "t", base=True)
        top.narrower = [ConceptRef(uri=UNIT + "p")]

        assert builder.affected_dimensions(None, top) == {"t", "y", "x"}


class TestClosureProperty:
    def test_closure_equals_bfs_reachability(self, clock):
        store = InMemoryReferenceStore()
        seed(store, temperature_units(), clock.now())
        HierarchyBuilder(store, clock).rebuild("temperature")

        concepts = store.list_concepts()
        up = {c.uri: c.broader_uris for c in concepts}
        down: dict[str, list[str]] = {}
        for child, parents in up.items():
            for parent in parents:
                down.setdefault(parent, []).append(child)

        for concept in concepts:
            assert set(concept.broader_transitive) == _bfs_reach(concept.uri, up)
            assert set(concept.narrower_transitive) == _bfs_reach(concept.uri, down)
            for ancestor in concept.broader_transitive:
                assert concept.uri in store.get_concept(ancestor).narrower_transitive

        assert store.get_concept(DEGF).broader_transitive == sorted([DEGR, K])
        assert store.get_concept(K).narrower_transitive == sorted([CEL, DEGF, DEGR])
