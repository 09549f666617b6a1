"""Tests for chapterflow.sequencer module."""

import random

from chapterflow.graph import build_graph
from chapterflow.models import Relationship
from chapterflow.sequencer import sequence, sequence_order


def rel(src, tgt, label=""):
    return Relationship(source_id=src, target_id=tgt, label=label)


def order_of(plans):
    return [p.abstraction_id for p in plans]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ACYCLIC GRAPHS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAcyclic:

    def test_chain(self, abstractions_for):
        graph, _ = build_graph(abstractions_for("a", "b", "c"), [rel("a", "b", "uses"), rel("b", "c", "configures")])
        plans = sequence(graph)
        assert order_of(plans) == ["a", "b", "c"]
        assert [p.order for p in plans] == [1, 2, 3]
        assert not any(p.forced for p in plans)
        assert plans[0].depends_on_chapter_ids == ()
        assert plans[1].depends_on_chapter_ids == ("a",)
        assert plans[2].depends_on_chapter_ids == ("b",)

    def test_ties_break_by_extraction_order(self, abstractions_for):
        # No edges at all: extraction order wins, not lexicographic order
        graph, _ = build_graph(abstractions_for("zeta", "alpha", "mid"), [])
        assert order_of(sequence(graph)) == ["zeta", "alpha", "mid"]

    def test_sources_come_before_targets(self, abstractions_for):
        graph, _ = build_graph(
            abstractions_for("c", "b", "a"),
            [rel("a", "b"), rel("b", "c")],
        )
        assert order_of(sequence(graph)) == ["a", "b", "c"]

    def test_dependencies_sorted_by_order(self, abc_graph):
        graph, _ = build_graph(*abc_graph)
        plans = {p.abstraction_id: p for p in sequence(graph)}
        assert plans["c"].depends_on_chapter_ids == ("a", "b")

    def test_empty_graph(self):
        graph, _ = build_graph([], [])
        assert sequence(graph) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  CYCLES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCycles:

    def test_three_cycle_places_every_node_once(self, abstractions_for):
        graph, _ = build_graph(
            abstractions_for("a", "b", "c"),
            [rel("a", "b", "uses"), rel("b", "c", "configures"), rel("c", "a", "reports to")],
        )
        plans = sequence(graph)
        assert order_of(plans) == ["a", "b", "c"]
        assert [p.forced for p in plans] == [True, False, False]
        # The back edge c -> a points forward in the order, so a has no dependency
        assert plans[0].depends_on_chapter_ids == ()
        assert plans[2].depends_on_chapter_ids == ("b",)

    def test_forced_node_is_most_depended_upon(self, abstractions_for):
        # Everything sits on a cycle; y has in-degree 2, the others 1
        graph, _ = build_graph(
            abstractions_for("x", "y", "w"),
            [rel("x", "y"), rel("w", "y"), rel("y", "x"), rel("y", "w")],
        )
        order, forced = sequence_order(graph)
        assert forced == {"y"}
        assert order == ["y", "x", "w"]

    def test_two_disjoint_cycles(self, abstractions_for):
        graph, _ = build_graph(
            abstractions_for("a", "b", "c", "d"),
            [rel("a", "b"), rel("b", "a"), rel("c", "d"), rel("d", "c")],
        )
        order, forced = sequence_order(graph)
        assert sorted(order) == ["a", "b", "c", "d"]
        assert len(order) == 4
        assert forced == {"a", "c"}

    def test_parallel_edges_count_toward_in_degree(self, abstractions_for):
        graph, _ = build_graph(
            abstractions_for("p", "q"),
            [rel("p", "q", "one"), rel("p", "q", "two"), rel("q", "p", "back")],
        )
        order, forced = sequence_order(graph)
        assert forced == {"q"}
        assert order == ["q", "p"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  PROPERTIES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def random_graph(abstractions_for, seed, n=12, m=30):
    rng = random.Random(seed)
    ids = [f"n{i:02d}" for i in range(n)]
    edges = []
    for _ in range(m):
        src, tgt = rng.sample(ids, 2)
        edges.append(rel(src, tgt, rng.choice(["uses", "calls", "feeds"])))
    return abstractions_for(*ids), edges


def test_sequence_is_deterministic(abstractions_for):
    for seed in range(5):
        abstractions, edges = random_graph(abstractions_for, seed)
        first = sequence(build_graph(abstractions, edges)[0])
        second = sequence(build_graph(abstractions, edges)[0])
        assert first == second


def test_sequence_is_total_and_dependencies_are_sound(abstractions_for):
    for seed in range(10):
        abstractions, edges = random_graph(abstractions_for, seed)
        graph, _ = build_graph(abstractions, edges)
        plans = sequence(graph)

        assert sorted(order_of(plans)) == sorted(a.id for a in abstractions)
        position = {p.abstraction_id: p.order for p in plans}
        for plan in plans:
            for dep in plan.depends_on_chapter_ids:
                assert position[dep] < plan.order
                assert dep in graph.predecessors(plan.abstraction_id)
            # Every earlier in-neighbour is listed
            earlier = {p for p in graph.predecessors(plan.abstraction_id) if position[p] < plan.order}
            assert set(plan.depends_on_chapter_ids) == earlier
