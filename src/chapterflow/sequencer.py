"""
Chapter Sequencer
=================

Kahn's algorithm over the abstraction graph with deterministic cycle
breaking. Every node is placed exactly once, so a cyclic graph only costs
extra forced placements, never an error.

Tie-break key for both heaps: (extraction index, id).
"""

from __future__ import annotations

import heapq
import logging

from chapterflow.graph import AbstractionGraph
from chapterflow.models import ChapterPlan

logger = logging.getLogger("chapterflow.sequencer")


def _tie_key(graph: AbstractionGraph, node: str) -> tuple[int, str]:
    return (graph.extraction_index(node), node)


def sequence_order(graph: AbstractionGraph) -> tuple[list[str], set[str]]:
    """Return (abstraction ids in chapter order, ids that were force-placed)."""
    remaining = {n: graph.in_degree(n) for n in graph.node_ids()}
    placed: set[str] = set()
    forced: set[str] = set()
    order: list[str] = []

    ready = [_tie_key(graph, n) for n, deg in remaining.items() if deg == 0]
    heapq.heapify(ready)

    # Max-heap on remaining in-degree; entries go stale when a node's
    # in-degree drops or it gets placed, and are skipped on pop.
    stuck = [(-deg, _tie_key(graph, n)) for n, deg in remaining.items() if deg > 0]
    heapq.heapify(stuck)

    def place(node: str) -> None:
        placed.add(node)
        order.append(node)
        for rel in graph.out_edges(node):
            succ = rel.target_id
            if succ in placed:
                continue
            remaining[succ] -= 1
            if remaining[succ] == 0:
                heapq.heappush(ready, _tie_key(graph, succ))
            else:
                heapq.heappush(stuck, (-remaining[succ], _tie_key(graph, succ)))

    while len(order) < len(remaining):
        if ready:
            _, node = heapq.heappop(ready)
            if node in placed:
                continue
            place(node)
            continue

        # Ready set empty with nodes left: a cycle. Force the most
        # depended-upon unplaced node.
        while True:
            neg_deg, (_, node) = heapq.heappop(stuck)
            if node not in placed and remaining[node] == -neg_deg:
                break
        logger.info(
            f"Cycle detected: forcing '{node}' (remaining in-degree {-neg_deg}) "
            f"into position {len(order) + 1}"
        )
        forced.add(node)
        remaining[node] = 0
        place(node)

    return order, forced


def sequence(graph: AbstractionGraph) -> list[ChapterPlan]:
    """Compute the chapter plans for ``graph``.

    ``depends_on_chapter_ids`` holds the in-neighbours that landed earlier,
    sorted by their order. A force-placed node can have in-edges and still
    an empty dependency list.
    """
    order, forced = sequence_order(graph)
    position = {node: i + 1 for i, node in enumerate(order)}

    plans = []
    for node in order:
        deps = sorted(
            (p for p in graph.predecessors(node) if position[p] < position[node]),
            key=position.__getitem__,
        )
        plans.append(ChapterPlan(
            order=position[node],
            abstraction_id=node,
            depends_on_chapter_ids=tuple(deps),
            forced=node in forced,
        ))

    if forced:
        logger.info(f"Sequenced {len(plans)} chapters with {len(forced)} forced placements")
    else:
        logger.debug(f"Sequenced {len(plans)} chapters")
    return plans
