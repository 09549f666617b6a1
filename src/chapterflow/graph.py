"""
Abstraction Graph Construction
==============================

Validates scanner output and builds the directed multigraph the sequencer
orders. Edge (src, tgt, label) means src interacts with tgt; chapters for
sources come before chapters for targets.
"""

from __future__ import annotations

import logging
from typing import Iterable

import networkx as nx

from chapterflow.models import (
    Abstraction,
    GraphValidationError,
    Relationship,
    ValidationKind,
)

logger = logging.getLogger("chapterflow.graph")


class AbstractionGraph:
    """Read-only adjacency view over a ``networkx.MultiDiGraph``.

    Edge keys are relationship labels, so two edges between the same pair
    survive only when their labels differ.
    """

    def __init__(self, graph: nx.MultiDiGraph, abstractions: list[Abstraction]):
        self._g = graph
        self._abstractions = abstractions
        self._index = {a.id: i for i, a in enumerate(abstractions)}

    @property
    def nx_graph(self) -> nx.MultiDiGraph:
        return self._g

    @property
    def node_count(self) -> int:
        return self._g.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._g.number_of_edges()

    @property
    def abstractions(self) -> list[Abstraction]:
        return list(self._abstractions)

    @property
    def relationships(self) -> list[Relationship]:
        return [
            Relationship(source_id=u, target_id=v, label=label)
            for u, v, label in self._g.edges(keys=True)
        ]

    def node_ids(self) -> list[str]:
        """All abstraction ids in extraction order."""
        return [a.id for a in self._abstractions]

    def has_node(self, abstraction_id: str) -> bool:
        return abstraction_id in self._index

    def abstraction(self, abstraction_id: str) -> Abstraction:
        return self._g.nodes[abstraction_id]["abstraction"]

    def extraction_index(self, abstraction_id: str) -> int:
        return self._index[abstraction_id]

    def out_edges(self, abstraction_id: str) -> list[Relationship]:
        return [
            Relationship(source_id=u, target_id=v, label=label)
            for u, v, label in self._g.out_edges(abstraction_id, keys=True)
        ]

    def in_degree(self, abstraction_id: str) -> int:
        """Number of incoming edges, counting parallel edges separately."""
        return self._g.in_degree(abstraction_id)

    def predecessors(self, abstraction_id: str) -> list[str]:
        """Distinct in-neighbours of ``abstraction_id`` in extraction order."""
        return sorted(self._g.predecessors(abstraction_id), key=self._index.__getitem__)

    def successors(self, abstraction_id: str) -> list[str]:
        return sorted(self._g.successors(abstraction_id), key=self._index.__getitem__)


def build_graph(
    abstractions: Iterable[Abstraction],
    relationships: Iterable[Relationship],
) -> tuple[AbstractionGraph, list[GraphValidationError]]:
    """Build the abstraction graph from scanner output.

    A bad abstraction or edge is reported and skipped; it never aborts the
    build.

    Args:
        abstractions: Extracted abstractions, in extraction order
        relationships: Extracted relationships

    Returns:
        (graph, validation_errors)
    """
    errors: list[GraphValidationError] = []
    kept: list[Abstraction] = []
    G = nx.MultiDiGraph()

    for abstraction in abstractions:
        if G.has_node(abstraction.id):
            errors.append(GraphValidationError(
                kind=ValidationKind.DUPLICATE_ABSTRACTION,
                message=f"Duplicate abstraction id '{abstraction.id}' ignored",
                abstraction_id=abstraction.id,
            ))
            continue
        G.add_node(abstraction.id, abstraction=abstraction)
        kept.append(abstraction)

    for rel in relationships:
        if rel.source_id == rel.target_id:
            errors.append(GraphValidationError(
                kind=ValidationKind.SELF_EDGE,
                message=f"Self-edge on '{rel.source_id}' dropped",
                abstraction_id=rel.source_id,
                relationship=rel,
            ))
            continue
        if not G.has_node(rel.source_id):
            errors.append(GraphValidationError(
                kind=ValidationKind.UNKNOWN_SOURCE,
                message=f"Edge source '{rel.source_id}' is not a known abstraction",
                abstraction_id=rel.source_id,
                relationship=rel,
            ))
            continue
        if not G.has_node(rel.target_id):
            errors.append(GraphValidationError(
                kind=ValidationKind.UNKNOWN_TARGET,
                message=f"Edge target '{rel.target_id}' is not a known abstraction",
                abstraction_id=rel.target_id,
                relationship=rel,
            ))
            continue
        if G.has_edge(rel.source_id, rel.target_id, key=rel.label):
            continue
        G.add_edge(rel.source_id, rel.target_id, key=rel.label)

    for err in errors:
        if err.kind != ValidationKind.SELF_EDGE:
            logger.warning(err.message)
        else:
            logger.debug(err.message)

    logger.info(
        f"Built abstraction graph: {G.number_of_nodes()} nodes, "
        f"{G.number_of_edges()} edges, {len(errors)} validation errors"
    )
    return AbstractionGraph(G, kept), errors
