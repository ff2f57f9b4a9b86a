"""
Authority weight derivation.

``authority_weight`` is a derived score the store only persists.  Here it is
computed from the edge structure of a vault: a note that many confident,
heavy edges point at is an authority for the notes that depend on it.

The graph is built with NetworkX; parallel edges between the same pair of
notes (different relation types) are folded into one weighted edge.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import networkx as nx

if TYPE_CHECKING:
    from .database import KnowledgeGraphDatabase

logger = logging.getLogger(__name__)


def build_graph(db: "KnowledgeGraphDatabase", vault_name: str) -> nx.DiGraph:
    """
    Load the nodes and edges of *vault_name* into a directed graph.

    Node keys are node ids (attributes ``path``, ``state``); each edge's
    ``weight`` attribute is the sum of ``weight * confidence`` over every
    stored edge between the pair.
    """
    graph = nx.DiGraph()
    for node in db.list_nodes(vault_name):
        graph.add_node(node.id, path=node.path, state=node.state)

    rows = db.query(
        "SELECT se.source_id, se.target_id, se.weight, se.confidence "
        "FROM semantic_edges se "
        "JOIN knowledge_nodes n ON se.source_id = n.id "
        "WHERE n.vault_name = ?",
        (vault_name,),
    )
    for r in rows:
        if r["source_id"] == r["target_id"]:
            continue
        contribution = r["weight"] * r["confidence"]
        if graph.has_edge(r["source_id"], r["target_id"]):
            graph[r["source_id"]][r["target_id"]]["weight"] += contribution
        else:
            graph.add_edge(r["source_id"], r["target_id"], weight=contribution)
    return graph


def compute_authority_weights(graph: nx.DiGraph) -> dict[int, float]:
    """
    Weighted in-degree of every node, normalised so the strongest node
    scores 1.0.  Nodes nobody points at score 0.0.
    """
    raw = {node: float(score) for node, score in graph.in_degree(weight="weight")}
    top = max(raw.values(), default=0.0)
    if top <= 0.0:
        return {node: 0.0 for node in raw}
    return {node: round(score / top, 6) for node, score in raw.items()}


def refresh_authority_weights(db: "KnowledgeGraphDatabase", vault_name: str) -> dict[int, float]:
    """Recompute and persist authority weights for *vault_name*."""
    graph = build_graph(db, vault_name)
    weights = compute_authority_weights(graph)
    updated = db.set_authority_weights(weights)
    logger.info(
        "[KG] Authority weights refreshed for %s: %d node(s), %d edge(s)",
        vault_name, updated, graph.number_of_edges(),
    )
    return weights
