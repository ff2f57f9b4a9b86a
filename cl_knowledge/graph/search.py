"""
Read-side queries over the knowledge graph.

Full-text search against the ``knowledge_search`` FTS5 index, plus the
analytic views declared in :mod:`cl_knowledge.graph.schema`.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from .errors import ValidationError
from .models import STATES, KnowledgeNode, require_choice

if TYPE_CHECKING:
    from .database import KnowledgeGraphDatabase

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


@dataclass
class SearchHit:
    """One full-text match.  Lower ``rank`` is better (bm25)."""

    node: KnowledgeNode
    rank: float
    snippet: Optional[str] = None


@dataclass
class AuthorityConflict:
    """An entity defined by more than one crystal node."""

    entity_id: int
    entity_name: str
    node_ids: list[int] = field(default_factory=list)
    node_paths: list[str] = field(default_factory=list)


def build_match_expression(query: str) -> str:
    """
    Turn free text into a safe FTS5 expression.

    Each word becomes a quoted term and the terms are ANDed, so punctuation
    or FTS operators typed by a user never cause a syntax error.  Returns an
    empty string when *query* has no searchable words.
    """
    tokens = _TOKEN_RE.findall(query or "")
    return " ".join(f'"{tok}"' for tok in tokens)


def search_nodes(
    db: "KnowledgeGraphDatabase",
    query: str,
    vault_name: Optional[str] = None,
    state: Optional[str] = None,
    limit: int = 20,
    raw: bool = False,
) -> list[SearchHit]:
    """
    Full-text search over node path, title, summary, state and confidence.

    Parameters
    ----------
    query:
        Free text, or a native FTS5 expression when *raw* is True.
    vault_name, state:
        Optional filters.
    limit:
        Maximum number of hits.

    Returns
    -------
    list[SearchHit]
        Best match first.
    """
    if state is not None:
        require_choice(state, STATES, "state")
    match = query.strip() if raw else build_match_expression(query)
    if not match:
        return []

    sql = (
        "SELECT n.*, bm25(knowledge_search) AS score, "
        "snippet(knowledge_search, 2, '[', ']', '...', 12) AS snippet "
        "FROM knowledge_search "
        "JOIN knowledge_nodes n ON n.id = knowledge_search.rowid "
        "WHERE knowledge_search MATCH ?"
    )
    params: list[Any] = [match]
    if vault_name:
        sql += " AND n.vault_name = ?"
        params.append(vault_name)
    if state:
        sql += " AND n.state = ?"
        params.append(state)
    sql += " ORDER BY score LIMIT ?"
    params.append(limit)

    try:
        rows = db.query(sql, params)
    except sqlite3.OperationalError as exc:
        if raw:
            raise ValidationError(f"Invalid search expression {query!r}: {exc}") from exc
        raise
    logger.debug("[KG] search %r -> %d hit(s)", match, len(rows))
    return [
        SearchHit(node=KnowledgeNode.from_row(r), rank=r["score"], snippet=r["snippet"])
        for r in rows
    ]


# ---------------------------------------------------------------------------
# View-backed queries
# ---------------------------------------------------------------------------

def get_authority_hierarchy(
    db: "KnowledgeGraphDatabase",
    vault_name: Optional[str] = None,
    state: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    """Nodes ranked by authority weight, then by how many edges point at them."""
    clauses, params = [], []
    if vault_name:
        clauses.append("vault_name = ?")
        params.append(vault_name)
    if state:
        require_choice(state, STATES, "state")
        clauses.append("state = ?")
        params.append(state)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.query(
        f"SELECT * FROM authority_hierarchy{where} "
        "ORDER BY authority_weight DESC, dependent_count DESC, path LIMIT ?",
        params + [limit],
    )
    return [dict(r) for r in rows]


def get_knowledge_evolution(
    db: "KnowledgeGraphDatabase",
    vault_name: Optional[str] = None,
    node_id: Optional[int] = None,
    limit: int = 100,
) -> list[dict]:
    """State transitions joined with their node, most recent first."""
    clauses, params = [], []
    if vault_name:
        clauses.append("vault_name = ?")
        params.append(vault_name)
    if node_id is not None:
        clauses.append("node_id = ?")
        params.append(node_id)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.query(
        f"SELECT * FROM knowledge_evolution{where} "
        "ORDER BY transition_date DESC, transition_id DESC LIMIT ?",
        params + [limit],
    )
    return [dict(r) for r in rows]


def get_relationship_network(
    db: "KnowledgeGraphDatabase",
    vault_name: Optional[str] = None,
    relation_type: Optional[str] = None,
    min_confidence: float = 0.0,
) -> list[dict]:
    """Edges with both endpoints' path/title/state, strongest first."""
    clauses, params = ["confidence >= ?"], [min_confidence]
    if vault_name:
        clauses.append("vault_name = ?")
        params.append(vault_name)
    if relation_type:
        clauses.append("relation_type = ?")
        params.append(relation_type)
    rows = db.query(
        f"SELECT * FROM relationship_network WHERE {' AND '.join(clauses)} "
        "ORDER BY weight DESC, confidence DESC, edge_id",
        params,
    )
    result = []
    for r in rows:
        item = dict(r)
        item["inferred"] = bool(item["inferred"])
        result.append(item)
    return result


def find_crystal_authority_conflicts(
    db: "KnowledgeGraphDatabase",
    vault_name: Optional[str] = None,
) -> list[AuthorityConflict]:
    """
    Entities that carry a ``definition`` mention in more than one crystal
    node.  Each topic should have a single crystallized authority; every
    entry returned here breaks that rule.
    """
    sql = (
        "SELECT e.id AS entity_id, e.name AS entity_name, n.id AS node_id, n.path "
        "FROM entity_mentions m "
        "JOIN semantic_entities e ON e.id = m.entity_id "
        "JOIN knowledge_nodes n ON n.id = m.node_id "
        "WHERE m.mention_type = 'definition' AND n.state = 'crystal'"
    )
    params: list[Any] = []
    if vault_name:
        sql += " AND n.vault_name = ?"
        params.append(vault_name)
    sql += " ORDER BY e.name, n.path"

    by_entity: dict[int, AuthorityConflict] = {}
    for r in db.query(sql, params):
        conflict = by_entity.setdefault(
            r["entity_id"], AuthorityConflict(r["entity_id"], r["entity_name"])
        )
        if r["node_id"] not in conflict.node_ids:
            conflict.node_ids.append(r["node_id"])
            conflict.node_paths.append(r["path"])
    return [c for c in by_entity.values() if len(c.node_ids) > 1]
