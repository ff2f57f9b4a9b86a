"""
Record types and enumerations for the knowledge graph.

The dataclasses mirror the tables in :mod:`cl_knowledge.graph.schema`.
Validation helpers raise :class:`~cl_knowledge.graph.errors.ValidationError`
before anything reaches the database.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

STATES: tuple[str, ...] = ("plasma", "fluid", "gel", "crystal")
CONFIDENCE_LEVELS: tuple[str, ...] = ("low", "medium", "high")
VALIDATION_STATUSES: tuple[str, ...] = ("validated", "disputed", "unvalidated")
MENTION_TYPES: tuple[str, ...] = ("definition", "reference", "usage")
SYNC_STATUSES: tuple[str, ...] = ("running", "completed", "failed")
SYNC_COUNTERS: tuple[str, ...] = (
    "notes_processed",
    "notes_added",
    "notes_updated",
    "notes_deleted",
    "relationships_found",
)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with microseconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def require_choice(value: Any, choices: Iterable[str], field_name: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(
            f"Invalid {field_name} {value!r}; expected one of {', '.join(choices)}"
        )
    return value


def require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and must be a non-empty string")
    return value


def require_unit_interval(value: Any, field_name: str) -> float:
    """Return *value* as a float in [0.0, 1.0]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"{field_name} must be between 0.0 and 1.0, got {value}")
    return float(value)


def require_number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    return float(value)


def require_count(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field_name} must be a non-negative integer, got {value!r}")
    return value


def _from_row(cls, row: sqlite3.Row):
    names = {f.name for f in fields(cls)}
    return cls(**{k: row[k] for k in row.keys() if k in names})


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class KnowledgeNode:
    """One tracked note."""

    path: str
    title: str
    vault_name: str
    content_hash: str
    state: str = "fluid"
    confidence: str = "medium"
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    authority_weight: float = 0.0
    content_summary: Optional[str] = None
    file_size: int = 0
    line_count: int = 0
    id: Optional[int] = None

    def validate(self) -> None:
        require_text(self.path, "path")
        require_text(self.title, "title")
        require_text(self.vault_name, "vault_name")
        require_text(self.content_hash, "content_hash")
        require_choice(self.state, STATES, "state")
        require_choice(self.confidence, CONFIDENCE_LEVELS, "confidence")
        require_number(self.authority_weight, "authority_weight")
        require_count(self.file_size, "file_size")
        require_count(self.line_count, "line_count")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "KnowledgeNode":
        return _from_row(cls, row)


# Columns a caller may change through update_node().
NODE_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "path", "title", "state", "confidence", "content_hash", "created_at",
    "authority_weight", "content_summary", "vault_name", "file_size", "line_count",
})


@dataclass
class SemanticEdge:
    """Directed, typed relationship between two nodes."""

    source_id: int
    target_id: int
    relation_type: str
    confidence: float = 1.0
    evidence: Optional[str] = None
    inferred: bool = False
    weight: float = 1.0
    validation_status: str = "unvalidated"
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    id: Optional[int] = None

    def validate(self) -> None:
        for name in ("source_id", "target_id"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer node id, got {value!r}")
        require_text(self.relation_type, "relation_type")
        require_unit_interval(self.confidence, "confidence")
        require_number(self.weight, "weight")
        require_choice(self.validation_status, VALIDATION_STATUSES, "validation_status")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SemanticEdge":
        edge = _from_row(cls, row)
        edge.inferred = bool(edge.inferred)
        return edge


EDGE_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "confidence", "evidence", "inferred", "weight", "validation_status",
})


@dataclass
class NodeEdges:
    """Edges touching one node, split by direction."""

    outgoing: list[SemanticEdge] = field(default_factory=list)
    incoming: list[SemanticEdge] = field(default_factory=list)


@dataclass
class SemanticEntity:
    """A named concept extracted from note content."""

    name: str
    entity_type: str
    vault_name: str
    description: Optional[str] = None
    authority_node_id: Optional[int] = None
    confidence: float = 0.5
    mention_count: int = 0
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SemanticEntity":
        return _from_row(cls, row)


@dataclass
class EntityMention:
    """Occurrence of an entity inside a node."""

    entity_id: int
    node_id: int
    mention_text: str
    context: Optional[str] = None
    confidence: float = 1.0
    position_start: Optional[int] = None
    position_end: Optional[int] = None
    mention_type: str = "reference"
    created_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EntityMention":
        return _from_row(cls, row)


@dataclass
class StateTransition:
    """Append-only record of a node's state change."""

    node_id: int
    to_state: str
    to_confidence: str
    from_state: Optional[str] = None
    from_confidence: Optional[str] = None
    reason: Optional[str] = None
    evidence_quality: float = 0.5
    transition_date: Optional[str] = None
    user_id: Optional[str] = None
    id: Optional[int] = None

    def validate(self) -> None:
        require_choice(self.to_state, STATES, "to_state")
        require_choice(self.to_confidence, CONFIDENCE_LEVELS, "to_confidence")
        if self.from_state is not None:
            require_choice(self.from_state, STATES, "from_state")
        if self.from_confidence is not None:
            require_choice(self.from_confidence, CONFIDENCE_LEVELS, "from_confidence")
        require_unit_interval(self.evidence_quality, "evidence_quality")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StateTransition":
        return _from_row(cls, row)


@dataclass
class SyncRun:
    """Bookkeeping for one bulk resynchronization pass."""

    vault_name: str
    sync_start: str
    status: str = "running"
    sync_end: Optional[str] = None
    notes_processed: int = 0
    notes_added: int = 0
    notes_updated: int = 0
    notes_deleted: int = 0
    relationships_found: int = 0
    error_message: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncRun":
        return _from_row(cls, row)


@dataclass
class NodeUpsertResult:
    """Outcome of :meth:`KnowledgeGraphDatabase.upsert_node`."""

    node_id: int
    action: str  # "added" | "updated" | "unchanged"

    @property
    def changed(self) -> bool:
        return self.action != "unchanged"
