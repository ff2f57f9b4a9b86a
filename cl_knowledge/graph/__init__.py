"""
Knowledge graph store — nodes, edges, entities, lifecycle history and sync
bookkeeping persisted in SQLite with an FTS5 search index.
"""

from .database import KnowledgeGraphDatabase, default_db_path
from .errors import (
    ConstraintViolation,
    KnowledgeGraphError,
    MaintenanceError,
    MissingReferenceError,
    NotFoundError,
    SchemaIntegrityError,
    StateTransitionError,
    ValidationError,
)
from .hashing import generate_content_hash
from .models import (
    CONFIDENCE_LEVELS,
    STATES,
    EntityMention,
    KnowledgeNode,
    NodeEdges,
    NodeUpsertResult,
    SemanticEdge,
    SemanticEntity,
    StateTransition,
    SyncRun,
)
from .schema import DatabaseSettings

__all__ = [
    "KnowledgeGraphDatabase",
    "default_db_path",
    "DatabaseSettings",
    "KnowledgeGraphError",
    "ValidationError",
    "NotFoundError",
    "ConstraintViolation",
    "MissingReferenceError",
    "SchemaIntegrityError",
    "MaintenanceError",
    "StateTransitionError",
    "generate_content_hash",
    "STATES",
    "CONFIDENCE_LEVELS",
    "KnowledgeNode",
    "SemanticEdge",
    "NodeEdges",
    "SemanticEntity",
    "EntityMention",
    "StateTransition",
    "SyncRun",
    "NodeUpsertResult",
]
