"""
Relational schema for the knowledge graph.

Declares the tables, full-text index, triggers and views, provisions them
idempotently, and verifies the result on startup.  Engine-level settings
(foreign keys, journal mode, synchronous level, caches) are applied here too.

Storage: ``<vault>/.cl-state/knowledge_graph.db``
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Union

from .errors import SchemaIntegrityError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

_TABLES = """
CREATE TABLE IF NOT EXISTS knowledge_nodes (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    path              TEXT    NOT NULL,
    title             TEXT    NOT NULL,
    state             TEXT    NOT NULL CHECK (state IN ('plasma', 'fluid', 'gel', 'crystal')),
    confidence        TEXT    NOT NULL CHECK (confidence IN ('low', 'medium', 'high')),
    content_hash      TEXT    NOT NULL,
    created_at        TEXT    NOT NULL,
    modified_at       TEXT    NOT NULL,
    authority_weight  REAL    NOT NULL DEFAULT 0.0,
    content_summary   TEXT,
    vault_name        TEXT    NOT NULL,
    file_size         INTEGER NOT NULL DEFAULT 0,
    line_count        INTEGER NOT NULL DEFAULT 0,
    UNIQUE (path, vault_name)
);

CREATE TABLE IF NOT EXISTS semantic_edges (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id          INTEGER NOT NULL REFERENCES knowledge_nodes(id) ON DELETE CASCADE,
    target_id          INTEGER NOT NULL REFERENCES knowledge_nodes(id) ON DELETE CASCADE,
    relation_type      TEXT    NOT NULL,
    confidence         REAL    NOT NULL CHECK (confidence >= 0.0 AND confidence <= 1.0),
    evidence           TEXT,
    inferred           INTEGER NOT NULL DEFAULT 0,
    created_at         TEXT    NOT NULL,
    modified_at        TEXT    NOT NULL,
    weight             REAL    NOT NULL DEFAULT 1.0,
    validation_status  TEXT    NOT NULL DEFAULT 'unvalidated'
        CHECK (validation_status IN ('validated', 'disputed', 'unvalidated')),
    UNIQUE (source_id, target_id, relation_type)
);

CREATE TABLE IF NOT EXISTS semantic_entities (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    name               TEXT    UNIQUE NOT NULL,
    entity_type        TEXT    NOT NULL,
    description        TEXT,
    authority_node_id  INTEGER REFERENCES knowledge_nodes(id) ON DELETE SET NULL,
    confidence         REAL    NOT NULL DEFAULT 0.5,
    vault_name         TEXT    NOT NULL,
    created_at         TEXT    NOT NULL,
    modified_at        TEXT    NOT NULL,
    mention_count      INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS entity_mentions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id       INTEGER NOT NULL REFERENCES semantic_entities(id) ON DELETE CASCADE,
    node_id         INTEGER NOT NULL REFERENCES knowledge_nodes(id) ON DELETE CASCADE,
    mention_text    TEXT    NOT NULL,
    context         TEXT,
    confidence      REAL    NOT NULL CHECK (confidence >= 0.0 AND confidence <= 1.0),
    position_start  INTEGER,
    position_end    INTEGER,
    mention_type    TEXT    NOT NULL DEFAULT 'reference'
        CHECK (mention_type IN ('definition', 'reference', 'usage')),
    created_at      TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS state_history (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id           INTEGER NOT NULL REFERENCES knowledge_nodes(id) ON DELETE CASCADE,
    from_state        TEXT,
    to_state          TEXT    NOT NULL,
    from_confidence   TEXT,
    to_confidence     TEXT    NOT NULL,
    reason            TEXT,
    evidence_quality  REAL    NOT NULL DEFAULT 0.5,
    transition_date   TEXT    NOT NULL,
    user_id           TEXT
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    vault_name           TEXT    NOT NULL,
    sync_start           TEXT    NOT NULL,
    sync_end             TEXT,
    status               TEXT    NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
    notes_processed      INTEGER NOT NULL DEFAULT 0 CHECK (notes_processed >= 0),
    notes_added          INTEGER NOT NULL DEFAULT 0 CHECK (notes_added >= 0),
    notes_updated        INTEGER NOT NULL DEFAULT 0 CHECK (notes_updated >= 0),
    notes_deleted        INTEGER NOT NULL DEFAULT 0 CHECK (notes_deleted >= 0),
    relationships_found  INTEGER NOT NULL DEFAULT 0 CHECK (relationships_found >= 0),
    error_message        TEXT
);

CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_search USING fts5(
    path, title, content_summary, state, confidence, vault_name,
    content='knowledge_nodes',
    content_rowid='id'
);
"""

_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_nodes_state_confidence ON knowledge_nodes(state, confidence);
CREATE INDEX IF NOT EXISTS idx_nodes_vault            ON knowledge_nodes(vault_name);
CREATE INDEX IF NOT EXISTS idx_nodes_modified         ON knowledge_nodes(modified_at);
CREATE INDEX IF NOT EXISTS idx_nodes_authority        ON knowledge_nodes(authority_weight DESC);
CREATE INDEX IF NOT EXISTS idx_nodes_hash             ON knowledge_nodes(content_hash);

CREATE INDEX IF NOT EXISTS idx_edges_source           ON semantic_edges(source_id);
CREATE INDEX IF NOT EXISTS idx_edges_target           ON semantic_edges(target_id);
CREATE INDEX IF NOT EXISTS idx_edges_relation_type    ON semantic_edges(relation_type);
CREATE INDEX IF NOT EXISTS idx_edges_weight           ON semantic_edges(weight DESC, confidence DESC);

CREATE INDEX IF NOT EXISTS idx_entities_type          ON semantic_entities(entity_type);
CREATE INDEX IF NOT EXISTS idx_entities_vault         ON semantic_entities(vault_name);
CREATE INDEX IF NOT EXISTS idx_entities_authority     ON semantic_entities(authority_node_id);
CREATE INDEX IF NOT EXISTS idx_entities_mentions      ON semantic_entities(mention_count DESC);

CREATE INDEX IF NOT EXISTS idx_mentions_entity        ON entity_mentions(entity_id);
CREATE INDEX IF NOT EXISTS idx_mentions_node          ON entity_mentions(node_id);

CREATE INDEX IF NOT EXISTS idx_history_node_date      ON state_history(node_id, transition_date);

CREATE INDEX IF NOT EXISTS idx_sync_vault             ON sync_metadata(vault_name);
CREATE INDEX IF NOT EXISTS idx_sync_status            ON sync_metadata(status);
"""

# The FTS table uses knowledge_nodes as external content, so every change to
# a node must be mirrored here.  Updates delete the old row and re-insert.
_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS fts_nodes_insert
AFTER INSERT ON knowledge_nodes
BEGIN
    INSERT INTO knowledge_search(rowid, path, title, content_summary, state, confidence, vault_name)
    VALUES (NEW.id, NEW.path, NEW.title, NEW.content_summary, NEW.state, NEW.confidence, NEW.vault_name);
END;

CREATE TRIGGER IF NOT EXISTS fts_nodes_update
AFTER UPDATE ON knowledge_nodes
BEGIN
    INSERT INTO knowledge_search(knowledge_search, rowid, path, title, content_summary, state, confidence, vault_name)
    VALUES ('delete', OLD.id, OLD.path, OLD.title, OLD.content_summary, OLD.state, OLD.confidence, OLD.vault_name);
    INSERT INTO knowledge_search(rowid, path, title, content_summary, state, confidence, vault_name)
    VALUES (NEW.id, NEW.path, NEW.title, NEW.content_summary, NEW.state, NEW.confidence, NEW.vault_name);
END;

CREATE TRIGGER IF NOT EXISTS fts_nodes_delete
BEFORE DELETE ON knowledge_nodes
BEGIN
    INSERT INTO knowledge_search(knowledge_search, rowid, path, title, content_summary, state, confidence, vault_name)
    VALUES ('delete', OLD.id, OLD.path, OLD.title, OLD.content_summary, OLD.state, OLD.confidence, OLD.vault_name);
END;

CREATE TRIGGER IF NOT EXISTS mention_count_insert
AFTER INSERT ON entity_mentions
BEGIN
    UPDATE semantic_entities
    SET mention_count = mention_count + 1,
        modified_at   = NEW.created_at
    WHERE id = NEW.entity_id;
END;

CREATE TRIGGER IF NOT EXISTS mention_count_delete
AFTER DELETE ON entity_mentions
BEGIN
    UPDATE semantic_entities
    SET mention_count = mention_count - 1,
        modified_at   = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
    WHERE id = OLD.entity_id;
END;
"""

_VIEWS = """
CREATE VIEW IF NOT EXISTS authority_hierarchy AS
SELECT
    n.id,
    n.path,
    n.title,
    n.state,
    n.confidence,
    n.authority_weight,
    COUNT(se.id) AS dependent_count,
    n.vault_name
FROM knowledge_nodes n
LEFT JOIN semantic_edges se ON n.id = se.target_id
GROUP BY n.id;

CREATE VIEW IF NOT EXISTS knowledge_evolution AS
SELECT
    n.id AS node_id,
    n.path,
    n.title,
    n.state,
    n.vault_name,
    sh.id AS transition_id,
    sh.from_state,
    sh.to_state,
    sh.transition_date,
    sh.reason,
    sh.evidence_quality
FROM knowledge_nodes n
JOIN state_history sh ON n.id = sh.node_id;

CREATE VIEW IF NOT EXISTS relationship_network AS
SELECT
    se.id AS edge_id,
    source.path  AS source_path,
    source.title AS source_title,
    source.state AS source_state,
    se.relation_type,
    target.path  AS target_path,
    target.title AS target_title,
    target.state AS target_state,
    se.confidence,
    se.weight,
    se.inferred,
    source.vault_name
FROM semantic_edges se
JOIN knowledge_nodes source ON se.source_id = source.id
JOIN knowledge_nodes target ON se.target_id = target.id;
"""

REQUIRED_TABLES: tuple[str, ...] = (
    "knowledge_nodes",
    "semantic_edges",
    "semantic_entities",
    "entity_mentions",
    "state_history",
    "sync_metadata",
    "knowledge_search",
)

# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

PragmaValue = Union[str, int]

_PRAGMA_NAME_RE = re.compile(r"^[a-z_]+$")
_PRAGMA_VALUE_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


@dataclass
class DatabaseSettings:
    """Engine-level configuration for one store file."""

    enable_wal: bool = True
    synchronous: str = "NORMAL"
    cache_size: int = 10000
    temp_store: str = "MEMORY"
    mmap_size: int = 268435456  # 256MB
    busy_timeout_ms: int = 10000
    pragmas: dict[str, PragmaValue] = field(default_factory=dict)

    def resolved_pragmas(self) -> dict[str, PragmaValue]:
        """Defaults merged with user overrides (overrides win)."""
        merged: dict[str, PragmaValue] = {
            "journal_mode": "WAL" if self.enable_wal else "DELETE",
            "synchronous": self.synchronous,
            "cache_size": self.cache_size,
            "temp_store": self.temp_store,
            "mmap_size": self.mmap_size,
            "busy_timeout": self.busy_timeout_ms,
        }
        merged.update(self.pragmas)
        # Referential integrity is not negotiable.
        merged["foreign_keys"] = "ON"
        return merged


def apply_pragmas(conn: sqlite3.Connection, settings: DatabaseSettings) -> None:
    """Apply *settings* to *conn*.  Raises ValidationError on a malformed pragma."""
    for name, value in settings.resolved_pragmas().items():
        if not _PRAGMA_NAME_RE.match(name):
            raise ValidationError(f"Invalid pragma name {name!r}")
        if not _PRAGMA_VALUE_RE.match(str(value)):
            raise ValidationError(f"Invalid value {value!r} for pragma {name}")
        conn.execute(f"PRAGMA {name} = {value}")
    logger.debug("[KG] Applied pragmas: %s", settings.resolved_pragmas())


# ---------------------------------------------------------------------------
# Provisioning / verification
# ---------------------------------------------------------------------------

def provision_schema(conn: sqlite3.Connection) -> None:
    """Create every table, index, trigger and view.  Safe to re-run."""
    conn.executescript(
        "BEGIN;\n" + _TABLES + _INDEXES + _TRIGGERS + _VIEWS + "COMMIT;"
    )
    current = conn.execute("PRAGMA user_version").fetchone()[0]
    if current < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


def verify_schema(conn: sqlite3.Connection) -> None:
    """Raise SchemaIntegrityError unless every required table is present and
    the full-text index answers queries."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    present = {r[0] for r in rows}
    missing = [t for t in REQUIRED_TABLES if t not in present]
    if missing:
        raise SchemaIntegrityError(
            f"Required table(s) missing: {', '.join(missing)}"
        )
    try:
        conn.execute("SELECT * FROM knowledge_search LIMIT 1").fetchall()
    except sqlite3.Error as exc:
        raise SchemaIntegrityError(
            f"FTS table 'knowledge_search' is not properly configured: {exc}"
        ) from exc
