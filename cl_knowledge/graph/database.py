"""
SQLite-backed knowledge graph store.

Holds the nodes (one per note), the semantic edges between them, extracted
entities and their mentions, the append-only state history and sync-run
bookkeeping for a vault.  The full-text index and entity mention counts are
maintained by triggers (see :mod:`cl_knowledge.graph.schema`), so callers
never manage them directly.

Every mutating operation runs inside its own ``BEGIN IMMEDIATE`` transaction
and either applies completely or not at all.

Usage::

    with KnowledgeGraphDatabase(default_db_path(vault_root)) as db:
        node_id = db.insert_node(KnowledgeNode(...))
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .errors import (
    ConstraintViolation,
    MaintenanceError,
    MissingReferenceError,
    NotFoundError,
    SchemaIntegrityError,
    ValidationError,
    translate_integrity_error,
)
from .hashing import generate_content_hash
from .models import (
    CONFIDENCE_LEVELS,
    EDGE_UPDATABLE_FIELDS,
    MENTION_TYPES,
    NODE_UPDATABLE_FIELDS,
    STATES,
    SYNC_COUNTERS,
    VALIDATION_STATUSES,
    EntityMention,
    KnowledgeNode,
    NodeEdges,
    NodeUpsertResult,
    SemanticEdge,
    SemanticEntity,
    StateTransition,
    SyncRun,
    require_choice,
    require_count,
    require_number,
    require_text,
    require_unit_interval,
    utc_now,
)
from .schema import DatabaseSettings, apply_pragmas, provision_schema, verify_schema

logger = logging.getLogger(__name__)

DB_DIRNAME = ".cl-state"
DB_FILENAME = "knowledge_graph.db"

INGESTED_STATE_REASON = "state changed in note frontmatter"

_NODE_COLUMNS = (
    "path, title, state, confidence, content_hash, created_at, modified_at, "
    "authority_weight, content_summary, vault_name, file_size, line_count"
)

_EDGE_ORDER = "ORDER BY weight DESC, confidence DESC, id ASC"


def default_db_path(vault_root: str, dirname: str = DB_DIRNAME, filename: str = DB_FILENAME) -> str:
    """Return the well-known store location inside *vault_root*."""
    return os.path.join(vault_root, dirname, filename)


class KnowledgeGraphDatabase:
    """
    Persistent knowledge graph for one vault.

    Parameters
    ----------
    db_path:
        Path to the SQLite file (created if absent) or ``":memory:"``.
    settings:
        Engine configuration.  Defaults to WAL journaling with
        ``synchronous=NORMAL``.

    Raises
    ------
    SchemaIntegrityError
        If the schema cannot be provisioned or fails verification.  The
        connection is closed before the error propagates.
    """

    generate_content_hash = staticmethod(generate_content_hash)

    def __init__(self, db_path: str, settings: Optional[DatabaseSettings] = None) -> None:
        self._db_path = db_path
        self._settings = settings or DatabaseSettings()
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        """Open the connection, apply pragmas, provision and verify the schema."""
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._settings.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            apply_pragmas(conn, self._settings)
            try:
                provision_schema(conn)
            except sqlite3.Error as exc:
                raise SchemaIntegrityError(
                    f"Failed to provision schema in {self._db_path}: {exc}"
                ) from exc
            verify_schema(conn)
        except Exception:
            conn.close()
            raise
        self._conn = conn
        logger.info("[KG] Knowledge graph database initialized: %s", self._db_path)

    def close(self) -> None:
        """Close the database connection.  Safe to call more than once."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("[KG] Closed %s", self._db_path)

    def __enter__(self) -> "KnowledgeGraphDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Knowledge graph database {self._db_path} is closed")
        return self._conn

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run the body as one write transaction; roll back on any error."""
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except sqlite3.IntegrityError as exc:
                conn.execute("ROLLBACK")
                raise translate_integrity_error(exc, operation) from exc
            except sqlite3.Error as exc:
                conn.execute("ROLLBACK")
                logger.error("[KG] %s failed: %s", operation, exc)
                raise
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @contextmanager
    def _snapshot(self) -> Iterator[sqlite3.Connection]:
        """Run several reads against one consistent snapshot."""
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("COMMIT")

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Run a read-only statement and return all rows."""
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    @staticmethod
    def _node_exists(conn: sqlite3.Connection, node_id: int) -> bool:
        return conn.execute(
            "SELECT 1 FROM knowledge_nodes WHERE id = ?", (node_id,)
        ).fetchone() is not None

    def _require_nodes(self, conn: sqlite3.Connection, node_ids: list[int], operation: str) -> None:
        for node_id in node_ids:
            if not self._node_exists(conn, node_id):
                raise MissingReferenceError(f"{operation}: node {node_id} does not exist")

    # ==================================================================
    # Knowledge nodes
    # ==================================================================

    def insert_node(self, node: KnowledgeNode) -> int:
        """
        Insert a new node and return its id.

        ``created_at`` / ``modified_at`` default to now when not supplied.

        Raises
        ------
        ValidationError
            A required field is missing or an enum value is invalid.
        ConstraintViolation
            ``(path, vault_name)`` already exists.
        """
        node.validate()
        with self._transaction(f"insert_node({node.path!r})") as conn:
            node_id = self._insert_node(conn, node)
        logger.debug("[KG] Inserted node %d: %s", node_id, node.path)
        return node_id

    @staticmethod
    def _insert_node(conn: sqlite3.Connection, node: KnowledgeNode) -> int:
        created = node.created_at or utc_now()
        modified = node.modified_at or created
        cur = conn.execute(
            f"INSERT INTO knowledge_nodes ({_NODE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                node.path,
                node.title,
                node.state,
                node.confidence,
                node.content_hash,
                created,
                modified,
                float(node.authority_weight),
                node.content_summary,
                node.vault_name,
                node.file_size,
                node.line_count,
            ),
        )
        return cur.lastrowid

    def update_node(self, node_id: int, updates: dict[str, Any]) -> None:
        """
        Apply only the provided fields to node *node_id*.

        ``modified_at`` is always stamped with the current time; a
        caller-supplied value (and ``id``) is ignored.

        Raises
        ------
        ValidationError
            Unknown field or invalid value.
        NotFoundError
            No node with that id.
        ConstraintViolation
            The new ``(path, vault_name)`` collides with another node.
        """
        changes = self._validate_node_updates(updates)
        with self._transaction(f"update_node({node_id})") as conn:
            self._apply_node_update(conn, node_id, changes)

    @staticmethod
    def _validate_node_updates(updates: dict[str, Any]) -> dict[str, Any]:
        changes = {k: v for k, v in updates.items() if k not in ("id", "modified_at")}
        unknown = sorted(set(changes) - NODE_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown node field(s): {', '.join(unknown)}")
        for key, value in changes.items():
            if key == "state":
                require_choice(value, STATES, "state")
            elif key == "confidence":
                require_choice(value, CONFIDENCE_LEVELS, "confidence")
            elif key in ("path", "title", "vault_name", "content_hash", "created_at"):
                require_text(value, key)
            elif key == "authority_weight":
                require_number(value, key)
            elif key in ("file_size", "line_count"):
                require_count(value, key)
            elif key == "content_summary" and value is not None and not isinstance(value, str):
                raise ValidationError("content_summary must be a string or None")
        return changes

    @staticmethod
    def _apply_node_update(conn: sqlite3.Connection, node_id: int, changes: dict[str, Any]) -> None:
        # Column names come from NODE_UPDATABLE_FIELDS, never from raw input.
        assignments = [f"{key} = ?" for key in changes]
        assignments.append("modified_at = ?")
        params = list(changes.values()) + [utc_now(), node_id]
        cur = conn.execute(
            f"UPDATE knowledge_nodes SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Node {node_id} not found")

    def upsert_node(self, node: KnowledgeNode) -> NodeUpsertResult:
        """
        Ingestion entry point: insert *node*, or update the stored node with
        the same ``(path, vault_name)`` when its content hash differs.

        An identical ``content_hash`` means the note has not changed; nothing
        is written and ``modified_at`` stays as it was.  When the new content
        carries a different state, the change is appended to the node's
        history in the same transaction.
        """
        node.validate()
        with self._transaction(f"upsert_node({node.path!r})") as conn:
            row = conn.execute(
                "SELECT id, content_hash, state, confidence FROM knowledge_nodes "
                "WHERE path = ? AND vault_name = ?",
                (node.path, node.vault_name),
            ).fetchone()
            if row is None:
                return NodeUpsertResult(self._insert_node(conn, node), "added")
            if row["content_hash"] == node.content_hash:
                return NodeUpsertResult(row["id"], "unchanged")
            self._apply_node_update(conn, row["id"], {
                "title": node.title,
                "state": node.state,
                "confidence": node.confidence,
                "content_hash": node.content_hash,
                "content_summary": node.content_summary,
                "file_size": node.file_size,
                "line_count": node.line_count,
            })
            if row["state"] != node.state:
                self._insert_transition(conn, StateTransition(
                    node_id=row["id"],
                    from_state=row["state"],
                    from_confidence=row["confidence"],
                    to_state=node.state,
                    to_confidence=node.confidence,
                    reason=INGESTED_STATE_REASON,
                ))
                logger.info(
                    "[KG] %s: state %s -> %s picked up from note content",
                    node.path, row["state"], node.state,
                )
            return NodeUpsertResult(row["id"], "updated")

    def get_node_by_id(self, node_id: int) -> Optional[KnowledgeNode]:
        """Return the node with id *node_id*, or None."""
        rows = self.query("SELECT * FROM knowledge_nodes WHERE id = ?", (node_id,))
        return KnowledgeNode.from_row(rows[0]) if rows else None

    def require_node(self, node_id: int) -> KnowledgeNode:
        """Like :meth:`get_node_by_id` but raises NotFoundError."""
        node = self.get_node_by_id(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found")
        return node

    def get_node_by_path(self, path: str, vault_name: str) -> Optional[KnowledgeNode]:
        """Return the node at *path* in *vault_name*, or None."""
        rows = self.query(
            "SELECT * FROM knowledge_nodes WHERE path = ? AND vault_name = ?",
            (path, vault_name),
        )
        return KnowledgeNode.from_row(rows[0]) if rows else None

    def get_nodes_by_state(self, state: str, vault_name: Optional[str] = None) -> list[KnowledgeNode]:
        """
        Return nodes in *state*, most authoritative then freshest first.

        Parameters
        ----------
        state:
            One of ``plasma``, ``fluid``, ``gel``, ``crystal``.
        vault_name:
            Optional vault scope.
        """
        require_choice(state, STATES, "state")
        sql = "SELECT * FROM knowledge_nodes WHERE state = ?"
        params: list[Any] = [state]
        if vault_name:
            sql += " AND vault_name = ?"
            params.append(vault_name)
        sql += " ORDER BY authority_weight DESC, modified_at DESC, id ASC"
        return [KnowledgeNode.from_row(r) for r in self.query(sql, params)]

    def list_nodes(self, vault_name: Optional[str] = None) -> list[KnowledgeNode]:
        """Return every node (optionally in one vault), ordered by path."""
        if vault_name:
            rows = self.query(
                "SELECT * FROM knowledge_nodes WHERE vault_name = ? ORDER BY path",
                (vault_name,),
            )
        else:
            rows = self.query("SELECT * FROM knowledge_nodes ORDER BY vault_name, path")
        return [KnowledgeNode.from_row(r) for r in rows]

    def get_node_ids_by_path(self, vault_name: str) -> dict[str, int]:
        """Return ``{path: node_id}`` for every node in *vault_name*."""
        rows = self.query(
            "SELECT id, path FROM knowledge_nodes WHERE vault_name = ?", (vault_name,)
        )
        return {r["path"]: r["id"] for r in rows}

    def delete_node(self, node_id: int) -> bool:
        """
        Delete a node together with its edges, mentions and history.

        Entities pointing at it as their authority keep existing with the
        pointer cleared.  Returns False (without raising) when the node did
        not exist.
        """
        with self._transaction(f"delete_node({node_id})") as conn:
            cur = conn.execute("DELETE FROM knowledge_nodes WHERE id = ?", (node_id,))
        deleted = cur.rowcount > 0
        if deleted:
            logger.debug("[KG] Deleted node %d", node_id)
        return deleted

    def set_authority_weights(self, weights: dict[int, float]) -> int:
        """
        Persist externally computed authority weights.

        This rewrites a derived score, not note content, so ``modified_at``
        is left alone.  Returns the number of nodes updated.
        """
        for node_id, weight in weights.items():
            require_number(weight, f"authority_weight for node {node_id}")
        if not weights:
            return 0
        with self._transaction("set_authority_weights") as conn:
            cur = conn.executemany(
                "UPDATE knowledge_nodes SET authority_weight = ? WHERE id = ?",
                [(float(w), node_id) for node_id, w in weights.items()],
            )
        return cur.rowcount

    # ==================================================================
    # Semantic edges
    # ==================================================================

    def insert_edge(self, edge: SemanticEdge) -> int:
        """
        Insert a relationship and return its id.

        Raises
        ------
        ValidationError
            Invalid confidence, relation type or validation status.
        MissingReferenceError
            Either endpoint does not exist.
        ConstraintViolation
            ``(source_id, target_id, relation_type)`` already exists.
        """
        edge.validate()
        op = f"insert_edge({edge.source_id}->{edge.target_id} {edge.relation_type})"
        with self._transaction(op) as conn:
            self._require_nodes(conn, [edge.source_id, edge.target_id], op)
            now = utc_now()
            cur = conn.execute(
                """
                INSERT INTO semantic_edges
                    (source_id, target_id, relation_type, confidence, evidence,
                     inferred, created_at, modified_at, weight, validation_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    edge.source_id,
                    edge.target_id,
                    edge.relation_type,
                    float(edge.confidence),
                    edge.evidence,
                    1 if edge.inferred else 0,
                    edge.created_at or now,
                    edge.modified_at or now,
                    float(edge.weight),
                    edge.validation_status,
                ),
            )
        return cur.lastrowid

    def upsert_edge(self, edge: SemanticEdge) -> int:
        """
        Insert *edge*, or revise the existing edge with the same
        ``(source_id, target_id, relation_type)``.  Returns the edge id.
        """
        edge.validate()
        op = f"upsert_edge({edge.source_id}->{edge.target_id} {edge.relation_type})"
        with self._transaction(op) as conn:
            self._require_nodes(conn, [edge.source_id, edge.target_id], op)
            now = utc_now()
            conn.execute(
                """
                INSERT INTO semantic_edges
                    (source_id, target_id, relation_type, confidence, evidence,
                     inferred, created_at, modified_at, weight, validation_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id, target_id, relation_type) DO UPDATE SET
                    confidence        = excluded.confidence,
                    evidence          = excluded.evidence,
                    inferred          = excluded.inferred,
                    weight            = excluded.weight,
                    validation_status = excluded.validation_status,
                    modified_at       = excluded.modified_at
                """,
                (
                    edge.source_id,
                    edge.target_id,
                    edge.relation_type,
                    float(edge.confidence),
                    edge.evidence,
                    1 if edge.inferred else 0,
                    now,
                    now,
                    float(edge.weight),
                    edge.validation_status,
                ),
            )
            row = conn.execute(
                "SELECT id FROM semantic_edges "
                "WHERE source_id = ? AND target_id = ? AND relation_type = ?",
                (edge.source_id, edge.target_id, edge.relation_type),
            ).fetchone()
        return row["id"]

    def update_edge(self, edge_id: int, updates: dict[str, Any]) -> None:
        """Revise confidence / evidence / inferred / weight / validation_status."""
        changes = {k: v for k, v in updates.items() if k not in ("id", "modified_at")}
        unknown = sorted(set(changes) - EDGE_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown or immutable edge field(s): {', '.join(unknown)}")
        if "confidence" in changes:
            changes["confidence"] = require_unit_interval(changes["confidence"], "confidence")
        if "weight" in changes:
            changes["weight"] = require_number(changes["weight"], "weight")
        if "validation_status" in changes:
            require_choice(changes["validation_status"], VALIDATION_STATUSES, "validation_status")
        if "inferred" in changes:
            changes["inferred"] = 1 if changes["inferred"] else 0

        assignments = [f"{key} = ?" for key in changes] + ["modified_at = ?"]
        params = list(changes.values()) + [utc_now(), edge_id]
        with self._transaction(f"update_edge({edge_id})") as conn:
            cur = conn.execute(
                f"UPDATE semantic_edges SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Edge {edge_id} not found")

    def get_edge_by_id(self, edge_id: int) -> Optional[SemanticEdge]:
        rows = self.query("SELECT * FROM semantic_edges WHERE id = ?", (edge_id,))
        return SemanticEdge.from_row(rows[0]) if rows else None

    def delete_edge(self, edge_id: int) -> bool:
        with self._transaction(f"delete_edge({edge_id})") as conn:
            cur = conn.execute("DELETE FROM semantic_edges WHERE id = ?", (edge_id,))
        return cur.rowcount > 0

    def delete_edges_from(self, source_id: int, relation_types: Optional[list[str]] = None) -> int:
        """Delete outgoing edges of *source_id* (optionally only some relation types)."""
        sql = "DELETE FROM semantic_edges WHERE source_id = ?"
        params: list[Any] = [source_id]
        if relation_types:
            sql += f" AND relation_type IN ({','.join('?' for _ in relation_types)})"
            params.extend(relation_types)
        with self._transaction(f"delete_edges_from({source_id})") as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount

    def get_edges_for_node(self, node_id: int) -> NodeEdges:
        """Return outgoing and incoming edges of *node_id*, strongest first."""
        with self._snapshot() as conn:
            outgoing = conn.execute(
                f"SELECT * FROM semantic_edges WHERE source_id = ? {_EDGE_ORDER}",
                (node_id,),
            ).fetchall()
            incoming = conn.execute(
                f"SELECT * FROM semantic_edges WHERE target_id = ? {_EDGE_ORDER}",
                (node_id,),
            ).fetchall()
        return NodeEdges(
            outgoing=[SemanticEdge.from_row(r) for r in outgoing],
            incoming=[SemanticEdge.from_row(r) for r in incoming],
        )

    def get_edges_by_type(self, relation_type: str, vault_name: Optional[str] = None) -> list[SemanticEdge]:
        """
        Return edges of *relation_type*, strongest first.

        When *vault_name* is given, only edges whose source node lives in
        that vault are returned.
        """
        sql = (
            "SELECT se.* FROM semantic_edges se "
            "JOIN knowledge_nodes n ON se.source_id = n.id "
            "WHERE se.relation_type = ?"
        )
        params: list[Any] = [relation_type]
        if vault_name:
            sql += " AND n.vault_name = ?"
            params.append(vault_name)
        sql += " ORDER BY se.weight DESC, se.confidence DESC, se.id ASC"
        return [SemanticEdge.from_row(r) for r in self.query(sql, params)]

    # ==================================================================
    # Entities and mentions
    # ==================================================================

    def upsert_entity(
        self,
        name: str,
        entity_type: str,
        vault_name: str,
        description: Optional[str] = None,
        confidence: float = 0.5,
    ) -> int:
        """Return the id of entity *name*, creating it on first sight."""
        require_text(name, "name")
        require_text(entity_type, "entity_type")
        require_text(vault_name, "vault_name")
        require_unit_interval(confidence, "confidence")
        with self._transaction(f"upsert_entity({name!r})") as conn:
            row = conn.execute(
                "SELECT id FROM semantic_entities WHERE name = ?", (name,)
            ).fetchone()
            if row is not None:
                return row["id"]
            return self._insert_entity(conn, name, entity_type, vault_name, description, confidence)

    def insert_entity(
        self,
        name: str,
        entity_type: str,
        vault_name: str,
        description: Optional[str] = None,
        confidence: float = 0.5,
    ) -> int:
        """Create a new entity.  Raises ConstraintViolation if the name exists."""
        require_text(name, "name")
        require_text(entity_type, "entity_type")
        require_text(vault_name, "vault_name")
        require_unit_interval(confidence, "confidence")
        with self._transaction(f"insert_entity({name!r})") as conn:
            return self._insert_entity(conn, name, entity_type, vault_name, description, confidence)

    @staticmethod
    def _insert_entity(conn, name, entity_type, vault_name, description, confidence) -> int:
        now = utc_now()
        cur = conn.execute(
            """
            INSERT INTO semantic_entities
                (name, entity_type, description, confidence, vault_name,
                 created_at, modified_at, mention_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (name, entity_type, description, float(confidence), vault_name, now, now),
        )
        return cur.lastrowid

    def get_entity(self, entity_id: int) -> Optional[SemanticEntity]:
        rows = self.query("SELECT * FROM semantic_entities WHERE id = ?", (entity_id,))
        return SemanticEntity.from_row(rows[0]) if rows else None

    def get_entity_by_name(self, name: str) -> Optional[SemanticEntity]:
        rows = self.query("SELECT * FROM semantic_entities WHERE name = ?", (name,))
        return SemanticEntity.from_row(rows[0]) if rows else None

    def list_entities(
        self,
        vault_name: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> list[SemanticEntity]:
        """Return entities, most mentioned first."""
        clauses: list[str] = []
        params: list[Any] = []
        if vault_name:
            clauses.append("vault_name = ?")
            params.append(vault_name)
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.query(
            f"SELECT * FROM semantic_entities{where} ORDER BY mention_count DESC, name",
            params,
        )
        return [SemanticEntity.from_row(r) for r in rows]

    def set_entity_authority(self, entity_id: int, node_id: Optional[int]) -> None:
        """Point entity *entity_id* at its authoritative node (or clear it)."""
        op = f"set_entity_authority({entity_id}, {node_id})"
        with self._transaction(op) as conn:
            if node_id is not None:
                self._require_nodes(conn, [node_id], op)
            cur = conn.execute(
                "UPDATE semantic_entities SET authority_node_id = ?, modified_at = ? WHERE id = ?",
                (node_id, utc_now(), entity_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Entity {entity_id} not found")

    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity and its mentions."""
        with self._transaction(f"delete_entity({entity_id})") as conn:
            cur = conn.execute("DELETE FROM semantic_entities WHERE id = ?", (entity_id,))
        return cur.rowcount > 0

    def record_mention(
        self,
        entity_id: int,
        node_id: int,
        mention_text: str,
        context: Optional[str] = None,
        confidence: float = 1.0,
        span: Optional[tuple[int, int]] = None,
        mention_type: str = "reference",
    ) -> int:
        """
        Record an occurrence of entity *entity_id* inside node *node_id*.

        The entity's ``mention_count`` is incremented in the same
        transaction.

        Parameters
        ----------
        span:
            ``(position_start, position_end)`` character offsets, or None.

        Raises
        ------
        ValidationError
            Bad mention type, confidence or span.
        MissingReferenceError
            The entity or node does not exist.
        """
        require_text(mention_text, "mention_text")
        require_unit_interval(confidence, "confidence")
        require_choice(mention_type, MENTION_TYPES, "mention_type")
        start, end = (None, None) if span is None else span
        if span is not None:
            require_count(start, "position_start")
            require_count(end, "position_end")
            if end < start:
                raise ValidationError(f"position_end ({end}) precedes position_start ({start})")

        op = f"record_mention(entity={entity_id}, node={node_id})"
        with self._transaction(op) as conn:
            if conn.execute(
                "SELECT 1 FROM semantic_entities WHERE id = ?", (entity_id,)
            ).fetchone() is None:
                raise MissingReferenceError(f"{op}: entity {entity_id} does not exist")
            self._require_nodes(conn, [node_id], op)
            cur = conn.execute(
                """
                INSERT INTO entity_mentions
                    (entity_id, node_id, mention_text, context, confidence,
                     position_start, position_end, mention_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (entity_id, node_id, mention_text, context, float(confidence),
                 start, end, mention_type, utc_now()),
            )
        return cur.lastrowid

    def remove_mention(self, mention_id: int) -> bool:
        """Delete a mention; the owning entity's count drops in the same transaction."""
        with self._transaction(f"remove_mention({mention_id})") as conn:
            cur = conn.execute("DELETE FROM entity_mentions WHERE id = ?", (mention_id,))
        return cur.rowcount > 0

    def get_mentions_for_entity(self, entity_id: int) -> list[EntityMention]:
        rows = self.query(
            "SELECT * FROM entity_mentions WHERE entity_id = ? ORDER BY node_id, position_start, id",
            (entity_id,),
        )
        return [EntityMention.from_row(r) for r in rows]

    def get_mentions_for_node(self, node_id: int) -> list[EntityMention]:
        rows = self.query(
            "SELECT * FROM entity_mentions WHERE node_id = ? ORDER BY position_start, id",
            (node_id,),
        )
        return [EntityMention.from_row(r) for r in rows]

    # ==================================================================
    # State history
    # ==================================================================

    def record_state_transition(self, transition: StateTransition) -> int:
        """
        Append a transition to the history of ``transition.node_id``.

        Legality of the move is not checked here; that is the job of the
        calling layer (see :mod:`cl_knowledge.graph.transitions`).
        """
        transition.validate()
        op = f"record_state_transition(node={transition.node_id})"
        with self._transaction(op) as conn:
            self._require_nodes(conn, [transition.node_id], op)
            return self._insert_transition(conn, transition)

    @staticmethod
    def _insert_transition(conn: sqlite3.Connection, t: StateTransition) -> int:
        cur = conn.execute(
            """
            INSERT INTO state_history
                (node_id, from_state, to_state, from_confidence, to_confidence,
                 reason, evidence_quality, transition_date, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                t.node_id,
                t.from_state,
                t.to_state,
                t.from_confidence,
                t.to_confidence,
                t.reason,
                float(t.evidence_quality),
                t.transition_date or utc_now(),
                t.user_id,
            ),
        )
        return cur.lastrowid

    def apply_state_transition(
        self,
        node_id: int,
        to_state: str,
        reason: Optional[str] = None,
        to_confidence: Optional[str] = None,
        evidence_quality: float = 0.5,
        user_id: Optional[str] = None,
    ) -> int:
        """
        Move node *node_id* to *to_state* and append the history row, in a
        single transaction.  Returns the history row id.

        ``from_state`` / ``from_confidence`` are taken from the stored node;
        *to_confidence* defaults to the node's current confidence.
        """
        op = f"apply_state_transition(node={node_id}, to={to_state})"
        with self._transaction(op) as conn:
            row = conn.execute(
                "SELECT state, confidence FROM knowledge_nodes WHERE id = ?", (node_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Node {node_id} not found")
            transition = StateTransition(
                node_id=node_id,
                from_state=row["state"],
                from_confidence=row["confidence"],
                to_state=to_state,
                to_confidence=to_confidence or row["confidence"],
                reason=reason,
                evidence_quality=evidence_quality,
                user_id=user_id,
            )
            transition.validate()
            self._apply_node_update(conn, node_id, {
                "state": transition.to_state,
                "confidence": transition.to_confidence,
            })
            history_id = self._insert_transition(conn, transition)
        logger.info(
            "[KG] Node %d: %s -> %s", node_id, transition.from_state, transition.to_state
        )
        return history_id

    def get_state_history(self, node_id: int) -> list[StateTransition]:
        """Return the transitions of *node_id*, most recent first."""
        rows = self.query(
            "SELECT * FROM state_history WHERE node_id = ? "
            "ORDER BY transition_date DESC, id DESC",
            (node_id,),
        )
        return [StateTransition.from_row(r) for r in rows]

    # ==================================================================
    # Sync runs
    # ==================================================================

    def start_sync(self, vault_name: str) -> int:
        """Open a ``running`` sync record with all counters at zero."""
        require_text(vault_name, "vault_name")
        with self._transaction(f"start_sync({vault_name!r})") as conn:
            cur = conn.execute(
                "INSERT INTO sync_metadata (vault_name, sync_start, status) VALUES (?, ?, 'running')",
                (vault_name, utc_now()),
            )
        logger.info("[KG] Sync %d started for vault %s", cur.lastrowid, vault_name)
        return cur.lastrowid

    def update_sync_progress(
        self,
        sync_id: int,
        counters: dict[str, int],
        increment: bool = False,
    ) -> None:
        """
        Merge the provided counters into sync run *sync_id*.

        Parameters
        ----------
        counters:
            Subset of ``notes_processed``, ``notes_added``, ``notes_updated``,
            ``notes_deleted``, ``relationships_found``.
        increment:
            When True the values are added to the stored counters instead of
            replacing them.
        """
        unknown = sorted(set(counters) - set(SYNC_COUNTERS))
        if unknown:
            raise ValidationError(f"Unknown sync counter(s): {', '.join(unknown)}")
        for key, value in counters.items():
            if increment:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError(f"{key} delta must be an integer, got {value!r}")
            else:
                require_count(value, key)

        if increment:
            assignments = [f"{key} = {key} + ?" for key in counters]
        else:
            assignments = [f"{key} = ?" for key in counters]
        with self._transaction(f"update_sync_progress({sync_id})") as conn:
            if not counters:
                cur = conn.execute("SELECT 1 FROM sync_metadata WHERE id = ?", (sync_id,))
                found = cur.fetchone() is not None
            else:
                cur = conn.execute(
                    f"UPDATE sync_metadata SET {', '.join(assignments)} WHERE id = ?",
                    list(counters.values()) + [sync_id],
                )
                found = cur.rowcount > 0
            if not found:
                raise NotFoundError(f"Sync run {sync_id} not found")
            if increment and counters:
                row = conn.execute(
                    f"SELECT {', '.join(counters)} FROM sync_metadata WHERE id = ?", (sync_id,)
                ).fetchone()
                negative = [key for key in counters if row[key] < 0]
                if negative:
                    raise ValidationError(
                        f"Sync run {sync_id}: counter(s) would drop below zero: {', '.join(negative)}"
                    )

    def complete_sync(self, sync_id: int, status: str, error_message: Optional[str] = None) -> None:
        """
        Finalize sync run *sync_id* with *status* (``completed`` or ``failed``).

        Finalizing twice is tolerated (last write wins) but logged.
        """
        require_choice(status, ("completed", "failed"), "status")
        with self._transaction(f"complete_sync({sync_id})") as conn:
            row = conn.execute(
                "SELECT status FROM sync_metadata WHERE id = ?", (sync_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Sync run {sync_id} not found")
            if row["status"] != "running":
                logger.warning(
                    "[KG] Sync %d already finalized as %s; overwriting with %s",
                    sync_id, row["status"], status,
                )
            conn.execute(
                "UPDATE sync_metadata SET status = ?, sync_end = ?, error_message = ? WHERE id = ?",
                (status, utc_now(), error_message, sync_id),
            )
        logger.info("[KG] Sync %d %s", sync_id, status)

    def get_sync_run(self, sync_id: int) -> Optional[SyncRun]:
        rows = self.query("SELECT * FROM sync_metadata WHERE id = ?", (sync_id,))
        return SyncRun.from_row(rows[0]) if rows else None

    def get_latest_sync(self, vault_name: str) -> Optional[SyncRun]:
        rows = self.query(
            "SELECT * FROM sync_metadata WHERE vault_name = ? ORDER BY sync_start DESC, id DESC LIMIT 1",
            (vault_name,),
        )
        return SyncRun.from_row(rows[0]) if rows else None

    def list_sync_runs(self, vault_name: Optional[str] = None, limit: int = 20) -> list[SyncRun]:
        if vault_name:
            rows = self.query(
                "SELECT * FROM sync_metadata WHERE vault_name = ? ORDER BY id DESC LIMIT ?",
                (vault_name, limit),
            )
        else:
            rows = self.query("SELECT * FROM sync_metadata ORDER BY id DESC LIMIT ?", (limit,))
        return [SyncRun.from_row(r) for r in rows]

    # ==================================================================
    # Statistics & maintenance
    # ==================================================================

    def get_statistics(self, vault_name: Optional[str] = None) -> dict[str, int]:
        """
        Return aggregate counts.

        Returns
        -------
        dict
            Keys: ``plasma_nodes``, ``fluid_nodes``, ``gel_nodes``,
            ``crystal_nodes``, ``total_nodes``, ``total_edges``,
            ``total_entities``.  Edges are scoped through their source node.
        """
        where = " WHERE vault_name = ?" if vault_name else ""
        edge_where = " WHERE n.vault_name = ?" if vault_name else ""
        params: tuple = (vault_name,) if vault_name else ()

        stats: dict[str, int] = {f"{state}_nodes": 0 for state in STATES}
        with self._snapshot() as conn:
            for row in conn.execute(
                f"SELECT state, COUNT(*) AS cnt FROM knowledge_nodes{where} GROUP BY state",
                params,
            ):
                stats[f"{row['state']}_nodes"] = row["cnt"]
            stats["total_nodes"] = conn.execute(
                f"SELECT COUNT(*) FROM knowledge_nodes{where}", params
            ).fetchone()[0]
            stats["total_edges"] = conn.execute(
                "SELECT COUNT(*) FROM semantic_edges se "
                f"JOIN knowledge_nodes n ON se.source_id = n.id{edge_where}",
                params,
            ).fetchone()[0]
            stats["total_entities"] = conn.execute(
                f"SELECT COUNT(*) FROM semantic_entities{where}", params
            ).fetchone()[0]
        return stats

    def maintain(self) -> None:
        """
        Rebuild the full-text index, refresh planner statistics and, when
        WAL is off, reclaim unused space.

        Blocks other writers while running.

        Raises
        ------
        MaintenanceError
            A step failed.  The store remains usable.
        """
        with self._lock:
            conn = self._require_conn()
            steps = [
                ("fts rebuild", "INSERT INTO knowledge_search(knowledge_search) VALUES ('rebuild')"),
                ("analyze", "ANALYZE"),
            ]
            if not self._settings.enable_wal:
                steps.append(("vacuum", "VACUUM"))
            for name, sql in steps:
                try:
                    conn.execute(sql)
                except sqlite3.Error as exc:
                    logger.error("[KG] Maintenance step %s failed: %s", name, exc)
                    raise MaintenanceError(f"Maintenance step '{name}' failed: {exc}") from exc
        logger.info("[KG] Maintenance complete for %s", self._db_path)
