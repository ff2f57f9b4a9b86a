"""
Vault indexer — synchronizes a directory of markdown notes into the
knowledge graph.

Full sync:
  1. Open a sync run
  2. Walk the vault for ``*.md`` files (skipping hidden / configured dirs)
  3. Upsert a node per note (unchanged content hash => no write)
  4. Delete nodes whose files are gone
  5. Resolve ``[[wikilinks]]`` (``links_to``) and frontmatter
     ``dependencies`` (``depends_on``) into edges
  6. Refresh authority weights and close the sync run

Incremental update:
  Triggered by the vault watcher; re-indexes only the changed note.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from ..config import Config
from ..graph.authority import refresh_authority_weights
from ..graph.database import KnowledgeGraphDatabase
from ..graph.errors import NotFoundError
from ..graph.hashing import generate_content_hash
from ..graph.models import (
    CONFIDENCE_LEVELS,
    STATES,
    KnowledgeNode,
    NodeUpsertResult,
    SemanticEdge,
)
from ..graph.transitions import transition_node
from .frontmatter import ParsedNote, parse_note, set_lifecycle_state

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"

LINKS_TO = "links_to"
DEPENDS_ON = "depends_on"
EXPLICIT_RELATIONS = [LINKS_TO, DEPENDS_ON]

# A declared dependency is a stronger authority signal than a passing link.
_RELATION_WEIGHTS = {LINKS_TO: 1.0, DEPENDS_ON: 2.0}


@dataclass
class SyncSummary:
    """Counters reported by :meth:`VaultIndexer.sync`."""

    sync_id: int
    notes_processed: int = 0
    notes_added: int = 0
    notes_updated: int = 0
    notes_unchanged: int = 0
    notes_deleted: int = 0
    relationships_found: int = 0
    error_count: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Link resolution
# ---------------------------------------------------------------------------

class LinkResolver:
    """
    Maps wikilink targets to node ids.

    A target matches, case-insensitively, a note's file name (without
    ``.md``), then its title, then its vault-relative path.
    """

    def __init__(self, nodes: list[KnowledgeNode]) -> None:
        self._by_name: dict[str, int] = {}
        self._by_title: dict[str, int] = {}
        self._by_path: dict[str, int] = {}
        for node in nodes:
            stem = _strip_ext(os.path.basename(node.path)).lower()
            self._by_name.setdefault(stem, node.id)
            self._by_title.setdefault(node.title.lower(), node.id)
            self._by_path[_strip_ext(node.path).lower()] = node.id

    def resolve(self, target: str) -> Optional[int]:
        key = _strip_ext(target.strip().replace("\\", "/")).lower()
        if not key:
            return None
        if "/" in key:
            return self._by_path.get(key.lstrip("/"))
        return self._by_name.get(key) or self._by_title.get(key) or self._by_path.get(key)


def _strip_ext(name: str) -> str:
    return name[: -len(NOTE_EXTENSION)] if name.lower().endswith(NOTE_EXTENSION) else name


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class VaultIndexer:
    """
    Orchestrates full and incremental indexing of one vault.

    Parameters
    ----------
    db:
        Open knowledge graph database.
    vault_root:
        Vault directory.
    vault_name:
        Name stored on every node; defaults to the directory name.
    config:
        Ingestion settings (skip dirs, default state / confidence).
    """

    def __init__(
        self,
        db: KnowledgeGraphDatabase,
        vault_root: str,
        vault_name: Optional[str] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.db = db
        self.vault_root = os.path.abspath(vault_root)
        self.vault_name = vault_name or os.path.basename(self.vault_root)
        self.config = config or Config()
        self._skip_dirs = frozenset(self.config.SKIP_DIRS)

    # ------------------------------------------------------------------
    # Walking / parsing
    # ------------------------------------------------------------------

    def is_ignored(self, rel_path: str) -> bool:
        """True if *rel_path* is not a note or sits in a skipped/hidden dir."""
        parts = rel_path.replace("\\", "/").split("/")
        if not parts[-1].lower().endswith(NOTE_EXTENSION):
            return True
        return any(p in self._skip_dirs or p.startswith(".") for p in parts[:-1])

    def walk_notes(self) -> list[str]:
        """Return vault-relative paths (``/``-separated) of every note."""
        results: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.vault_root, topdown=True):
            dirnames[:] = [
                d for d in dirnames
                if d not in self._skip_dirs and not d.startswith(".")
            ]
            for fname in filenames:
                if not fname.lower().endswith(NOTE_EXTENSION):
                    continue
                rel_path = os.path.relpath(os.path.join(dirpath, fname), self.vault_root)
                results.append(rel_path.replace(os.sep, "/"))
        return sorted(results)

    def _read_note(self, rel_path: str) -> tuple[KnowledgeNode, ParsedNote]:
        abs_path = os.path.join(self.vault_root, rel_path)
        with open(abs_path, "rb") as fh:
            raw = fh.read()
        text = raw.decode("utf-8", errors="replace")
        note = parse_note(text, rel_path)

        state = note.state
        if state not in STATES:
            if state is not None:
                logger.warning(
                    "[Vault indexer] %s: unknown state %r, using %s",
                    rel_path, state, self.config.DEFAULT_STATE,
                )
            state = self.config.DEFAULT_STATE
        confidence = note.confidence
        if confidence not in CONFIDENCE_LEVELS:
            if confidence is not None:
                logger.warning(
                    "[Vault indexer] %s: unknown confidence %r, using %s",
                    rel_path, confidence, self.config.DEFAULT_CONFIDENCE,
                )
            confidence = self.config.DEFAULT_CONFIDENCE

        node = KnowledgeNode(
            path=rel_path,
            title=note.title,
            vault_name=self.vault_name,
            content_hash=generate_content_hash(raw),
            state=state,
            confidence=confidence,
            content_summary=note.summary,
            file_size=len(raw),
            line_count=text.count("\n") + (1 if text and not text.endswith("\n") else 0),
        )
        return node, note

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def _write_links(self, node_id: int, note: ParsedNote, resolver: LinkResolver) -> int:
        """
        Make the explicit outgoing edges of *node_id* match *note*.

        Returns the number of edges the note now has.
        """
        desired: dict[tuple[int, str], str] = {}
        for link in note.wikilinks:
            target_id = resolver.resolve(link.note_name)
            if target_id is None:
                logger.debug("[Vault indexer] Unresolved link [[%s]]", link.target)
                continue
            if target_id != node_id:
                desired.setdefault((target_id, LINKS_TO), f"[[{link.target}]]")
        for dep in note.dependencies:
            target_id = resolver.resolve(dep)
            if target_id is None:
                logger.debug("[Vault indexer] Unresolved dependency %r", dep)
                continue
            if target_id != node_id:
                desired.setdefault((target_id, DEPENDS_ON), f"dependencies: {dep}")

        for edge in self.db.get_edges_for_node(node_id).outgoing:
            if edge.relation_type in EXPLICIT_RELATIONS and \
                    (edge.target_id, edge.relation_type) not in desired:
                self.db.delete_edge(edge.id)

        for (target_id, relation), evidence in desired.items():
            self.db.upsert_edge(SemanticEdge(
                source_id=node_id,
                target_id=target_id,
                relation_type=relation,
                confidence=1.0,
                evidence=evidence,
                inferred=False,
                weight=_RELATION_WEIGHTS[relation],
            ))
        return len(desired)

    def _resolver(self) -> LinkResolver:
        return LinkResolver(self.db.list_nodes(self.vault_name))

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    def sync(
        self,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> SyncSummary:
        """
        Bring the store in line with the vault on disk.

        Parameters
        ----------
        progress_callback:
            Optional callable called with (current, total, path) for each
            processed note.

        Returns
        -------
        SyncSummary

        Raises
        ------
        Exception
            Any store error aborts the run; the sync record is closed as
            ``failed`` with the error message before re-raising.
        """
        start_time = time.time()
        previous = self.db.get_latest_sync(self.vault_name)
        # An unfinished previous run may have stored hashes without their edges.
        relink_all = previous is not None and previous.status != "completed"
        sync_id = self.db.start_sync(self.vault_name)
        summary = SyncSummary(sync_id=sync_id)
        try:
            notes = self.walk_notes()
            known = self.db.get_node_ids_by_path(self.vault_name)
            total = len(notes)
            parsed: dict[int, ParsedNote] = {}
            changed: set[int] = set()

            for idx, rel_path in enumerate(notes):
                if progress_callback:
                    progress_callback(idx + 1, total, rel_path)
                try:
                    node, note = self._read_note(rel_path)
                except OSError as exc:
                    logger.warning("[Vault indexer] Cannot read %s: %s", rel_path, exc)
                    summary.error_count += 1
                    continue
                result = self.db.upsert_node(node)
                summary.notes_processed += 1
                if result.action == "added":
                    summary.notes_added += 1
                elif result.action == "updated":
                    summary.notes_updated += 1
                else:
                    summary.notes_unchanged += 1
                parsed[result.node_id] = note
                if result.changed:
                    changed.add(result.node_id)

            present = set(notes)
            for path, node_id in known.items():
                if path not in present and self.db.delete_node(node_id):
                    summary.notes_deleted += 1

            # New or removed notes can change how any link resolves.
            if relink_all or summary.notes_added or summary.notes_deleted:
                relink = set(parsed)
            else:
                relink = changed
            if relink:
                resolver = self._resolver()
                for node_id in sorted(relink):
                    summary.relationships_found += self._write_links(node_id, parsed[node_id], resolver)
                refresh_authority_weights(self.db, self.vault_name)

            self.db.update_sync_progress(sync_id, {
                "notes_processed": summary.notes_processed,
                "notes_added": summary.notes_added,
                "notes_updated": summary.notes_updated,
                "notes_deleted": summary.notes_deleted,
                "relationships_found": summary.relationships_found,
            })
            self.db.complete_sync(sync_id, "completed")
        except Exception as exc:
            logger.error("[Vault indexer] Sync %d failed: %s", sync_id, exc)
            self.db.complete_sync(sync_id, "failed", str(exc))
            raise

        summary.elapsed_seconds = round(time.time() - start_time, 2)
        logger.info(
            "[Vault indexer] Sync complete for %s: %d processed, %d added, "
            "%d updated, %d deleted, %d relationships in %.1fs",
            self.vault_name,
            summary.notes_processed,
            summary.notes_added,
            summary.notes_updated,
            summary.notes_deleted,
            summary.relationships_found,
            summary.elapsed_seconds,
        )
        return summary

    # ------------------------------------------------------------------
    # Incremental update (called by vault watcher)
    # ------------------------------------------------------------------

    def index_file(self, rel_path: str) -> Optional[NodeUpsertResult]:
        """
        Re-index a single changed or newly created note.

        Links from other notes to a brand-new note are picked up on the
        next full :meth:`sync`.  Returns None when the file no longer exists.
        """
        rel_path = rel_path.replace(os.sep, "/")
        if not os.path.exists(os.path.join(self.vault_root, rel_path)):
            self.remove_file(rel_path)
            return None

        node, note = self._read_note(rel_path)
        result = self.db.upsert_node(node)
        if not result.changed:
            logger.debug("[Vault indexer] Note unchanged, skipping: %s", rel_path)
            return result
        self._write_links(result.node_id, note, self._resolver())
        refresh_authority_weights(self.db, self.vault_name)
        logger.info("[Vault indexer] Incremental update complete for %s (%s)", rel_path, result.action)
        return result

    def remove_file(self, rel_path: str) -> bool:
        """Remove the node (and its edges, mentions, history) for a deleted note."""
        rel_path = rel_path.replace(os.sep, "/")
        node = self.db.get_node_by_path(rel_path, self.vault_name)
        if node is None:
            return False
        self.db.delete_node(node.id)
        logger.info("[Vault indexer] Removed note from index: %s", rel_path)
        return True

    # ------------------------------------------------------------------
    # Lifecycle changes
    # ------------------------------------------------------------------

    def transition_note(
        self,
        rel_path: str,
        new_state: str,
        reason: str,
        confidence: Optional[str] = None,
        evidence_quality: float = 0.5,
        user_id: Optional[str] = None,
    ) -> int:
        """
        Move a note to *new_state* in the store and in its file.

        The change is validated and recorded through
        :func:`~cl_knowledge.graph.transitions.transition_node`, then the
        note's frontmatter is rewritten (``state``, ``confidence``,
        ``modified``, ``state_history``) and the note re-indexed so the
        stored hash matches the file.  Returns the history row id.
        """
        rel_path = rel_path.replace(os.sep, "/")
        node = self.db.get_node_by_path(rel_path, self.vault_name)
        if node is None:
            raise NotFoundError(f"No note '{rel_path}' in vault {self.vault_name}")

        history_id = transition_node(
            self.db, node.id, new_state, reason,
            confidence=confidence,
            evidence_quality=evidence_quality,
            user_id=user_id,
        )
        updated = self.db.require_node(node.id)

        abs_path = os.path.join(self.vault_root, rel_path)
        with open(abs_path, "r", encoding="utf-8", newline="") as fh:
            text = fh.read()
        text = set_lifecycle_state(
            text, updated.state, reason,
            confidence=updated.confidence,
            previous_state=node.state,
        )
        with open(abs_path, "w", encoding="utf-8", newline="") as fh:
            fh.write(text)

        self.index_file(rel_path)
        logger.info("[Vault indexer] %s moved to %s", rel_path, updated.state)
        return history_id
