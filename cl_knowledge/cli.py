"""
`clgraph` command line interface.

Commands
--------
clgraph sync                            -- sync the vault into the knowledge graph
clgraph sync --watch                    -- sync then start the file watcher
clgraph status                          -- node / edge / entity counts and last sync
clgraph search "<query>"                -- full-text search
clgraph search "<query>" --state crystal
clgraph by-state <state>                -- nodes in a lifecycle state
clgraph history <path>                  -- state transitions of a note
clgraph edges <path>                    -- outgoing / incoming relationships
clgraph transition <path> <state> --reason "..." [--confidence high]
clgraph authority                       -- authority ranking (recomputes weights)
clgraph authority --conflicts           -- topics with more than one crystal authority
clgraph maintain                        -- FTS rebuild, ANALYZE (VACUUM without WAL)

Global options: ``--vault`` (path or configured name, default: CWD),
``--config``, ``--json``, ``--verbose``.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from tqdm import tqdm

from . import __version__
from .config import Config
from .graph.authority import refresh_authority_weights
from .graph.database import KnowledgeGraphDatabase
from .graph.errors import KnowledgeGraphError, NotFoundError
from .graph.models import CONFIDENCE_LEVELS, STATES, KnowledgeNode
from .graph.search import (
    find_crystal_authority_conflicts,
    get_authority_hierarchy,
    search_nodes,
)
from .graph.transitions import describe_transition
from .vault.indexer import VaultIndexer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logger(log_dir: str, verbose: bool = False) -> logging.Logger:
    """Creates a file logger for the package. All verbose output goes here."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"clgraph_{timestamp}.log")

    pkg_logger = logging.getLogger("cl_knowledge")
    pkg_logger.setLevel(logging.DEBUG)
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()

    # File handler captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"
    ))
    pkg_logger.addHandler(fh)

    if verbose:
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(logging.INFO)
        sh.setFormatter(logging.Formatter("%(levelname)s  %(name)s  %(message)s"))
        pkg_logger.addHandler(sh)

    return pkg_logger


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _Context:
    """Resolved vault, configuration and open database for one command."""

    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args
        self.config = Config.load(args.config)
        self.vault_name, self.vault_root = self.config.resolve_vault(args.vault or os.getcwd())
        if args.vault_name:
            self.vault_name = args.vault_name
        log_dir = self.config.LOG_DIR
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(self.vault_root, log_dir)
        setup_logger(log_dir, verbose=args.verbose)
        self.db = KnowledgeGraphDatabase(
            self.config.default_db_path(self.vault_root),
            settings=self.config.db_settings(),
        )

    def node_for_path(self, path: str) -> KnowledgeNode:
        rel_path = path.replace(os.sep, "/")
        node = self.db.get_node_by_path(rel_path, self.vault_name)
        if node is None:
            raise NotFoundError(f"No note '{rel_path}' in vault {self.vault_name}")
        return node

    def close(self) -> None:
        self.db.close()


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


def _emit(ctx: _Context, data: Any, render: Callable[[], None]) -> None:
    """Print *data* as JSON with ``--json``, otherwise call *render*."""
    if ctx.args.json:
        print(json.dumps(_to_jsonable(data), indent=2, default=str))
    else:
        render()


def _print_nodes(nodes: list[KnowledgeNode], title: str) -> None:
    if not nodes:
        print(f"  (no results for: {title})")
        return
    print(f"\n{title}  [{len(nodes)} result(s)]")
    print("-" * 60)
    for n in nodes:
        label = f"{n.state:<8} {n.confidence:<6} {n.authority_weight:5.2f}"
        print(f"  {label}  {n.path}  ({n.title})")


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_sync(ctx: _Context) -> None:
    """Sync the vault, optionally followed by the watcher."""
    indexer = VaultIndexer(ctx.db, ctx.vault_root, ctx.vault_name, config=ctx.config)
    if not ctx.args.json:
        print(f"Syncing vault: {ctx.vault_name} ({ctx.vault_root})")

    pbar = tqdm(total=None, unit="note", desc="Indexing", disable=ctx.args.json)

    def _progress(current: int, total: int, path: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(path), refresh=False)
        pbar.update(1)

    try:
        summary = indexer.sync(progress_callback=_progress)
    finally:
        pbar.close()

    _emit(ctx, summary, lambda: print(
        f"\nSync complete:\n"
        f"  Processed:     {summary.notes_processed}\n"
        f"  Added:         {summary.notes_added}\n"
        f"  Updated:       {summary.notes_updated}\n"
        f"  Unchanged:     {summary.notes_unchanged}\n"
        f"  Deleted:       {summary.notes_deleted}\n"
        f"  Relationships: {summary.relationships_found}\n"
        f"  Errors:        {summary.error_count}\n"
        f"  Time:          {summary.elapsed_seconds:.1f}s"
    ))

    if ctx.args.watch:
        from .vault.watcher import VaultWatcher
        print("\nStarting vault watcher... (Ctrl+C to stop)")
        watcher = VaultWatcher(indexer, debounce_seconds=ctx.config.WATCH_DEBOUNCE_SECONDS)
        try:
            watcher.start()  # blocking
        except KeyboardInterrupt:
            print("\nVault watcher stopped.")


def _cmd_status(ctx: _Context) -> None:
    stats = ctx.db.get_statistics(ctx.vault_name)
    last = ctx.db.get_latest_sync(ctx.vault_name)
    data = {"vault": ctx.vault_name, "statistics": stats, "last_sync": last}

    def _render() -> None:
        print(f"\nKnowledge Graph Status — {ctx.vault_name}")
        print("=" * 40)
        for k, v in stats.items():
            print(f"  {k:<20} {v}")
        if last is None:
            print("\n  No sync has run yet. Run `clgraph sync` first.")
        else:
            print(f"\n  Last sync: #{last.id} {last.status} at {last.sync_start}")
            if last.error_message:
                print(f"  Error:     {last.error_message}")
        print()

    _emit(ctx, data, _render)


def _cmd_search(ctx: _Context) -> None:
    hits = search_nodes(
        ctx.db, ctx.args.query,
        vault_name=ctx.vault_name,
        state=ctx.args.state,
        limit=ctx.args.limit,
        raw=ctx.args.raw,
    )

    def _render() -> None:
        if not hits:
            print(f"  (no results for: {ctx.args.query})")
            return
        print(f"\nSearch: {ctx.args.query!r}  [{len(hits)} result(s)]")
        print("-" * 60)
        for h in hits:
            print(f"  {h.rank:8.3f}  {h.node.state:<8} {h.node.path}  ({h.node.title})")
            if h.snippet:
                print(f"            {h.snippet}")

    _emit(ctx, hits, _render)


def _cmd_by_state(ctx: _Context) -> None:
    nodes = ctx.db.get_nodes_by_state(ctx.args.state, ctx.vault_name)
    _emit(ctx, nodes, lambda: _print_nodes(nodes, f"State '{ctx.args.state}'"))


def _cmd_history(ctx: _Context) -> None:
    node = ctx.node_for_path(ctx.args.path)
    history = ctx.db.get_state_history(node.id)

    def _render() -> None:
        print(f"\nState history of {node.path}  (now: {node.state}/{node.confidence})")
        print("-" * 60)
        if not history:
            print("  (no transitions recorded)")
        for t in history:
            print(
                f"  {t.transition_date}  {t.from_state or '-'} -> {t.to_state}"
                f"  [{describe_transition(t.from_state, t.to_state)}]"
            )
            if t.reason:
                print(f"      {t.reason}")

    _emit(ctx, history, _render)


def _cmd_edges(ctx: _Context) -> None:
    node = ctx.node_for_path(ctx.args.path)
    edges = ctx.db.get_edges_for_node(node.id)

    def _path(node_id: int) -> str:
        other = ctx.db.get_node_by_id(node_id)
        return other.path if other else f"#{node_id}"

    def _render() -> None:
        print(f"\nRelationships of {node.path}")
        print("-" * 60)
        for e in edges.outgoing:
            print(f"  -> {e.relation_type:<12} {_path(e.target_id)}  (w={e.weight}, c={e.confidence})")
        for e in edges.incoming:
            print(f"  <- {e.relation_type:<12} {_path(e.source_id)}  (w={e.weight}, c={e.confidence})")
        if not edges.outgoing and not edges.incoming:
            print("  (no relationships)")

    _emit(ctx, edges, _render)


def _cmd_transition(ctx: _Context) -> None:
    node = ctx.node_for_path(ctx.args.path)
    indexer = VaultIndexer(ctx.db, ctx.vault_root, ctx.vault_name, config=ctx.config)
    history_id = indexer.transition_note(
        node.path, ctx.args.state, ctx.args.reason,
        confidence=ctx.args.confidence,
        evidence_quality=ctx.args.evidence_quality,
        user_id=ctx.args.user,
    )
    updated = ctx.db.require_node(node.id)
    data = {
        "path": node.path,
        "previous_state": node.state,
        "new_state": updated.state,
        "confidence": updated.confidence,
        "history_id": history_id,
    }
    _emit(ctx, data, lambda: print(
        f"{node.path}: {node.state} -> {updated.state} "
        f"({describe_transition(node.state, updated.state)})"
    ))


def _cmd_authority(ctx: _Context) -> None:
    if ctx.args.conflicts:
        conflicts = find_crystal_authority_conflicts(ctx.db, ctx.vault_name)

        def _render_conflicts() -> None:
            if not conflicts:
                print("  No topic has more than one crystal authority.")
                return
            for c in conflicts:
                print(f"  {c.entity_name}: {', '.join(c.node_paths)}")

        _emit(ctx, conflicts, _render_conflicts)
        return

    refresh_authority_weights(ctx.db, ctx.vault_name)
    ranking = get_authority_hierarchy(ctx.db, ctx.vault_name, limit=ctx.args.limit)

    def _render() -> None:
        print(f"\nAuthority hierarchy — {ctx.vault_name}")
        print("-" * 60)
        for r in ranking:
            print(
                f"  {r['authority_weight']:5.2f}  {r['dependent_count']:>3} dep  "
                f"{r['state']:<8} {r['path']}"
            )

    _emit(ctx, ranking, _render)


def _cmd_maintain(ctx: _Context) -> None:
    ctx.db.maintain()
    _emit(ctx, {"status": "ok"}, lambda: print("Maintenance complete."))


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `clgraph` argument parser."""
    parser = argparse.ArgumentParser(
        prog="clgraph",
        description="CL Knowledge Graph — lifecycle-aware index of a markdown vault",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--vault", help="Vault directory or configured vault name (default: CWD)")
    parser.add_argument("--vault-name", help="Override the stored vault name")
    parser.add_argument("--config", help="Path to a .clgraph.yaml file")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to stderr as well")

    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    # --- sync ---
    sync_p = subparsers.add_parser("sync", help="Sync the vault into the knowledge graph")
    sync_p.add_argument(
        "--watch", action="store_true",
        help="After syncing, start a file watcher for incremental updates",
    )
    sync_p.set_defaults(func=_cmd_sync)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show graph statistics and last sync")
    status_p.set_defaults(func=_cmd_status)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Full-text search over notes")
    search_p.add_argument("query", help="Search text")
    search_p.add_argument("--state", choices=STATES, help="Only notes in this state")
    search_p.add_argument("--limit", type=int, default=20, help="Maximum results (default: 20)")
    search_p.add_argument("--raw", action="store_true", help="Treat QUERY as an FTS5 expression")
    search_p.set_defaults(func=_cmd_search)

    # --- by-state ---
    state_p = subparsers.add_parser("by-state", help="List notes in a lifecycle state")
    state_p.add_argument("state", choices=STATES)
    state_p.set_defaults(func=_cmd_by_state)

    # --- history ---
    history_p = subparsers.add_parser("history", help="Show a note's state transitions")
    history_p.add_argument("path", help="Vault-relative note path")
    history_p.set_defaults(func=_cmd_history)

    # --- edges ---
    edges_p = subparsers.add_parser("edges", help="Show a note's relationships")
    edges_p.add_argument("path", help="Vault-relative note path")
    edges_p.set_defaults(func=_cmd_edges)

    # --- transition ---
    trans_p = subparsers.add_parser("transition", help="Change a note's lifecycle state")
    trans_p.add_argument("path", help="Vault-relative note path")
    trans_p.add_argument("state", choices=STATES)
    trans_p.add_argument("--reason", required=True, help="Justification for the change")
    trans_p.add_argument("--confidence", choices=CONFIDENCE_LEVELS)
    trans_p.add_argument("--evidence-quality", type=float, default=0.5)
    trans_p.add_argument("--user", help="Who made the change")
    trans_p.set_defaults(func=_cmd_transition)

    # --- authority ---
    auth_p = subparsers.add_parser("authority", help="Recompute and show authority ranking")
    auth_p.add_argument("--limit", type=int, default=20)
    auth_p.add_argument(
        "--conflicts", action="store_true",
        help="List topics defined by more than one crystal note",
    )
    auth_p.set_defaults(func=_cmd_authority)

    # --- maintain ---
    maint_p = subparsers.add_parser("maintain", help="Rebuild FTS index and refresh statistics")
    maint_p.set_defaults(func=_cmd_maintain)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for `clgraph`.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        ctx = _Context(args)
    except KnowledgeGraphError as exc:
        print(f"Cannot open knowledge graph: {exc}", file=sys.stderr)
        return 1

    try:
        args.func(ctx)
    except KnowledgeGraphError as exc:
        logger.error("[CLI] %s failed: %s", args.cmd, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
