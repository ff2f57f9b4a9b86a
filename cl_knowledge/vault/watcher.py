"""
File watcher for incremental knowledge graph updates.

Uses watchdog to monitor a vault and trigger the VaultIndexer for any
changed, created, moved or deleted note.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class VaultFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler that triggers incremental graph updates.

    Parameters
    ----------
    indexer:
        The :class:`~cl_knowledge.vault.indexer.VaultIndexer` to call.
    debounce_seconds:
        Minimum delay between processing the same file (prevents rapid
        re-indexing on editor auto-saves).
    """

    def __init__(self, indexer, debounce_seconds: float = 0.5) -> None:
        super().__init__()
        self._indexer = indexer
        self._vault_root = os.path.abspath(indexer.vault_root)
        self._debounce = debounce_seconds
        self._last_event: dict[str, float] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._handle_change(os.fsdecode(event.src_path))

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle_change(os.fsdecode(event.src_path))

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(os.fsdecode(event.src_path))

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(os.fsdecode(event.src_path))
            self._handle_change(os.fsdecode(event.dest_path))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        """Convert *abs_path* to a vault-relative path, or None if outside."""
        try:
            rel = os.path.relpath(abs_path, self._vault_root)
        except ValueError:
            return None
        if rel.startswith(os.pardir):
            return None
        return rel.replace(os.sep, "/")

    def _is_debounced(self, abs_path: str) -> bool:
        """Return True if this file was recently processed."""
        now = time.time()
        with self._lock:
            last = self._last_event.get(abs_path, 0.0)
            if now - last < self._debounce:
                return True
            self._last_event[abs_path] = now
        return False

    def _handle_change(self, abs_path: str) -> None:
        rel_path = self._rel_path(abs_path)
        if rel_path is None or self._indexer.is_ignored(rel_path):
            return
        if self._is_debounced(abs_path):
            return

        logger.info("[Vault watcher] Updated: %s", rel_path)
        try:
            self._indexer.index_file(rel_path)
        except Exception as exc:
            logger.warning("[Vault watcher] Error processing %s: %s", rel_path, exc)

    def _handle_delete(self, abs_path: str) -> None:
        rel_path = self._rel_path(abs_path)
        if rel_path is None or self._indexer.is_ignored(rel_path):
            return
        with self._lock:
            self._last_event.pop(abs_path, None)

        logger.info("[Vault watcher] Deleted: %s", rel_path)
        try:
            self._indexer.remove_file(rel_path)
        except Exception as exc:
            logger.warning("[Vault watcher] Error removing %s: %s", rel_path, exc)


class VaultWatcher:
    """
    High-level wrapper around watchdog that monitors a vault directory.

    Usage::

        watcher = VaultWatcher(indexer)
        watcher.start()   # blocking (call from a thread) or use start_background()
        watcher.stop()
    """

    def __init__(self, indexer, debounce_seconds: float = 0.5) -> None:
        self._indexer = indexer
        self._vault_root = os.path.abspath(indexer.vault_root)
        self._observer: Optional[Observer] = None
        self._handler = VaultFileHandler(indexer, debounce_seconds=debounce_seconds)

    @property
    def handler(self) -> VaultFileHandler:
        return self._handler

    def _schedule(self) -> Observer:
        observer = Observer()
        observer.schedule(self._handler, self._vault_root, recursive=True)
        observer.start()
        self._observer = observer
        logger.info("[Vault watcher] Watching %s", self._vault_root)
        return observer

    def start(self) -> None:
        """
        Start watching the vault.

        Blocks until :meth:`stop` is called or the process is interrupted.
        For non-blocking use, call :meth:`start_background` instead.
        """
        observer = self._schedule()
        try:
            while observer.is_alive():
                observer.join(timeout=1)
        except KeyboardInterrupt:
            observer.stop()
        observer.join()

    def start_background(self) -> None:
        """Start the observer thread and return immediately."""
        self._schedule()

    def stop(self) -> None:
        """Stop the observer."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("[Vault watcher] Stopped")
