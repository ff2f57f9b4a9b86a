"""
Vault ingestion — parses markdown notes and keeps the knowledge graph in
sync with the files on disk.
"""

from .indexer import SyncSummary, VaultIndexer
from .watcher import VaultFileHandler, VaultWatcher

__all__ = ["VaultIndexer", "SyncSummary", "VaultWatcher", "VaultFileHandler"]
