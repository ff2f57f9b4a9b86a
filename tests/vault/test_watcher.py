"""
Unit tests for cl_knowledge.vault.watcher
"""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest


def _event(src_path, dest_path=None, is_directory=False):
    ev = MagicMock()
    ev.src_path = src_path
    ev.dest_path = dest_path
    ev.is_directory = is_directory
    return ev


@pytest.fixture
def indexer(tmp_path):
    idx = MagicMock()
    idx.vault_root = str(tmp_path)
    idx.is_ignored.side_effect = lambda rel: not rel.endswith(".md") or rel.startswith(".")
    return idx


@pytest.fixture
def handler(indexer):
    from cl_knowledge.vault.watcher import VaultFileHandler
    return VaultFileHandler(indexer, debounce_seconds=0.0)


class TestVaultFileHandler:
    def test_modified_note_is_indexed(self, handler, indexer, tmp_path):
        handler.on_modified(_event(os.path.join(str(tmp_path), "notes", "a.md")))
        indexer.index_file.assert_called_once_with("notes/a.md")

    def test_created_note_is_indexed(self, handler, indexer, tmp_path):
        handler.on_created(_event(os.path.join(str(tmp_path), "b.md")))
        indexer.index_file.assert_called_once_with("b.md")

    def test_ignored_files(self, handler, indexer, tmp_path):
        handler.on_modified(_event(os.path.join(str(tmp_path), "image.png")))
        handler.on_modified(_event(os.path.join(str(tmp_path), ".cl-state", "x.md")))
        handler.on_modified(_event(str(tmp_path), is_directory=True))
        indexer.index_file.assert_not_called()

    def test_outside_vault_ignored(self, handler, indexer, tmp_path):
        outside = os.path.join(os.path.dirname(str(tmp_path)), "elsewhere.md")
        handler.on_modified(_event(outside))
        indexer.index_file.assert_not_called()

    def test_deleted_note_is_removed(self, handler, indexer, tmp_path):
        handler.on_deleted(_event(os.path.join(str(tmp_path), "a.md")))
        indexer.remove_file.assert_called_once_with("a.md")

    def test_moved_note(self, handler, indexer, tmp_path):
        handler.on_moved(_event(
            os.path.join(str(tmp_path), "old.md"),
            dest_path=os.path.join(str(tmp_path), "new.md"),
        ))
        indexer.remove_file.assert_called_once_with("old.md")
        indexer.index_file.assert_called_once_with("new.md")

    def test_debounce(self, indexer, tmp_path):
        from cl_knowledge.vault.watcher import VaultFileHandler
        handler = VaultFileHandler(indexer, debounce_seconds=60.0)
        path = os.path.join(str(tmp_path), "a.md")
        handler.on_modified(_event(path))
        handler.on_modified(_event(path))
        assert indexer.index_file.call_count == 1

    def test_indexer_errors_are_logged_not_raised(self, handler, indexer, tmp_path):
        from cl_knowledge.graph.errors import KnowledgeGraphError
        indexer.index_file.side_effect = KnowledgeGraphError("locked")
        indexer.remove_file.side_effect = KnowledgeGraphError("locked")
        handler.on_modified(_event(os.path.join(str(tmp_path), "a.md")))
        handler.on_deleted(_event(os.path.join(str(tmp_path), "a.md")))
        indexer.index_file.assert_called_once()
        indexer.remove_file.assert_called_once()


class TestVaultWatcher:
    def test_start_background_and_stop(self, indexer, tmp_path):
        from cl_knowledge.vault.watcher import VaultWatcher
        with patch("cl_knowledge.vault.watcher.Observer") as observer_cls:
            observer = observer_cls.return_value
            watcher = VaultWatcher(indexer, debounce_seconds=0.1)
            watcher.start_background()
            observer.schedule.assert_called_once_with(
                watcher.handler, os.path.abspath(str(tmp_path)), recursive=True
            )
            observer.start.assert_called_once()

            watcher.stop()
            observer.stop.assert_called_once()
            observer.join.assert_called_once()
            watcher.stop()  # no observer left; no-op
            observer.stop.assert_called_once()

    def test_blocking_start_returns_when_observer_dies(self, indexer):
        from cl_knowledge.vault.watcher import VaultWatcher
        with patch("cl_knowledge.vault.watcher.Observer") as observer_cls:
            observer = observer_cls.return_value
            observer.is_alive.side_effect = [True, False]
            VaultWatcher(indexer).start()
            assert observer.join.call_count == 2
