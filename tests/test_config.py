"""
Unit tests for cl_knowledge.config
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CLGRAPH_"):
            monkeypatch.delenv(key)


class TestConfigDefaults:
    def test_defaults(self):
        from cl_knowledge.config import Config
        cfg = Config()
        assert cfg.DB_DIRNAME == ".cl-state"
        assert cfg.DB_FILENAME == "knowledge_graph.db"
        assert cfg.ENABLE_WAL is True
        assert cfg.SYNCHRONOUS == "NORMAL"
        assert cfg.DEFAULT_STATE == "fluid"
        assert cfg.DEFAULT_CONFIDENCE == "medium"
        assert ".obsidian" in cfg.SKIP_DIRS
        assert cfg.VAULTS == {}

    def test_db_settings(self):
        from cl_knowledge.config import Config
        settings = Config({"cache_size": 2000, "pragmas": {"wal_autocheckpoint": 500}}).db_settings()
        assert settings.cache_size == 2000
        assert settings.enable_wal is True
        assert settings.resolved_pragmas()["wal_autocheckpoint"] == 500

    def test_default_db_path(self):
        from cl_knowledge.config import Config
        cfg = Config({"db_filename": "graph.db"})
        assert cfg.default_db_path("/vault") == os.path.join("/vault", ".cl-state", "graph.db")


class TestConfigPriority:
    def test_yaml_overrides_defaults(self):
        from cl_knowledge.config import Config
        cfg = Config({"enable_wal": False, "synchronous": "full", "watch_debounce_seconds": 2})
        assert cfg.ENABLE_WAL is False
        assert cfg.SYNCHRONOUS == "FULL"
        assert cfg.WATCH_DEBOUNCE_SECONDS == 2.0

    def test_env_overrides_yaml(self, monkeypatch):
        from cl_knowledge.config import Config
        monkeypatch.setenv("CLGRAPH_BUSY_TIMEOUT_MS", "2500")
        monkeypatch.setenv("CLGRAPH_ENABLE_WAL", "false")
        cfg = Config({"busy_timeout_ms": 100, "enable_wal": True})
        assert cfg.BUSY_TIMEOUT_MS == 2500
        assert cfg.ENABLE_WAL is False

    def test_bad_sections_fall_back(self):
        from cl_knowledge.config import Config
        cfg = Config({"skip_dirs": "nope", "pragmas": ["x"], "vaults": "nope"})
        assert ".git" in cfg.SKIP_DIRS
        assert cfg.PRAGMAS == {}
        assert cfg.VAULTS == {}


class TestConfigLoad:
    def test_load_explicit_file(self, tmp_path):
        from cl_knowledge.config import Config
        path = tmp_path / "custom.yaml"
        path.write_text("default_state: plasma\nvaults:\n  physics: /data/physics\n", encoding="utf-8")
        cfg = Config.load(str(path))
        assert cfg.DEFAULT_STATE == "plasma"
        assert cfg.VAULTS == {"physics": "/data/physics"}

    def test_load_from_cwd(self, tmp_path, monkeypatch):
        from cl_knowledge.config import Config
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".clgraph.yaml").write_text("db_filename: cwd.db\n", encoding="utf-8")
        assert Config.load().DB_FILENAME == "cwd.db"

    def test_missing_explicit_file_uses_defaults(self, tmp_path):
        from cl_knowledge.config import Config
        cfg = Config.load(str(tmp_path / "absent.yaml"))
        assert cfg.DB_FILENAME == "knowledge_graph.db"

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        from cl_knowledge.config import Config
        path = tmp_path / "broken.yaml"
        path.write_text("default_state: [oops\n", encoding="utf-8")
        assert Config.load(str(path)).DEFAULT_STATE == "fluid"


class TestResolveVault:
    def test_named_vault(self, tmp_path):
        from cl_knowledge.config import Config
        cfg = Config({"vaults": {"physics": str(tmp_path)}})
        assert cfg.resolve_vault("physics") == ("physics", os.path.abspath(str(tmp_path)))

    def test_path(self, tmp_path):
        from cl_knowledge.config import Config
        root = tmp_path / "my-vault"
        assert Config().resolve_vault(str(root)) == ("my-vault", str(root))
