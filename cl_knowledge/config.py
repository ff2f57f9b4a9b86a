"""
Configuration — loads settings from .clgraph.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

from __future__ import annotations

import os

import yaml

from .graph.database import DB_DIRNAME, DB_FILENAME
from .graph.schema import DatabaseSettings


_DEFAULTS = {
    "db_dirname": DB_DIRNAME,
    "db_filename": DB_FILENAME,
    "enable_wal": True,
    "synchronous": "NORMAL",
    "cache_size": 10000,
    "temp_store": "MEMORY",
    "mmap_size": 268435456,
    "busy_timeout_ms": 10000,
    "pragmas": {},
    "default_state": "fluid",
    "default_confidence": "medium",
    "skip_dirs": [".git", ".obsidian", ".trash", ".cl-state", "node_modules"],
    "watch_debounce_seconds": 0.5,
    "log_dir": ".cl-state/logs",
    "vaults": {},
}

# Config file search locations
_CONFIG_FILENAMES = [".clgraph.yaml", ".clgraph.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    # Search CWD first, then home directory
    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables (``CLGRAPH_*``)
    3. .clgraph.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val.lower() == "true"
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        # Storage location (relative to the vault root)
        self.DB_DIRNAME = _get("CLGRAPH_DB_DIRNAME", "db_dirname", _DEFAULTS["db_dirname"])
        self.DB_FILENAME = _get("CLGRAPH_DB_FILENAME", "db_filename", _DEFAULTS["db_filename"])

        # SQLite engine
        self.ENABLE_WAL = _get_bool("CLGRAPH_ENABLE_WAL", "enable_wal", _DEFAULTS["enable_wal"])
        self.SYNCHRONOUS = _get("CLGRAPH_SYNCHRONOUS", "synchronous",
                                _DEFAULTS["synchronous"]).upper()
        self.CACHE_SIZE = _get("CLGRAPH_CACHE_SIZE", "cache_size",
                               _DEFAULTS["cache_size"], cast=int)
        self.TEMP_STORE = _get("CLGRAPH_TEMP_STORE", "temp_store",
                               _DEFAULTS["temp_store"]).upper()
        self.MMAP_SIZE = _get("CLGRAPH_MMAP_SIZE", "mmap_size",
                              _DEFAULTS["mmap_size"], cast=int)
        self.BUSY_TIMEOUT_MS = _get("CLGRAPH_BUSY_TIMEOUT_MS", "busy_timeout_ms",
                                    _DEFAULTS["busy_timeout_ms"], cast=int)

        # Extra pragma overrides (YAML only)
        self.PRAGMAS: dict = {}
        pragmas_section = yd.get("pragmas", _DEFAULTS["pragmas"])
        if isinstance(pragmas_section, dict):
            self.PRAGMAS = {str(k): v for k, v in pragmas_section.items()}

        # Ingestion defaults
        self.DEFAULT_STATE = _get("CLGRAPH_DEFAULT_STATE", "default_state",
                                  _DEFAULTS["default_state"])
        self.DEFAULT_CONFIDENCE = _get("CLGRAPH_DEFAULT_CONFIDENCE", "default_confidence",
                                       _DEFAULTS["default_confidence"])
        self.SKIP_DIRS: list[str] = yd.get("skip_dirs", _DEFAULTS["skip_dirs"])
        if not isinstance(self.SKIP_DIRS, list):
            self.SKIP_DIRS = list(_DEFAULTS["skip_dirs"])

        # Watcher
        self.WATCH_DEBOUNCE_SECONDS = _get("CLGRAPH_WATCH_DEBOUNCE_SECONDS",
                                           "watch_debounce_seconds",
                                           _DEFAULTS["watch_debounce_seconds"],
                                           cast=float)

        # Log file directory (relative paths resolve against the vault root)
        self.LOG_DIR = _get("CLGRAPH_LOG_DIR", "log_dir", _DEFAULTS["log_dir"])

        # Named vaults: name -> path
        self.VAULTS: dict[str, str] = {}
        vaults_section = yd.get("vaults", _DEFAULTS["vaults"])
        if isinstance(vaults_section, dict):
            self.VAULTS = {str(k): os.path.expanduser(str(v)) for k, v in vaults_section.items()}

    def db_settings(self) -> DatabaseSettings:
        """Engine settings for :class:`KnowledgeGraphDatabase`."""
        return DatabaseSettings(
            enable_wal=self.ENABLE_WAL,
            synchronous=self.SYNCHRONOUS,
            cache_size=self.CACHE_SIZE,
            temp_store=self.TEMP_STORE,
            mmap_size=self.MMAP_SIZE,
            busy_timeout_ms=self.BUSY_TIMEOUT_MS,
            pragmas=dict(self.PRAGMAS),
        )

    def default_db_path(self, vault_root: str) -> str:
        """Store location for *vault_root* under the configured names."""
        return os.path.join(vault_root, self.DB_DIRNAME, self.DB_FILENAME)

    def resolve_vault(self, name_or_path: str) -> tuple[str, str]:
        """Return ``(vault_name, vault_root)`` for a configured name or a path."""
        if name_or_path in self.VAULTS:
            return name_or_path, os.path.abspath(self.VAULTS[name_or_path])
        root = os.path.abspath(os.path.expanduser(name_or_path))
        return os.path.basename(root.rstrip(os.sep)) or root, root

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
