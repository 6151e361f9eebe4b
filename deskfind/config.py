"""
Indexing Configuration - Centralized settings for the indexing engine.

Two layers live here:

* ``IndexerConfig`` - infrastructure settings (paths, concurrency, windows,
  timeouts). Uses environment variables with sensible defaults. All paths
  are resolved to absolute paths for reliability.
* ``IndexerSetting`` / ``WatcherSetting`` - user-editable settings that are
  persisted as JSON rows in the registry's ``config`` table.
"""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Set


INDEXER_SETTING_NAME = "indexer_setting"
WATCHER_SETTING_NAME = "fs_watcher_setting"

LANGUAGE_ENGLISH = "english"
LANGUAGE_MULTILINGUAL = "multilingual"


@dataclass
class IndexerConfig:
    """
    Configuration for the indexing engine.

    All paths default to the ~/.deskfind directory.
    Concurrency limits are tuned for typical desktop hardware.
    """

    # --- Paths ---
    data_dir: Path = field(default_factory=lambda: Path.home() / ".deskfind")
    db_path: Path = field(default_factory=lambda: Path.home() / ".deskfind" / "deskfind.db")
    model_dir: Path = field(default_factory=lambda: Path.home() / ".deskfind" / "models")

    # --- Concurrency Limits ---
    scanner_concurrency: int = 8     # Directory worker tasks
    hasher_concurrency: int = 8      # Parallel xxHash operations
    search_concurrency: int = 4      # Path cache slices scanned in parallel

    # --- Scanner ---
    scan_queue_size: int = 5000
    scan_queue_retry_delay_ms: int = 100

    # --- Indexing ---
    index_page_size: int = 1000
    max_document_chars: int = 30000
    progress_flush_every: int = 20

    # --- Chunking (tokens) ---
    chunk_tokens: int = 256          # model max is 256 for MiniLM
    chunk_overlap: int = 20
    max_input_tokens: int = 512

    # --- Embedding session ---
    embedding_ttl_s: float = 30 * 60
    embedding_sweep_interval_s: float = 30
    embed_lock_timeout_s: float = 60

    # --- Watcher ---
    debounce_ms: int = 1000          # Batch rapid changes within this window
    rename_window_ms: int = 300      # Max gap between the halves of a rename
    event_queue_size: int = 1000
    event_queue_retry_delay_ms: int = 100

    # --- Path search ---
    path_refresh_interval_s: float = 10
    path_search_limit: int = 20
    path_build_page_size: int = 5000

    # --- Semantic search ---
    semantic_max_distance: float = 0.7
    semantic_limit: int = 10

    # --- Media analysis platform ---
    model_platform: str = ""
    model_platform_api_key: str = ""
    vision_model: str = ""
    asr_model: str = ""

    def __post_init__(self):
        """Ensure all paths are absolute and parent directories exist."""
        self.data_dir = Path(self.data_dir).expanduser().resolve()
        self.db_path = Path(self.db_path).expanduser().resolve()
        self.model_dir = Path(self.model_dir).expanduser().resolve()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """
        Create config from environment variables.

        Supported env vars:
            DESKFIND_DATA_DIR: Base directory for engine data
            DESKFIND_DB_PATH: Path to SQLite database
            DESKFIND_MODEL_DIR: Directory holding ONNX models and tokenizers
            DESKFIND_SCANNER_CONCURRENCY: Directory worker tasks
            DESKFIND_HASHER_CONCURRENCY: Parallel file reads
            DESKFIND_DEBOUNCE_MS: Watcher aggregation window
            DESKFIND_MODEL_PLATFORM: Media analysis platform name
            DESKFIND_MODEL_PLATFORM_API_KEY: API key for that platform
            DESKFIND_VISION_MODEL / DESKFIND_ASR_MODEL: Model identifiers
        """
        config = cls()

        if data_dir := os.environ.get("DESKFIND_DATA_DIR"):
            config.data_dir = Path(data_dir)
            config.db_path = Path(data_dir) / "deskfind.db"
            config.model_dir = Path(data_dir) / "models"

        if db_path := os.environ.get("DESKFIND_DB_PATH"):
            config.db_path = Path(db_path)

        if model_dir := os.environ.get("DESKFIND_MODEL_DIR"):
            config.model_dir = Path(model_dir)

        if scanner := os.environ.get("DESKFIND_SCANNER_CONCURRENCY"):
            config.scanner_concurrency = int(scanner)

        if hasher := os.environ.get("DESKFIND_HASHER_CONCURRENCY"):
            config.hasher_concurrency = int(hasher)

        if debounce := os.environ.get("DESKFIND_DEBOUNCE_MS"):
            config.debounce_ms = int(debounce)

        config.model_platform = os.environ.get("DESKFIND_MODEL_PLATFORM", config.model_platform)
        config.model_platform_api_key = os.environ.get(
            "DESKFIND_MODEL_PLATFORM_API_KEY", config.model_platform_api_key
        )
        config.vision_model = os.environ.get("DESKFIND_VISION_MODEL", config.vision_model)
        config.asr_model = os.environ.get("DESKFIND_ASR_MODEL", config.asr_model)

        config.__post_init__()
        return config

    @property
    def platform_enabled(self) -> bool:
        """A named platform is usable only once it has an API key."""
        return bool(self.model_platform) and bool(self.model_platform_api_key)


@dataclass
class IndexerSetting:
    """User-facing indexing preferences."""

    is_private: bool = False
    content_language: str = LANGUAGE_ENGLISH
    ignore_dirs: Set[str] = field(default_factory=lambda: {
        # Version control
        ".git", ".svn", ".hg",
        # Dependencies
        "node_modules", "__pycache__", ".venv", "venv",
        # Build outputs
        "build", "dist", "target", ".next",
        # IDE/Editor
        ".idea", ".vscode",
        # Cache / trash
        ".cache", ".npm", ".yarn", ".Trash",
    })
    ignore_exts: Set[str] = field(default_factory=lambda: {
        # Archives and disk images
        "zip", "tar", "gz", "rar", "7z", "dmg", "iso", "pkg",
        # Executables
        "exe", "dll", "so", "dylib",
        # Lock files
        "lock", "lockb",
    })
    ignore_files: Set[str] = field(default_factory=set)
    ignore_hidden: bool = True

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("ignore_dirs", "ignore_exts", "ignore_files"):
            data[key] = sorted(data[key])
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "IndexerSetting":
        data = json.loads(raw)
        setting = cls()
        setting.is_private = bool(data.get("is_private", setting.is_private))
        setting.content_language = data.get("content_language", setting.content_language)
        setting.ignore_hidden = bool(data.get("ignore_hidden", setting.ignore_hidden))
        if "ignore_dirs" in data:
            setting.ignore_dirs = set(data["ignore_dirs"])
        if "ignore_exts" in data:
            setting.ignore_exts = {e.lower().lstrip(".") for e in data["ignore_exts"]}
        if "ignore_files" in data:
            setting.ignore_files = set(data["ignore_files"])
        return setting


@dataclass
class WatcherSetting:
    """Directories and files the watcher subscribes to."""

    directories: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)

    def add(self, path: str, is_file: bool) -> bool:
        """Add a watched path. Returns False if it was already present."""
        target = self.files if is_file else self.directories
        if path in target:
            return False
        target.append(path)
        return True

    def remove(self, path: str) -> bool:
        """Remove a watched path from either list."""
        removed = False
        if path in self.directories:
            self.directories.remove(path)
            removed = True
        if path in self.files:
            self.files.remove(path)
            removed = True
        return removed

    def all_paths(self) -> List[str]:
        return [*self.directories, *self.files]

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "WatcherSetting":
        data = json.loads(raw)
        return cls(
            directories=list(data.get("directories", [])),
            files=list(data.get("files", [])),
        )
