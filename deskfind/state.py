"""
AppState - the one object holding process-wide engine state.

Built once at startup and handed to every component. Run flags here
enforce that at most one scan or indexing run is active.
"""

import logging
from typing import Callable, Optional

from .analyzers import AnalyzerRegistry
from .config import (
    INDEXER_SETTING_NAME,
    WATCHER_SETTING_NAME,
    IndexerConfig,
    IndexerSetting,
    WatcherSetting,
)
from .embedder import EmbeddingServiceManager, ModelSpec
from .extractor import LoaderRegistry, default_loader_registry
from .models import FileCategory
from .path_search import PathSearchEngine
from .progress import ProgressTracker
from .registry import FileRegistry


logger = logging.getLogger(__name__)


class AppState:
    def __init__(
        self,
        config: IndexerConfig,
        registry: Optional[FileRegistry] = None,
        loaders: Optional[LoaderRegistry] = None,
        analyzers: Optional[AnalyzerRegistry] = None,
        service_factory: Optional[Callable[[ModelSpec], object]] = None,
    ):
        self.config = config
        self.registry = registry or FileRegistry(config.db_path)
        self.loaders = loaders or default_loader_registry()
        self.analyzers = analyzers or AnalyzerRegistry()

        self.indexer_setting = self._load_indexer_setting()
        self.watcher_setting = self._load_watcher_setting()

        self.embeddings = EmbeddingServiceManager(
            config,
            language=lambda: self.indexer_setting.content_language,
            service_factory=service_factory,
        )
        self.progress = ProgressTracker(self.registry)
        self.path_search = PathSearchEngine(self.registry, config)

        # Run flags
        self.is_scanning = False
        self.is_indexing = False
        self.stop_requested = False

    @property
    def is_busy(self) -> bool:
        return self.is_scanning or self.is_indexing

    def reset_run_flags(self) -> None:
        self.is_scanning = False
        self.is_indexing = False
        self.stop_requested = False

    def category_of(self, ext: str) -> FileCategory:
        return FileCategory.from_extension(ext, self.loaders.supported_extensions())

    # --- Persisted settings ---

    def _load_indexer_setting(self) -> IndexerSetting:
        raw = self.registry.get_setting(INDEXER_SETTING_NAME)
        return IndexerSetting.from_json(raw) if raw else IndexerSetting()

    def _load_watcher_setting(self) -> WatcherSetting:
        raw = self.registry.get_setting(WATCHER_SETTING_NAME)
        return WatcherSetting.from_json(raw) if raw else WatcherSetting()

    def save_indexer_setting(self) -> None:
        self.registry.put_setting(INDEXER_SETTING_NAME, self.indexer_setting.to_json())

    def save_watcher_setting(self) -> None:
        self.registry.put_setting(WATCHER_SETTING_NAME, self.watcher_setting.to_json())

    def close(self) -> None:
        self.registry.close()
