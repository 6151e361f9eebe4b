"""
Orchestrator - Main entry point for the indexing engine.

Owns the run-control surface:
- start_indexing / stop_indexing: scan paths, then embed documents, images
  and audio, reporting progress events and persisting an IndexingTask
- background_indexing / index_file: the same work without a task, used by
  the watcher for new directories and changed files
- removal and rename of indexed paths (watcher dispatch targets)
- watched path management and setting updates
- search, backed by the path cache and the vector tables
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from .config import IndexerConfig, IndexerSetting
from .errors import (
    AnalysisPlatformError,
    EmptyPathListError,
    FileAccessError,
    IndexingAlreadyRunningError,
    IndexingRunError,
    ModelLoadError,
    PersistenceError,
    PolicyError,
    UnsupportedAnalysisError,
    handle_error,
)
from .events import EventKind, EventSink, send_event
from .indexer import (
    AudioIndexer,
    DocumentIndexer,
    EmbedOutcome,
    ImageIndexer,
    indexer_for,
)
from .models import FileIndexStatus, IndexingTaskStatus, SearchResult
from .scanner import Scanner, file_extension
from .searcher import SearchCoordinator
from .semantic_search import SemanticSearchEngine
from .state import AppState
from .watcher import Watcher


logger = logging.getLogger(__name__)

PRIVACY_REMARK = "Privacy setting: skip indexing image and audio"
NO_PLATFORM_REMARK = "No model platform configured: skip indexing image and audio"
STOPPED_REMARK = "Indexing stopped"


class Orchestrator:
    """
    Main orchestrator for the indexing engine.

    Scanner → DocumentIndexer → ImageIndexer → AudioIndexer, with the
    Watcher keeping the registry in sync afterwards.
    """

    def __init__(self, config: Optional[IndexerConfig] = None, state: Optional[AppState] = None):
        self.config = config or (state.config if state else IndexerConfig.from_env())
        self.state = state or AppState(self.config)

        self.scanner = Scanner(self.state)
        self.path_search = self.state.path_search
        self.semantic_search = SemanticSearchEngine(self.state)
        self.searcher = SearchCoordinator(self.path_search, self.semantic_search)
        self.watcher = Watcher(self.state, self)

        self._timers_stop: Optional[asyncio.Event] = None
        self._timer_tasks: List[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, watch: bool = True):
        """Build the path cache, start the timers and (optionally) the watcher."""
        await self.path_search.build_index()
        self._timers_stop = asyncio.Event()
        self._timer_tasks = [
            asyncio.create_task(self.state.embeddings.run_eviction_loop(self._timers_stop)),
            asyncio.create_task(self.path_search.run_refresh_loop(self._timers_stop)),
        ]
        if watch:
            await self.watcher.start()

    async def shutdown(self):
        """Stop the watcher and timers and release resources."""
        self.state.stop_requested = True
        await self.watcher.stop()
        if self._timers_stop is not None:
            self._timers_stop.set()
            await asyncio.gather(*self._timer_tasks, return_exceptions=True)
            self._timer_tasks = []
        self.scanner.close()
        self.path_search.close()
        self.state.close()

    # -------------------------------------------------------------------------
    # Indexing runs
    # -------------------------------------------------------------------------

    async def start_indexing(self, paths: List[str], on_event: Optional[EventSink] = None) -> bool:
        """
        Scan `paths` and embed everything waiting.

        Returns:
            False if `paths` is empty or a run is already active, True when
            the run finished (completed or stopped)

        Raises:
            IndexingRunError: the embedding model could not be loaded
            AnalysisPlatformError: the media platform has no API key
        """
        try:
            self._ensure_can_start(paths)
        except PolicyError as e:
            logger.warning(f"{e}, ignoring request")
            return False

        state = self.state
        progress = state.progress
        state.stop_requested = False
        task = progress.new_task([str(p) for p in paths], state.embeddings.model_name)
        send_event(on_event, EventKind.START, task.id, "start")
        start_time = time.monotonic()

        try:
            # ═══════════════════════════════════════════════════════════════
            # PHASE 1: SCAN
            # ═══════════════════════════════════════════════════════════════
            logger.info(f"Phase 1/2: Scanning {len(paths)} path(s)...")
            await self.scanner.scan([str(p) for p in paths], task.id, on_event)
            progress.set_total(self.scanner.total)
            progress.flush()

            # ═══════════════════════════════════════════════════════════════
            # PHASE 2: EMBED
            # ═══════════════════════════════════════════════════════════════
            logger.info("Phase 2/2: Embedding waiting files...")
            state.is_indexing = True
            status, remark = await self._run_indexers(task.id, on_event)

        except ModelLoadError as e:
            message = f"Embedding model unavailable: {e}"
            progress.finish(IndexingTaskStatus.FAILED, message)
            send_event(on_event, EventKind.FINISH, task.id, message)
            raise IndexingRunError(message) from e
        except AnalysisPlatformError as e:
            progress.finish(IndexingTaskStatus.FAILED, str(e))
            send_event(on_event, EventKind.FINISH, task.id, str(e))
            raise
        except Exception as e:
            progress.finish(IndexingTaskStatus.FAILED, str(e))
            send_event(on_event, EventKind.FINISH, task.id, str(e))
            raise
        finally:
            state.reset_run_flags()

        progress.finish(status, remark)
        send_event(on_event, EventKind.FINISH, task.id, remark)
        logger.info(f"Indexing finished in {time.monotonic() - start_time:.1f}s: {remark}")
        return True

    def _ensure_can_start(self, paths: List[str]) -> None:
        if not paths:
            raise EmptyPathListError("No paths to index")
        if self.state.is_busy:
            raise IndexingAlreadyRunningError("Indexing already running")

    async def _run_indexers(self, task_id: Optional[int], on_event: Optional[EventSink]):
        """Document, then image and audio. Returns (status, remark)."""
        state = self.state
        await DocumentIndexer(state).process(task_id, on_event)
        state.progress.flush()

        if state.stop_requested:
            return IndexingTaskStatus.CANCELLED, STOPPED_REMARK
        if state.indexer_setting.is_private:
            return IndexingTaskStatus.COMPLETED, PRIVACY_REMARK
        if not self.config.model_platform:
            return IndexingTaskStatus.COMPLETED, NO_PLATFORM_REMARK
        if not self.config.platform_enabled:
            raise AnalysisPlatformError(
                f"Model platform '{self.config.model_platform}' is missing API key configuration"
            )

        for indexer_cls in (ImageIndexer, AudioIndexer):
            if state.stop_requested:
                return IndexingTaskStatus.CANCELLED, STOPPED_REMARK
            try:
                indexer = indexer_cls.create(state)
            except UnsupportedAnalysisError as e:
                logger.info(f"{e}, skipping")
                continue
            await indexer.process(task_id, on_event)
            state.progress.flush()

        if state.stop_requested:
            return IndexingTaskStatus.CANCELLED, STOPPED_REMARK
        return IndexingTaskStatus.COMPLETED, "done"

    def stop_indexing(self) -> bool:
        """Ask the active scan/indexing run to stop. Returns False if none is active."""
        if not self.state.is_busy:
            return False
        self.state.stop_requested = True
        logger.info("Stop requested")
        return True

    async def background_indexing(self, path: str) -> bool:
        """
        Scan and embed one path without a task record or events.

        Skipped (returns False) while another run is active.
        """
        state = self.state
        if state.is_busy:
            logger.info(f"Indexing busy, background indexing skipped: {path}")
            return False

        result = await self.scanner.scan([path])
        if result is None:
            return False

        state.is_indexing = True
        state.progress.reset()
        try:
            await DocumentIndexer(state).process()
            for category_indexer in (
                indexer_for(state, ImageIndexer.category),
                indexer_for(state, AudioIndexer.category),
            ):
                if category_indexer is not None and not state.stop_requested:
                    await category_indexer.process()
        except ModelLoadError as e:
            handle_error(e, path, "background_indexing")
            return False
        finally:
            state.reset_run_flags()
        return True

    async def index_file(self, path: str) -> bool:
        """
        Bring one file up to date: upsert the record and, if it is waiting,
        embed it right away.

        While a run is active only the record is updated; the file is
        embedded by the next run.
        """
        if not os.path.isfile(path) or not self.scanner.is_valid_file(path):
            return False
        try:
            await self.scanner.add_or_update_file(path)
        except (FileAccessError, PersistenceError) as e:
            handle_error(e, path, "index_file")
            return False

        record = self.state.registry.get_by_path(str(Path(path)))
        if record is None or record.content_index_status != FileIndexStatus.WAITING:
            return False
        if self.state.is_busy:
            logger.debug(f"Run active, {path} stays queued")
            return False

        indexer = indexer_for(self.state, record.category)
        if indexer is None:
            return False
        try:
            outcome = await indexer.embed_one_file(record)
        except ModelLoadError as e:
            handle_error(e, path, "index_file")
            self.state.registry.update_content_status(record.id, FileIndexStatus.WAITING)
            return False
        except Exception as e:
            handle_error(e, path, "index_file")
            indexer.mark_failed(record, e)
            return False
        return outcome != EmbedOutcome.FAILED

    # -------------------------------------------------------------------------
    # Watcher dispatch targets
    # -------------------------------------------------------------------------

    async def remove_file_index(self, path: str) -> bool:
        removed = self.state.registry.delete_by_path(path)
        await self.path_search.remove_from_index(path, is_file=True)
        if removed:
            logger.info(f"Removed from index: {path}")
        return removed

    async def remove_directory_index(self, path: str) -> int:
        removed = self.state.registry.delete_by_prefix(path, os.sep)
        await self.path_search.remove_from_index(path, is_file=False)
        if removed:
            logger.info(f"Removed {removed} records under {path}")
        return removed

    async def rename_file(self, old_path: str, new_path: str) -> None:
        """Move a record to its new path; it is re-embedded only if its category changed."""
        registry = self.state.registry
        await self.path_search.remove_from_index(old_path, is_file=True)
        record = registry.get_by_path(old_path)
        if record is None:
            await self.index_file(new_path)
            return
        # The destination may have held another file that was overwritten
        registry.delete_by_path(new_path)
        ext = file_extension(new_path)
        category = self.state.category_of(ext)
        registry.rename_file(old_path, new_path, ext, category)
        await self.path_search.push_to_index()
        logger.info(f"Renamed: {old_path} -> {new_path}")

        if category != record.category:
            # Content of another kind now; let the matching indexer redo it
            registry.update_content_status(record.id, FileIndexStatus.WAITING)
            await self.index_file(new_path)

    async def rename_directory(self, old_path: str, new_path: str) -> None:
        """Rewrite path prefixes of every record under a renamed directory."""
        registry = self.state.registry
        await self.path_search.remove_from_index(old_path, is_file=False)
        if registry.count_by_prefix(old_path, os.sep) > 0:
            moved = registry.replace_prefix(old_path, new_path, os.sep)
            await self.path_search.push_to_index()
            logger.info(f"Renamed directory: {old_path} -> {new_path} ({moved} records)")
        else:
            await self.background_indexing(new_path)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def add_watched_path(self, path: str) -> bool:
        return await self.watcher.add_path(path)

    async def remove_watched_path(self, path: str) -> bool:
        return await self.watcher.remove_path(path)

    def update_indexer_setting(self, setting: IndexerSetting) -> None:
        """Persist new settings; a language change drops the loaded model."""
        previous = self.state.indexer_setting
        self.state.indexer_setting = setting
        self.state.save_indexer_setting()
        if setting.content_language != previous.content_language:
            logger.info(
                f"Content language changed: {previous.content_language} -> {setting.content_language}"
            )
            self.state.embeddings.clear()

    def is_embedding_model_changed(self) -> bool:
        """True when the last run used a different model than the current one."""
        latest = self.state.registry.latest_task()
        return latest is not None and latest.embedding_model != self.state.embeddings.model_name

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(self, query: str) -> List[SearchResult]:
        return await self.searcher.search(query)


def _print_event(event) -> None:
    print(f"[{event.kind.value}] {event.msg}")


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Local file indexing and search")
    parser.add_argument("--roots", nargs="+", help="Files or directories to index")
    parser.add_argument("--search", help="Run a query and print the results")
    parser.add_argument("--watch", action="store_true", help="Watch the roots for changes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    roots = [str(Path(r).expanduser().resolve()) for r in args.roots or []]

    async def _main():
        orchestrator = Orchestrator(IndexerConfig.from_env())
        try:
            await orchestrator.start(watch=False)

            if roots:
                await orchestrator.start_indexing(roots, on_event=_print_event)

            if args.search:
                for result in await orchestrator.search(args.search):
                    print(f"{result.score:6.2f}  {result.source.value:8}  {result.path}")

            if args.watch:
                for root in roots:
                    await orchestrator.add_watched_path(root)
                await orchestrator.watcher.start()
                print("\nWatching for changes (Ctrl+C to stop)...")
                await asyncio.Event().wait()

        except (KeyboardInterrupt, asyncio.CancelledError):
            print("\nStopped.")
        except IndexingRunError as e:
            logger.error(str(e))
        finally:
            await orchestrator.shutdown()

    asyncio.run(_main())


if __name__ == "__main__":
    main()
