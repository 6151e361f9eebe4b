"""
Scanner - Parallel file system traversal and registry upsert.

Directories go through a bounded work queue drained by worker tasks.
Every valid file is hashed and reconciled with the registry:

1. Same content hash, record at this path and up to date -> nothing written
2. Same content hash, file moved (old path gone) or record stale
   -> path/metadata refreshed, statuses reset to WAITING
3. Record at this path with a different hash -> content changed,
   everything refreshed, statuses reset to WAITING
4. Otherwise -> new record

The queue is best-effort: a directory that cannot be enqueued after
MAX_RETRIES attempts is logged and dropped.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import FileAccessError, PersistenceError, handle_error
from .events import EventKind, EventSink, send_event
from .hasher import Hasher
from .models import (
    FileCategory,
    FileIndexStatus,
    FileMetadata,
    FileRecord,
    ScanOutcome,
    ScanResult,
    describe_attributes,
)


logger = logging.getLogger(__name__)

MAX_RETRIES = 3
SYSTEM_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}


def file_extension(path: Path | str) -> str:
    """Lowercase extension without the dot ('' if none)."""
    return Path(path).suffix.lower().lstrip(".")


def build_file_metadata(path: Path, st: os.stat_result, category: FileCategory) -> FileMetadata:
    """Metadata from a stat result."""
    created = getattr(st, "st_birthtime", None) or st.st_ctime
    return FileMetadata(
        name=path.name,
        extension=file_extension(path),
        category=category,
        size=st.st_size,
        created=datetime.fromtimestamp(created),
        modified=datetime.fromtimestamp(st.st_mtime),
        attributes=describe_attributes(getattr(st, "st_file_attributes", 0)),
    )


def _list_dir(directory: Path) -> List[Tuple[str, str, bool, bool]]:
    """(path, name, is_dir, is_file) for each entry. Runs in a worker thread."""
    result = []
    with os.scandir(directory) as it:
        for entry in it:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = not is_dir and entry.is_file(follow_symlinks=False)
            except OSError as e:
                handle_error(e, entry.path, "scan_entry")
                continue
            result.append((entry.path, entry.name, is_dir, is_file))
    return result


class Scanner:
    """
    Walks paths and brings the registry in line with what is on disk.

    Only one scan runs at a time; a second call while one is in flight
    returns None without doing anything.
    """

    def __init__(self, state):
        self.state = state
        self.config = state.config
        self.registry = state.registry
        self.hasher = Hasher(state.config)
        self.total = 0
        self._pending_dirs = 0

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def should_skip_dir(self, name: str) -> bool:
        setting = self.state.indexer_setting
        if setting.ignore_hidden and name.startswith("."):
            return True
        return name in setting.ignore_dirs

    def is_valid_file(self, path: Path | str) -> bool:
        path = Path(path)
        name = path.name
        setting = self.state.indexer_setting

        if name in SYSTEM_FILES:
            return False
        if setting.ignore_hidden and name.startswith("."):
            return False

        ext = file_extension(path)
        if not ext or ext in setting.ignore_exts:
            return False

        return str(path) not in setting.ignore_files

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    async def scan(
        self,
        paths: List[str],
        task_id: Optional[int] = None,
        on_event: Optional[EventSink] = None,
    ) -> Optional[ScanResult]:
        """
        Scan files and directories into the registry.

        Returns:
            ScanResult, or None if another scan was already running
        """
        if self.state.is_scanning:
            logger.warning("Scan already in progress, ignoring request")
            return None

        self.state.is_scanning = True
        try:
            return await self._scan(paths, task_id, on_event)
        finally:
            self.state.is_scanning = False

    async def _scan(
        self, paths: List[str], task_id: Optional[int], on_event: Optional[EventSink]
    ) -> ScanResult:
        start_time = time.monotonic()
        result = ScanResult()
        self.total = 0
        self._pending_dirs = 0
        queue: asyncio.Queue[Path] = asyncio.Queue(maxsize=self.config.scan_queue_size)

        files: List[Path] = []
        for raw in paths:
            send_event(on_event, EventKind.SCAN, task_id, raw)
            path = Path(raw)
            if path.is_file():
                files.append(path)
            elif path.is_dir():
                await self._enqueue(queue, path, result)
            else:
                logger.warning(f"Path not found: {path}")

        workers = [
            asyncio.create_task(self._worker(queue, result))
            for _ in range(self.config.scanner_concurrency)
        ]
        try:
            await asyncio.gather(*(self._process_file(f, result) for f in files))
            while self._pending_dirs > 0 and not self.state.stop_requested:
                await asyncio.sleep(0.05)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if self.state.stop_requested:
            result.stopped = True
            send_event(on_event, EventKind.STOP, task_id, "Scan stopped")

        result.total = self.total
        result.duration_seconds = time.monotonic() - start_time
        logger.info(
            f"Scanned {result.total} files in {result.duration_seconds:.1f}s: "
            f"{result.created} new, {result.moved} moved, {result.modified} modified, "
            f"{result.unchanged} unchanged, {result.failed} failed"
        )
        if result.dropped_dirs:
            logger.warning(f"{result.dropped_dirs} directories dropped (scan queue full)")
        return result

    async def _enqueue(self, queue: asyncio.Queue, directory: Path, result: ScanResult) -> bool:
        for attempt in range(MAX_RETRIES + 1):
            try:
                queue.put_nowait(directory)
                self._pending_dirs += 1
                return True
            except asyncio.QueueFull:
                if attempt < MAX_RETRIES:
                    await asyncio.sleep(self.config.scan_queue_retry_delay_ms / 1000)
        logger.error(f"Scan queue full, dropping directory: {directory}")
        result.dropped_dirs += 1
        return False

    async def _worker(self, queue: asyncio.Queue, result: ScanResult) -> None:
        while True:
            directory = await queue.get()
            try:
                await self._scan_directory(directory, queue, result)
            except Exception as e:
                handle_error(e, directory, "scan_directory")
            finally:
                self._pending_dirs -= 1
                queue.task_done()

    async def _scan_directory(self, directory: Path, queue: asyncio.Queue, result: ScanResult):
        loop = asyncio.get_running_loop()
        try:
            entries = await loop.run_in_executor(None, _list_dir, directory)
        except OSError as e:
            handle_error(e, directory, "scan_directory")
            return

        for entry_path, name, is_dir, is_file in entries:
            if self.state.stop_requested:
                return
            if is_dir:
                if not self.should_skip_dir(name):
                    await self._enqueue(queue, Path(entry_path), result)
            elif is_file:
                await self._process_file(Path(entry_path), result)

    async def _process_file(self, path: Path, result: ScanResult) -> None:
        if self.state.stop_requested or not self.is_valid_file(path):
            return
        self.total += 1
        try:
            outcome = await self.add_or_update_file(path)
        except (FileAccessError, PersistenceError) as e:
            handle_error(e, path, "scan_file")
            result.failed += 1
            return
        result.count(outcome)

    # -------------------------------------------------------------------------
    # Upsert
    # -------------------------------------------------------------------------

    async def add_or_update_file(self, path: Path | str) -> ScanOutcome:
        """
        Reconcile one file with the registry.

        Raises:
            FileAccessError: the file could not be stat'ed or hashed
            PersistenceError: the registry write failed
        """
        path = Path(path)
        path_str = str(path)
        loop = asyncio.get_running_loop()
        try:
            st = await loop.run_in_executor(None, os.stat, path)
        except OSError as e:
            raise FileAccessError(f"Cannot stat {path}: {e}") from e

        content_hash = await self.hasher.hash_file(path)
        ext = file_extension(path)
        category = self.state.category_of(ext)
        metadata = build_file_metadata(path, st, category)
        mtime = metadata.modified

        existing = self._match_by_hash(content_hash, path_str)
        if existing is not None:
            if existing.is_invalid or existing.content_index_status == FileIndexStatus.INDEXING:
                return ScanOutcome.UNCHANGED

            up_to_date = existing.file_update_time is not None and existing.file_update_time >= mtime
            queued_or_done = existing.content_index_status in (
                FileIndexStatus.WAITING, FileIndexStatus.INDEXED
            )
            if existing.path == path_str and up_to_date and queued_or_done:
                return ScanOutcome.UNCHANGED

            moved = existing.path != path_str
            if moved:
                # Whatever was recorded at the destination has been replaced
                self.registry.delete_by_path(path_str)
                logger.debug(f"Moved: {existing.path} -> {path_str}")

            self._refresh(existing, path, category, metadata, st.st_size, content_hash)
            self.registry.update_file(existing)
            return ScanOutcome.MOVED if moved else ScanOutcome.MODIFIED

        by_path = self.registry.get_by_path(path_str)
        if by_path is not None:
            self._refresh(by_path, path, category, metadata, st.st_size, content_hash)
            by_path.is_invalid = False
            by_path.invalid_reason = ""
            self.registry.update_file(by_path)
            return ScanOutcome.MODIFIED

        self.registry.insert_file(FileRecord(
            name=path.name,
            path=path_str,
            category=category,
            file_ext=ext,
            file_size=st.st_size,
            content_hash=content_hash,
            metadata=metadata,
            file_create_time=metadata.created,
            file_update_time=mtime,
        ))
        return ScanOutcome.CREATED

    def _match_by_hash(self, content_hash: str, path_str: str) -> Optional[FileRecord]:
        """
        The record this content belongs to.

        A record at the same path wins. Otherwise a record whose path no
        longer exists is the same file, moved. Records whose path still
        exists are duplicates and are left alone.
        """
        candidates = self.registry.list_by_hash(content_hash)
        for record in candidates:
            if record.path == path_str:
                return record
        for record in candidates:
            if not os.path.exists(record.path):
                return record
        return None

    @staticmethod
    def _refresh(
        record: FileRecord,
        path: Path,
        category: FileCategory,
        metadata: FileMetadata,
        size: int,
        content_hash: str,
    ) -> None:
        record.path = str(path)
        record.name = path.name
        record.file_ext = metadata.extension
        record.category = category
        record.metadata = metadata
        record.file_size = size
        record.content_hash = content_hash
        record.file_create_time = metadata.created
        record.file_update_time = metadata.modified
        record.content_index_status = FileIndexStatus.WAITING
        record.content_index_status_msg = ""
        record.meta_index_status = FileIndexStatus.WAITING
        record.meta_index_status_msg = ""

    def close(self):
        self.hasher.close()
