"""
Watcher - Real-time file change detection.

Uses watchdog for cross-platform file system monitoring. Raw events cross
from the observer thread onto the event loop through a bounded queue, are
normalized (rename halves paired), aggregated per path over a debounce
window and then dispatched:

    Remove(file)          -> drop record, embeddings and cached path
    Remove(dir)           -> drop everything under the directory
    Rename(file)          -> move the record in place, or index the new path
    Rename(dir)           -> rewrite path prefixes, or index the new directory
    Create/Modify(file)   -> index the single file
    Create(dir)           -> index the directory in the background
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .normalizer import (
    FsEvent,
    FsEventKind,
    FsEventNormalizer,
    RawFsEvent,
    raw_event_from_watchdog,
)
from .scanner import SYSTEM_FILES


logger = logging.getLogger(__name__)

MAX_RETRIES = 3


def merge_events(existing: FsEvent, incoming: FsEvent) -> FsEvent:
    """
    Combine two events for the same path.

    Remove > Rename > Create > Modify > Other regardless of arrival order;
    on equal rank the incoming event's payload wins.
    """
    return incoming if incoming.kind.rank >= existing.kind.rank else existing


class _EventHandler(FileSystemEventHandler):
    """Forwards every watchdog callback to the watcher (observer thread)."""

    def __init__(self, watcher: "Watcher"):
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent):
        self.watcher._on_watchdog_event(event)


class Watcher:
    """
    Real-time file system watcher with debouncing.

    `handler` performs the index updates (the Orchestrator); the watcher
    itself only decides which of its operations an event maps to.
    """

    def __init__(self, state, handler, clock: Callable[[], float] = time.monotonic):
        self.state = state
        self.config = state.config
        self.handler = handler
        self._clock = clock
        self.normalizer = FsEventNormalizer(self.config.rename_window_ms / 1000, clock)

        self._observer = None
        self._event_handler = _EventHandler(self)
        self._watches: Dict[str, object] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._pending: Dict[str, FsEvent] = {}
        self._window_started: Optional[float] = None
        self._running = False
        self.dropped_events = 0

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Subscribe to every persisted watched path and start consuming."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.config.event_queue_size)
        self._observer = Observer()
        for path in self.state.watcher_setting.all_paths():
            self._schedule(path)
        self._observer.start()
        self._running = True
        self._consumer = asyncio.create_task(self._run())
        logger.info("File watcher started")

    async def stop(self):
        """Stop watching, flush what is pending and wait for spawned work."""
        if not self._running:
            return
        self._running = False

        if self._observer:
            self._observer.stop()
            await self._loop.run_in_executor(None, self._observer.join, 2)
            self._observer = None
            self._watches.clear()

        # A None item closes the channel; the consumer flushes and exits
        await self._queue.put(None)
        await self._consumer
        self._consumer = None
        await self.drain()
        logger.info("File watcher stopped")

    def _schedule(self, path: str) -> bool:
        if not os.path.exists(path):
            logger.warning(f"Watch path not found: {path}")
            return False
        try:
            self._watches[path] = self._observer.schedule(
                self._event_handler, path, recursive=os.path.isdir(path)
            )
        except OSError as e:
            logger.error(f"Cannot watch {path}: {e}")
            return False
        logger.info(f"Watching: {path}")
        return True

    def _unschedule(self, path: str) -> None:
        watch = self._watches.pop(path, None)
        if watch is not None and self._observer:
            self._observer.unschedule(watch)
            logger.info(f"Stopped watching: {path}")

    async def add_path(self, path: str) -> bool:
        """Persist a new watched path and subscribe to it."""
        path = os.path.abspath(path)
        if not os.path.exists(path):
            logger.warning(f"Cannot watch missing path: {path}")
            return False
        setting = self.state.watcher_setting
        if not setting.add(path, is_file=os.path.isfile(path)):
            return False
        self.state.save_watcher_setting()
        if self._running:
            self._schedule(path)
        return True

    async def remove_path(self, path: str) -> bool:
        """Forget a watched path and unsubscribe from it."""
        path = os.path.abspath(path)
        if not self.state.watcher_setting.remove(path):
            return False
        self.state.save_watcher_setting()
        self._unschedule(path)
        return True

    # -------------------------------------------------------------------------
    # Observer thread -> event loop
    # -------------------------------------------------------------------------

    def _on_watchdog_event(self, event: FileSystemEvent):
        """Called on the observer thread."""
        if self._loop is None or not self._running:
            return
        raw = raw_event_from_watchdog(event)
        self._loop.call_soon_threadsafe(self._offer, raw)

    def _offer(self, raw: RawFsEvent):
        try:
            self._queue.put_nowait(raw)
        except asyncio.QueueFull:
            self._spawn(self._offer_with_retry(raw))

    async def _offer_with_retry(self, raw: RawFsEvent):
        for _ in range(MAX_RETRIES):
            await asyncio.sleep(self.config.event_queue_retry_delay_ms / 1000)
            try:
                self._queue.put_nowait(raw)
                return
            except asyncio.QueueFull:
                continue
        self.dropped_events += 1
        logger.error(f"Event queue full, dropping {raw.kind.value} event for {raw.paths}")

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def _should_skip(self, path: str) -> bool:
        """Check if a path should be skipped."""
        p = Path(path)
        setting = self.state.indexer_setting

        if p.name in SYSTEM_FILES:
            return True
        if setting.ignore_hidden and p.name.startswith("."):
            return True
        for part in p.parts:
            if part in setting.ignore_dirs:
                return True
        # Never react to our own database and model files
        data_dir = str(self.config.data_dir)
        return path == data_dir or path.startswith(data_dir + os.sep)

    def handle_raw(self, raw: RawFsEvent) -> None:
        """Normalize one raw event and fold the result into the pending window."""
        if raw.paths and all(self._should_skip(p) for p in raw.paths):
            self._collect(self.normalizer.flush_expired())
            return
        self._collect(self.normalizer.handle(raw))

    def _collect(self, events: List[FsEvent]) -> None:
        for event in events:
            current = self._pending.get(event.path)
            self._pending[event.path] = event if current is None else merge_events(current, event)
            if self._window_started is None:
                self._window_started = self._clock()

    def pending_events(self) -> List[FsEvent]:
        return list(self._pending.values())

    def _window_expired(self) -> bool:
        return (
            self._window_started is not None
            and self._clock() - self._window_started >= self.config.debounce_ms / 1000
        )

    def _next_timeout(self) -> Optional[float]:
        now = self._clock()
        deadlines = []
        if self._window_started is not None:
            deadlines.append(self._window_started + self.config.debounce_ms / 1000)
        if self.normalizer.pending:
            deadlines.append(now + self.normalizer.rename_window_s)
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - now)

    async def _run(self):
        while True:
            try:
                raw = await asyncio.wait_for(self._queue.get(), timeout=self._next_timeout())
            except asyncio.TimeoutError:
                self._collect(self.normalizer.flush_expired())
                if self._window_expired():
                    await self.flush()
                continue

            if raw is None:
                self._collect(self.normalizer.flush_all())
                await self.flush()
                return

            self.handle_raw(raw)
            if self._window_expired():
                await self.flush()

    async def flush(self) -> int:
        """Dispatch every pending event now. Returns the number dispatched."""
        events = list(self._pending.values())
        self._pending.clear()
        self._window_started = None
        if events:
            logger.info(f"Processing {len(events)} file changes")
        for event in events:
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error(f"Change handler error for {event.kind.value} {event.path}: {e}")
        return len(events)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, event: FsEvent) -> None:
        kind = event.kind

        if kind == FsEventKind.REMOVE:
            if event.is_file:
                await self.handler.remove_file_index(event.path)
            else:
                await self.handler.remove_directory_index(event.path)

        elif kind == FsEventKind.RENAME:
            to = event.to_path
            is_file = os.path.isfile(to) if os.path.exists(to) else event.is_file
            if is_file:
                await self.handler.rename_file(event.path, to)
            else:
                await self.handler.rename_directory(event.path, to)

        elif kind in (FsEventKind.CREATE, FsEventKind.MODIFY):
            if os.path.isfile(event.path):
                self._spawn(self.handler.index_file(event.path))
            elif kind == FsEventKind.CREATE and os.path.isdir(event.path):
                self._spawn(self.handler.background_indexing(event.path))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background change task failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for all spawned indexing work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
