"""
PathSearchEngine - In-memory multi-keyword search over file paths.

The cache holds every registry path in insertion order. It is built once
in pages, extended by a timer with paths updated since the last build, and
trimmed directly by watcher events. Many searches may read it at once;
rebuilds, pushes and removals take it exclusively.
"""

import asyncio
import logging
import math
import os
import re
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Set, Tuple

from .config import IndexerConfig
from .models import SearchResult, SearchSource
from .registry import FileRegistry


logger = logging.getLogger(__name__)


class ReadWriteLock:
    """
    asyncio reader/writer lock.

    Writer-preferring: once a writer is waiting, new readers queue behind it.
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def busy(self) -> bool:
        return self._writer or self._readers > 0 or self._waiting_writers > 0

    @asynccontextmanager
    async def read(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self):
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def compile_keywords(keywords: List[str]) -> re.Pattern:
    """
    Case-insensitive alternation of all keywords.

    Longest keywords come first so that at any position the longest one
    matches (leftmost-longest, non-overlapping).
    """
    ordered = sorted(keywords, key=len, reverse=True)
    return re.compile("|".join(re.escape(k) for k in ordered), re.IGNORECASE)


def _scan_slice(
    paths: List[str], start: int, end: int, pattern: re.Pattern, take: int
) -> List[Tuple[int, str, Set[str]]]:
    """Matches in paths[start:end], at most `take`. Runs in a worker thread."""
    hits = []
    for i in range(start, end):
        path = paths[i]
        matched = {m.group(0).lower() for m in pattern.finditer(path)}
        if matched:
            hits.append((i, path, matched))
            if len(hits) >= take:
                break
    return hits


class PathSearchEngine:
    def __init__(self, registry: FileRegistry, config: IndexerConfig):
        self.registry = registry
        self.config = config
        self._paths: List[str] = []
        self._known: Set[str] = set()
        self._lock = ReadWriteLock()
        self.last_build_time: Optional[datetime] = None
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.search_concurrency,
                thread_name_prefix="path-search"
            )
        return self._executor

    def __len__(self) -> int:
        return len(self._paths)

    def snapshot(self) -> List[str]:
        return list(self._paths)

    # -------------------------------------------------------------------------
    # Cache maintenance
    # -------------------------------------------------------------------------

    def _load_pages(self, total: int, fetch) -> List[str]:
        page_size = self.config.path_build_page_size
        paths: List[str] = []
        for page in range(1, math.ceil(total / page_size) + 1):
            paths.extend(fetch(page, page_size))
        return paths

    async def build_index(self) -> int:
        """Reload the whole cache from the registry."""
        async with self._lock.write():
            started = datetime.now()
            paths = self._load_pages(self.registry.count(), self.registry.list_paths)
            self._paths = paths
            self._known = set(paths)
            self.last_build_time = started
        logger.info(f"Path cache built with {len(self._paths)} paths")
        return len(self._paths)

    async def push_to_index(self) -> int:
        """Append paths created or updated since the last build/push."""
        if self.last_build_time is None:
            return await self.build_index()

        async with self._lock.write():
            started = datetime.now()
            since = self.last_build_time
            updated = self._load_pages(
                self.registry.count_updated_since(since),
                lambda page, size: self.registry.list_paths_updated_since(since, page, size),
            )
            added = 0
            for path in updated:
                if path not in self._known:
                    self._paths.append(path)
                    self._known.add(path)
                    added += 1
            self.last_build_time = started
        if added:
            logger.debug(f"Path cache: {added} paths added")
        return added

    async def remove_from_index(self, path: str, is_file: bool) -> int:
        """Drop a file path, or a directory and everything under it."""
        async with self._lock.write():
            if is_file:
                doomed = {path} if path in self._known else set()
            else:
                prefix = path.rstrip(os.sep) + os.sep
                doomed = {p for p in self._known if p == path or p.startswith(prefix)}
            if doomed:
                self._paths = [p for p in self._paths if p not in doomed]
                self._known -= doomed
        return len(doomed)

    async def refresh(self) -> bool:
        """One timer tick. Skipped when the cache is in use."""
        if self._lock.busy:
            return False
        await self.push_to_index()
        return True

    async def run_refresh_loop(self, stop: asyncio.Event) -> None:
        interval = self.config.path_refresh_interval_s
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.refresh()
                except Exception as e:
                    logger.warning(f"Path cache refresh failed: {e}")

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """
        Paths matching any whitespace-separated keyword.

        Score is the number of distinct keywords found in the path. Ties
        keep cache (insertion) order.
        """
        limit = limit or self.config.path_search_limit
        keywords = list(dict.fromkeys(k.lower() for k in query.split()))
        if not keywords:
            return []

        pattern = compile_keywords(keywords)
        # A single keyword scores every hit equally; more keywords need a
        # wider pool to rank from
        take = limit if len(keywords) == 1 else limit * 10

        loop = asyncio.get_running_loop()
        async with self._lock.read():
            paths = self._paths
            n = len(paths)
            if n == 0:
                return []
            slices = max(1, min(self.config.search_concurrency, n))
            size = math.ceil(n / slices)
            executor = self._get_executor()
            parts = await asyncio.gather(*(
                loop.run_in_executor(
                    executor, _scan_slice, paths, start, min(start + size, n), pattern, take
                )
                for start in range(0, n, size)
            ))

        candidates = [hit for part in parts for hit in part][:take]
        candidates.sort(key=lambda hit: (-len(hit[2]), hit[0]))

        return [
            SearchResult(
                path=path,
                name=os.path.basename(path),
                score=float(len(matched)),
                source=SearchSource.PATH,
                file_ext=os.path.splitext(path)[1].lower().lstrip("."),
                matched_keywords=sorted(matched),
            )
            for _, path, matched in candidates[:limit]
        ]

    def close(self):
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
