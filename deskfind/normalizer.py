"""
FsEventNormalizer - raw filesystem notifications to canonical events.

Backends report renames differently: some deliver both endpoints at once,
others deliver a "from" half and a "to" half separately. The normalizer
pairs halves that arrive within a short window; a "from" that is never
matched becomes a Remove, a "to" without a "from" becomes a Create.
"""

import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple


logger = logging.getLogger(__name__)


class RawFsEventKind(Enum):
    CREATE = "create"
    REMOVE = "remove"
    MODIFY = "modify"
    RENAME_BOTH = "rename_both"
    RENAME_FROM = "rename_from"
    RENAME_TO = "rename_to"
    OTHER = "other"


@dataclass(frozen=True)
class RawFsEvent:
    """One notification as delivered by the watch backend."""
    kind: RawFsEventKind
    paths: Tuple[str, ...]
    is_directory: Optional[bool] = None


class FsEventKind(Enum):
    CREATE = "create"
    MODIFY = "modify"
    REMOVE = "remove"
    RENAME = "rename"
    OTHER = "other"

    @property
    def rank(self) -> int:
        """Precedence when events for one path are merged."""
        return _RANKS[self]


_RANKS = {
    FsEventKind.OTHER: 0,
    FsEventKind.MODIFY: 1,
    FsEventKind.CREATE: 2,
    FsEventKind.RENAME: 3,
    FsEventKind.REMOVE: 4,
}


@dataclass(frozen=True)
class FsEvent:
    """
    Canonical event. For renames `path` is the source and `to_path` the
    destination.
    """
    kind: FsEventKind
    path: str
    to_path: Optional[str] = None
    is_file: bool = True


def guess_is_file(path: str) -> bool:
    """Path-shape guess for paths that no longer exist: a name with an extension is a file."""
    return bool(Path(path).suffix)


def _is_file(path: str, is_directory: Optional[bool]) -> bool:
    if is_directory is not None:
        return not is_directory
    if os.path.isdir(path):
        return False
    if os.path.isfile(path):
        return True
    return guess_is_file(path)


_WATCHDOG_KINDS = {
    "created": RawFsEventKind.CREATE,
    "deleted": RawFsEventKind.REMOVE,
    "modified": RawFsEventKind.MODIFY,
}


def raw_event_from_watchdog(event) -> RawFsEvent:
    """
    Adapt a watchdog FileSystemEvent.

    watchdog reports moves inside the watched tree with both endpoints;
    moves across the boundary arrive as created/deleted.
    """
    src = os.fsdecode(event.src_path)
    if event.event_type == "moved":
        dest = os.fsdecode(event.dest_path or "")
        if dest:
            return RawFsEvent(RawFsEventKind.RENAME_BOTH, (src, dest), event.is_directory)
        return RawFsEvent(RawFsEventKind.RENAME_FROM, (src,), event.is_directory)
    kind = _WATCHDOG_KINDS.get(event.event_type, RawFsEventKind.OTHER)
    return RawFsEvent(kind, (src,), event.is_directory)


class FsEventNormalizer:
    """
    Stateful pairing of rename halves.

    `clock` is a monotonic seconds source, injectable for tests.
    """

    def __init__(self, rename_window_s: float = 0.3, clock: Callable[[], float] = time.monotonic):
        self.rename_window_s = rename_window_s
        self._clock = clock
        self._pending_from: Deque[Tuple[str, float, Optional[bool]]] = deque()

    @property
    def pending(self) -> int:
        return len(self._pending_from)

    def flush_expired(self) -> List[FsEvent]:
        """Turn unmatched 'from' halves older than the window into Removes."""
        now = self._clock()
        out = []
        while self._pending_from and now - self._pending_from[0][1] > self.rename_window_s:
            path, _, is_directory = self._pending_from.popleft()
            is_file = (not is_directory) if is_directory is not None else guess_is_file(path)
            logger.debug(f"Unmatched rename source treated as removed: {path}")
            out.append(FsEvent(FsEventKind.REMOVE, path, is_file=is_file))
        return out

    def flush_all(self) -> List[FsEvent]:
        """Downgrade every pending 'from' half (used on shutdown)."""
        out = []
        while self._pending_from:
            path, _, is_directory = self._pending_from.popleft()
            is_file = (not is_directory) if is_directory is not None else guess_is_file(path)
            out.append(FsEvent(FsEventKind.REMOVE, path, is_file=is_file))
        return out

    def handle(self, raw: RawFsEvent) -> List[FsEvent]:
        """Normalize one raw event. Returns zero or more canonical events."""
        out = self.flush_expired()
        kind = raw.kind

        if kind == RawFsEventKind.RENAME_BOTH and len(raw.paths) >= 2:
            src, dest = raw.paths[0], raw.paths[1]
            out.append(FsEvent(FsEventKind.RENAME, src, dest, _is_file(dest, raw.is_directory)))

        elif kind == RawFsEventKind.RENAME_FROM:
            for path in raw.paths:
                self._pending_from.append((path, self._clock(), raw.is_directory))

        elif kind == RawFsEventKind.RENAME_TO:
            for dest in raw.paths:
                is_file = _is_file(dest, raw.is_directory)
                if self._pending_from:
                    src, _, _ = self._pending_from.popleft()
                    out.append(FsEvent(FsEventKind.RENAME, src, dest, is_file))
                else:
                    out.append(FsEvent(FsEventKind.CREATE, dest, is_file=is_file))

        elif kind in (RawFsEventKind.CREATE, RawFsEventKind.MODIFY):
            event_kind = FsEventKind.CREATE if kind == RawFsEventKind.CREATE else FsEventKind.MODIFY
            for path in raw.paths:
                out.append(FsEvent(event_kind, path, is_file=_is_file(path, raw.is_directory)))

        elif kind == RawFsEventKind.REMOVE:
            for path in raw.paths:
                is_file = (not raw.is_directory) if raw.is_directory is not None else guess_is_file(path)
                out.append(FsEvent(FsEventKind.REMOVE, path, is_file=is_file))

        else:
            for path in raw.paths or ("",):
                out.append(FsEvent(FsEventKind.OTHER, path))

        return out
