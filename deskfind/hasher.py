"""
Hasher - Fast content hashing using xxHash.

Hashes raw file bytes in fixed-size chunks so memory stays bounded no
matter how large the file is. The hash is the file's identity in the
registry: same bytes at a new path means the file moved.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import xxhash

from .config import IndexerConfig
from .errors import HashingError, handle_error


logger = logging.getLogger(__name__)

HASH_BUFFER_SIZE = 65536


def compute_hash(path: Path | str) -> str:
    """Stream a file through xxh64 and return the hex digest."""
    hasher = xxhash.xxh64()
    # Read in 64KB chunks for memory efficiency
    with open(path, "rb") as f:
        while chunk := f.read(HASH_BUFFER_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


class Hasher:
    """
    Thread-pool backed hasher.

    Hashing is blocking file I/O, so it never runs on the event loop.
    """

    def __init__(self, config: IndexerConfig):
        self.config = config
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.hasher_concurrency,
                thread_name_prefix="hasher"
            )
        return self._executor

    async def hash_file(self, path: Path | str) -> str:
        """
        Hash a single file.

        Raises:
            HashingError: the file could not be read
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._get_executor(), compute_hash, path)
        except OSError as e:
            handle_error(e, path, "hash_file")
            raise HashingError(f"Cannot hash {path}: {e}") from e

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
