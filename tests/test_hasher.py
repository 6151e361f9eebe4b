"""
Hasher Tests - Verify content hashing and duplicate detection.

Tests:
- xxh64 hash computation, streamed in 64KB blocks
- Duplicate detection
- Error handling for unreadable files
"""

import pytest
import xxhash

from deskfind.errors import HashingError
from deskfind.hasher import HASH_BUFFER_SIZE, Hasher, compute_hash


class TestComputeHash:
    def test_matches_xxh64(self, sample_files):
        """Digest is the xxh64 hex of the raw bytes."""
        path = sample_files["txt"]

        assert compute_hash(path) == xxhash.xxh64(path.read_bytes()).hexdigest()
        assert len(compute_hash(path)) == 16

    def test_large_file_spans_buffers(self, temp_dir):
        """Files bigger than one buffer hash the same as a single update."""
        data = bytes(range(256)) * (HASH_BUFFER_SIZE // 256 * 3 + 7)
        big = temp_dir / "big.bin"
        big.write_bytes(data)

        assert compute_hash(big) == xxhash.xxh64(data).hexdigest()

    def test_empty_file(self, temp_dir):
        empty = temp_dir / "empty.txt"
        empty.write_bytes(b"")

        assert compute_hash(empty) == xxhash.xxh64(b"").hexdigest()


class TestHasher:
    """Tests for the Hasher class."""

    @pytest.mark.asyncio
    async def test_identical_content_same_hash(self, duplicate_files, test_config):
        """Files with identical content have the same hash."""
        file1, file2 = duplicate_files

        hasher = Hasher(test_config)
        try:
            assert await hasher.hash_file(file1) == await hasher.hash_file(file2)
        finally:
            hasher.close()

    @pytest.mark.asyncio
    async def test_different_content_different_hash(self, sample_files, test_config):
        hasher = Hasher(test_config)
        try:
            txt = await hasher.hash_file(sample_files["txt"])
            md = await hasher.hash_file(sample_files["md"])
        finally:
            hasher.close()

        assert txt != md

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, temp_dir, test_config):
        """Unreadable files surface as HashingError."""
        hasher = Hasher(test_config)
        try:
            with pytest.raises(HashingError):
                await hasher.hash_file(temp_dir / "missing.txt")
        finally:
            hasher.close()
