"""
Scanner Tests - Verify traversal and registry reconciliation.

Tests:
- Basic file discovery and skip rules (hidden files, node_modules, ignored extensions)
- Zero-write rescans
- Moves keep the record, modifications reset it
- Duplicate content at two live paths
- Bounded queue drop policy and stop flag
"""

import os

import pytest

from deskfind.events import EventKind
from deskfind.models import FileCategory, FileIndexStatus, ScanOutcome
from deskfind.scanner import Scanner, file_extension


@pytest.fixture
def scanner(state):
    s = Scanner(state)
    yield s
    s.close()


class TestScanner:
    """Tests for the Scanner class."""

    @pytest.mark.asyncio
    async def test_finds_basic_files(self, sample_files, scanner, state, temp_dir):
        """Scanner registers regular and nested files."""
        result = await scanner.scan([str(temp_dir)])

        assert result.created == 4
        assert result.total == 4
        for key in ("txt", "md", "py", "nested"):
            record = state.registry.get_by_path(str(sample_files[key]))
            assert record is not None
            assert record.content_index_status == FileIndexStatus.WAITING

    @pytest.mark.asyncio
    async def test_skips_hidden_and_ignored_dirs(self, sample_files, scanner, state, temp_dir):
        """Hidden files and node_modules are never registered."""
        await scanner.scan([str(temp_dir)])

        assert state.registry.get_by_path(str(sample_files["hidden"])) is None
        assert state.registry.get_by_path(str(sample_files["node_modules"])) is None

    @pytest.mark.asyncio
    async def test_skips_ignored_extension(self, sample_files, scanner, state, temp_dir):
        """Extensions in ignore_exts are skipped."""
        state.indexer_setting.ignore_exts.add("md")

        await scanner.scan([str(temp_dir)])

        assert state.registry.get_by_path(str(sample_files["md"])) is None

    @pytest.mark.asyncio
    async def test_skips_ds_store(self, temp_dir, scanner, state):
        """Scanner skips system files."""
        (temp_dir / "Thumbs.db").write_bytes(b"\x00\x01")

        result = await scanner.scan([str(temp_dir)])

        assert result.total == 0
        assert state.registry.count() == 0

    @pytest.mark.asyncio
    async def test_assigns_categories(self, sample_files, scanner, state, temp_dir):
        """Loaders define documents; other extensions fall back to Other."""
        await scanner.scan([str(temp_dir)])

        assert state.registry.get_by_path(str(sample_files["md"])).category == FileCategory.DOCUMENT
        assert state.registry.get_by_path(str(sample_files["py"])).category == FileCategory.OTHER

    @pytest.mark.asyncio
    async def test_rescan_writes_nothing(self, sample_files, scanner, state, temp_dir):
        """A second scan of unchanged files leaves every record untouched."""
        await scanner.scan([str(temp_dir)])
        before = state.registry.get_by_path(str(sample_files["txt"]))

        result = await scanner.scan([str(temp_dir)])

        after = state.registry.get_by_path(str(sample_files["txt"]))
        assert result.unchanged == 4
        assert result.created == result.modified == result.moved == 0
        assert after.update_time == before.update_time

    @pytest.mark.asyncio
    async def test_move_keeps_record(self, sample_files, scanner, state, temp_dir):
        """Same content at a new path updates the existing record."""
        await scanner.scan([str(temp_dir)])
        old = sample_files["txt"]
        original = state.registry.get_by_path(str(old))
        new = temp_dir / "renamed.txt"
        os.rename(old, new)

        result = await scanner.scan([str(temp_dir)])

        moved = state.registry.get_by_path(str(new))
        assert result.moved == 1
        assert moved.id == original.id
        assert moved.name == "renamed.txt"
        assert state.registry.get_by_path(str(old)) is None

    @pytest.mark.asyncio
    async def test_move_over_existing_file(self, temp_dir, scanner, state):
        """Moving onto another file replaces the destination's record."""
        a, b = temp_dir / "a.txt", temp_dir / "b.txt"
        a.write_text("alpha content")
        b.write_text("beta content")
        await scanner.scan([str(temp_dir)])
        a_id = state.registry.get_by_path(str(a)).id
        os.replace(a, b)

        await scanner.scan([str(temp_dir)])

        assert state.registry.count() == 1
        assert state.registry.get_by_path(str(b)).id == a_id

    @pytest.mark.asyncio
    async def test_modified_file_is_requeued(self, sample_files, scanner, state, temp_dir):
        """Changed content keeps the id, updates the hash and resets statuses."""
        await scanner.scan([str(temp_dir)])
        path = sample_files["txt"]
        original = state.registry.get_by_path(str(path))
        state.registry.update_content_status(original.id, FileIndexStatus.INDEXED, "success")
        path.write_text("Completely different text now.")

        result = await scanner.scan([str(temp_dir)])

        record = state.registry.get_by_path(str(path))
        assert result.modified == 1
        assert record.id == original.id
        assert record.content_hash != original.content_hash
        assert record.content_index_status == FileIndexStatus.WAITING

    @pytest.mark.asyncio
    async def test_duplicates_get_own_records(self, duplicate_files, scanner, state, temp_dir):
        """Two live files with identical content are two records."""
        result = await scanner.scan([str(temp_dir)])

        first, second = duplicate_files
        assert result.created == 2
        assert state.registry.get_by_path(str(first)) is not None
        assert state.registry.get_by_path(str(second)) is not None

    @pytest.mark.asyncio
    async def test_scan_single_file(self, sample_files, scanner, state):
        """Files can be passed directly instead of directories."""
        result = await scanner.scan([str(sample_files["txt"])])

        assert result.created == 1
        assert state.registry.count() == 1

    @pytest.mark.asyncio
    async def test_handles_nonexistent_path(self, temp_dir, scanner):
        """Missing paths are logged and produce an empty result."""
        result = await scanner.scan([str(temp_dir / "does_not_exist")])

        assert result.total == 0

    @pytest.mark.asyncio
    async def test_rejects_concurrent_scan(self, temp_dir, scanner, state):
        """A scan requested while one is running is a no-op."""
        state.is_scanning = True

        assert await scanner.scan([str(temp_dir)]) is None

    @pytest.mark.asyncio
    async def test_stop_flag(self, sample_files, scanner, state, temp_dir):
        """A raised stop flag halts the scan and emits a Stop event."""
        events = []
        state.stop_requested = True

        result = await scanner.scan([str(temp_dir)], task_id=7, on_event=events.append)

        assert result.stopped
        assert state.registry.count() == 0
        assert events[-1].kind == EventKind.STOP
        assert events[-1].task_id == 7

    @pytest.mark.asyncio
    async def test_full_queue_drops_directories(self, temp_dir, scanner, state):
        """Directories that cannot be queued after retries are dropped, not deadlocked."""
        state.config.scan_queue_size = 1
        state.config.scanner_concurrency = 1
        for i in range(5):
            sub = temp_dir / f"dir{i}"
            sub.mkdir()
            (sub / "file.txt").write_text(f"file {i}")

        result = await scanner.scan([str(temp_dir)])

        assert result.dropped_dirs > 0
        assert state.registry.count() == 5 - result.dropped_dirs


class TestAddOrUpdateFile:
    """Tests for single-file reconciliation."""

    @pytest.mark.asyncio
    async def test_created_then_unchanged(self, sample_files, scanner):
        """First call inserts, second call writes nothing."""
        path = sample_files["txt"]

        assert await scanner.add_or_update_file(path) == ScanOutcome.CREATED
        assert await scanner.add_or_update_file(path) == ScanOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_leaves_indexing_record_alone(self, sample_files, scanner, state):
        """A record being embedded right now is not touched."""
        path = sample_files["txt"]
        await scanner.add_or_update_file(path)
        record = state.registry.get_by_path(str(path))
        state.registry.update_content_status(record.id, FileIndexStatus.INDEXING)
        path.write_text("This is a sample text file.\nIt has multiple lines.\nFor testing purposes.")

        assert await scanner.add_or_update_file(path) == ScanOutcome.UNCHANGED


class TestValidation:
    """Tests for file and directory filters."""

    def test_requires_extension(self, scanner, temp_dir):
        assert not scanner.is_valid_file(temp_dir / "Makefile")

    def test_ignore_files(self, scanner, state, temp_dir):
        target = temp_dir / "secret.txt"
        state.indexer_setting.ignore_files.add(str(target))

        assert not scanner.is_valid_file(target)
        assert scanner.is_valid_file(temp_dir / "public.txt")

    def test_should_skip_dir(self, scanner):
        assert scanner.should_skip_dir(".git")
        assert scanner.should_skip_dir("node_modules")
        assert not scanner.should_skip_dir("projects")

    def test_file_extension(self):
        assert file_extension("/a/Report.PDF") == "pdf"
        assert file_extension("/a/noext") == ""
