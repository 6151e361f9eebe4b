"""
Normalizer Tests - Verify raw event to canonical event mapping.

Tests:
- Rename pairing (both endpoints, split halves, FIFO order)
- Unmatched halves downgrade to Remove / Create
- watchdog event adaptation
"""

import pytest
from watchdog.events import (
    DirDeletedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from deskfind.normalizer import (
    FsEvent,
    FsEventKind,
    FsEventNormalizer,
    RawFsEvent,
    RawFsEventKind,
    guess_is_file,
    raw_event_from_watchdog,
)


@pytest.fixture
def normalizer(clock):
    return FsEventNormalizer(rename_window_s=0.3, clock=clock)


class TestRenamePairing:
    """Tests for rename half pairing."""

    def test_both_endpoints(self, normalizer):
        """A rename with both paths becomes one Rename event."""
        out = normalizer.handle(
            RawFsEvent(RawFsEventKind.RENAME_BOTH, ("/a/old.txt", "/a/new.txt"), False)
        )

        assert out == [FsEvent(FsEventKind.RENAME, "/a/old.txt", "/a/new.txt", True)]

    def test_halves_within_window(self, normalizer, clock):
        """A 'from' followed by a 'to' inside the window pairs up."""
        assert normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/old.txt",))) == []
        clock.advance(0.1)

        out = normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_TO, ("/a/new.txt",)))

        assert out == [FsEvent(FsEventKind.RENAME, "/a/old.txt", "/a/new.txt", True)]
        assert normalizer.pending == 0

    def test_fifo_pairing(self, normalizer):
        """Several pending 'from' halves pair in arrival order."""
        normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/1.txt",)))
        normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/2.txt",)))

        first = normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_TO, ("/b/1.txt",)))
        second = normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_TO, ("/b/2.txt",)))

        assert first[0].path == "/a/1.txt" and first[0].to_path == "/b/1.txt"
        assert second[0].path == "/a/2.txt" and second[0].to_path == "/b/2.txt"

    def test_to_without_from_is_create(self, normalizer):
        """An unmatched 'to' is a new file."""
        out = normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_TO, ("/a/new.txt",)))

        assert out == [FsEvent(FsEventKind.CREATE, "/a/new.txt", is_file=True)]

    def test_expired_from_is_remove(self, normalizer, clock):
        """A 'from' nobody claims within the window becomes a Remove."""
        normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/folder",)))
        clock.advance(0.31)

        out = normalizer.flush_expired()

        assert out == [FsEvent(FsEventKind.REMOVE, "/a/folder", is_file=False)]

    def test_late_to_is_remove_then_create(self, normalizer, clock):
        """A 'to' arriving after the window yields Remove(old) then Create(new)."""
        normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/old.txt",)))
        clock.advance(0.5)

        out = normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_TO, ("/a/new.txt",)))

        assert [e.kind for e in out] == [FsEventKind.REMOVE, FsEventKind.CREATE]
        assert out[0].path == "/a/old.txt"
        assert out[1].path == "/a/new.txt"

    def test_flush_all(self, normalizer):
        """Shutdown downgrades every pending half."""
        normalizer.handle(RawFsEvent(RawFsEventKind.RENAME_FROM, ("/a/x.txt",)))

        assert normalizer.flush_all() == [FsEvent(FsEventKind.REMOVE, "/a/x.txt", is_file=True)]
        assert normalizer.pending == 0


class TestSimpleEvents:
    """Tests for create / modify / remove / other."""

    def test_create_and_modify(self, normalizer):
        out = normalizer.handle(RawFsEvent(RawFsEventKind.CREATE, ("/a/n.txt",)))
        out += normalizer.handle(RawFsEvent(RawFsEventKind.MODIFY, ("/a/n.txt",)))

        assert [e.kind for e in out] == [FsEventKind.CREATE, FsEventKind.MODIFY]

    def test_remove_uses_directory_hint(self, normalizer):
        out = normalizer.handle(RawFsEvent(RawFsEventKind.REMOVE, ("/a/v1.0",), True))

        assert out == [FsEvent(FsEventKind.REMOVE, "/a/v1.0", is_file=False)]

    def test_other(self, normalizer):
        out = normalizer.handle(RawFsEvent(RawFsEventKind.OTHER, ("/a/n.txt",)))

        assert out[0].kind == FsEventKind.OTHER

    def test_guess_is_file(self):
        assert guess_is_file("/a/report.pdf")
        assert not guess_is_file("/a/Projects")


class TestWatchdogAdapter:
    """Tests for raw_event_from_watchdog."""

    def test_moved(self):
        raw = raw_event_from_watchdog(FileMovedEvent("/a/old.txt", "/a/new.txt"))

        assert raw.kind == RawFsEventKind.RENAME_BOTH
        assert raw.paths == ("/a/old.txt", "/a/new.txt")
        assert raw.is_directory is False

    def test_created_modified_deleted(self):
        assert raw_event_from_watchdog(FileCreatedEvent("/a/n.txt")).kind == RawFsEventKind.CREATE
        assert raw_event_from_watchdog(FileModifiedEvent("/a/n.txt")).kind == RawFsEventKind.MODIFY

        deleted = raw_event_from_watchdog(DirDeletedEvent("/a/dir"))
        assert deleted.kind == RawFsEventKind.REMOVE
        assert deleted.is_directory is True

    def test_unknown_event_type(self):
        assert raw_event_from_watchdog(FileClosedEvent("/a/n.txt")).kind == RawFsEventKind.OTHER
