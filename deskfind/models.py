"""
Data Models - Type definitions for the indexing engine.

These dataclasses represent the records persisted by the registry and the
values flowing between the scanner, the indexers and the search engines.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, List, Iterable

import numpy as np


DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp"})
AUDIO_EXTENSIONS = frozenset({"mp3", "wav", "aac", "flac", "ogg", "m4a", "wma", "amr"})
VIDEO_EXTENSIONS = frozenset({"mp4", "avi", "mov", "mkv"})

# Windows st_file_attributes bits and their display names
_FILE_ATTRIBUTE_FLAGS = [
    (0x1, "Read only"),
    (0x2, "Hidden"),
    (0x4, "System"),
    (0x10, "Directory"),
    (0x20, "Archive"),
    (0x80, "Normal"),
    (0x100, "Temporary"),
    (0x200, "Sparse File"),
    (0x400, "Reparse Point"),
    (0x800, "Compressed"),
    (0x1000, "Offline"),
    (0x4000, "Encrypted"),
]


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATETIME_FORMAT) if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, DATETIME_FORMAT) if value else None


def describe_attributes(attributes: int) -> List[str]:
    """Decode platform attribute bits into readable flag names."""
    return [name for bit, name in _FILE_ATTRIBUTE_FLAGS if attributes & bit]


class FileCategory(IntEnum):
    """Coarse file type, decides which indexer handles a record."""
    DOCUMENT = 1
    IMAGE = 2
    AUDIO = 3
    VIDEO = 4
    OTHER = 5

    @classmethod
    def from_extension(cls, ext: str, document_extensions: Iterable[str]) -> "FileCategory":
        ext = ext.lower().lstrip(".")
        if ext in document_extensions:
            return cls.DOCUMENT
        if ext in IMAGE_EXTENSIONS:
            return cls.IMAGE
        if ext in AUDIO_EXTENSIONS:
            return cls.AUDIO
        if ext in VIDEO_EXTENSIONS:
            return cls.VIDEO
        return cls.OTHER

    @property
    def label(self) -> str:
        return self.name.capitalize()


class FileIndexStatus(IntEnum):
    """Per-record status of content and metadata embeddings."""
    WAITING = 1
    INDEXING = 2
    INDEXED = 3
    INDEX_FAILED = 4


class IndexingTaskStatus(Enum):
    """Lifecycle of an indexing run."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            IndexingTaskStatus.COMPLETED,
            IndexingTaskStatus.FAILED,
            IndexingTaskStatus.CANCELLED,
        )


class ScanOutcome(Enum):
    """What the scanner did with a single file."""
    CREATED = "created"       # New record inserted
    MOVED = "moved"           # Same content found at a new path / stale record
    MODIFIED = "modified"     # Same path, different content
    UNCHANGED = "unchanged"   # Nothing written
    SKIPPED = "skipped"       # Invalid or not processable


class SearchSource(Enum):
    """Which engine produced a search result."""
    PATH = "path"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class QueryIntent(Enum):
    """How the coordinator routes a query."""
    PATH_ONLY = "path_only"
    SEMANTIC_ONLY = "semantic_only"
    HYBRID = "hybrid"


@dataclass
class FileMetadata:
    """
    Filesystem facts about a file.

    `to_text()` renders the description string that is embedded as the
    file's metadata embedding, so metadata-only queries ("pdf from 2021")
    can still find it.
    """
    name: str
    extension: str
    category: FileCategory
    size: int
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    author: str = ""
    attributes: List[str] = field(default_factory=list)

    def to_text(self) -> str:
        created = self.created.strftime("%Y-%m-%d %H:%M:%S") if self.created else ""
        modified = self.modified.strftime("%Y-%m-%d %H:%M:%S") if self.modified else ""
        return (
            f"file name:{self.name},"
            f"file extension:{self.extension},"
            f"file category:{self.category.label},"
            f"size:{self.size} bytes,"
            f"creation time:{created},"
            f"last write time:{modified},"
            f"author:{self.author},"
            f"file attributes:{' '.join(self.attributes)}"
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "extension": self.extension,
            "category": int(self.category),
            "size": self.size,
            "created": format_datetime(self.created),
            "modified": format_datetime(self.modified),
            "author": self.author,
            "attributes": list(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileMetadata":
        return cls(
            name=data.get("name", ""),
            extension=data.get("extension", ""),
            category=FileCategory(data.get("category", FileCategory.OTHER)),
            size=data.get("size", 0),
            created=parse_datetime(data.get("created")),
            modified=parse_datetime(data.get("modified")),
            author=data.get("author", ""),
            attributes=list(data.get("attributes", [])),
        )


@dataclass
class FileRecord:
    """
    One file known to the registry.

    Identity is the content hash first, then the path: a record whose hash
    matches a newly scanned file is treated as the same file, moved.
    """
    name: str
    path: str
    category: FileCategory
    file_ext: str
    file_size: int
    content_hash: str
    metadata: Optional[FileMetadata] = None
    content: str = ""
    content_index_status: FileIndexStatus = FileIndexStatus.WAITING
    content_index_status_msg: str = ""
    meta_index_status: FileIndexStatus = FileIndexStatus.WAITING
    meta_index_status_msg: str = ""
    is_invalid: bool = False
    invalid_reason: str = ""
    file_create_time: Optional[datetime] = None
    file_update_time: Optional[datetime] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class ContentEmbedding:
    """A text chunk of a file's content and its vector."""
    file_id: int
    chunk_index: int
    chunk_text: str
    embedding: np.ndarray
    id: Optional[int] = None
    distance: Optional[float] = None


@dataclass
class MetadataEmbedding:
    """The vector of a file's metadata description."""
    file_id: int
    embedding: np.ndarray
    id: Optional[int] = None
    distance: Optional[float] = None


@dataclass
class IndexingTask:
    """Persisted record of one indexing run."""
    paths: List[str]
    embedding_model: str
    status: IndexingTaskStatus = IndexingTaskStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: int = 0
    total_cnt: int = 0
    content_processed_cnt: int = 0
    content_indexed_success_cnt: int = 0
    content_indexed_failed_cnt: int = 0
    content_indexed_skipped_cnt: int = 0
    remark: str = ""
    id: Optional[int] = None


@dataclass
class EmbeddingProgress:
    """Counters for one category within a run."""
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0

    def add(self, other: "EmbeddingProgress") -> None:
        self.total += other.total
        self.processed += other.processed
        self.success += other.success
        self.failed += other.failed
        self.skipped += other.skipped
        self.duration_ms += other.duration_ms


@dataclass
class IndexingSummary:
    """Process-local live progress of the current run."""
    task_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: int = 0
    total: int = 0
    document: EmbeddingProgress = field(default_factory=EmbeddingProgress)
    image: EmbeddingProgress = field(default_factory=EmbeddingProgress)
    audio: EmbeddingProgress = field(default_factory=EmbeddingProgress)

    def progress_for(self, category: FileCategory) -> EmbeddingProgress:
        if category == FileCategory.DOCUMENT:
            return self.document
        if category == FileCategory.IMAGE:
            return self.image
        if category == FileCategory.AUDIO:
            return self.audio
        raise ValueError(f"No embedding progress for category {category.label}")

    def calculate_all_embedding(self) -> EmbeddingProgress:
        total = EmbeddingProgress()
        for progress in (self.document, self.image, self.audio):
            total.add(progress)
        return total


@dataclass
class ScanResult:
    """Summary of one scan."""
    total: int = 0
    created: int = 0
    moved: int = 0
    modified: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    dropped_dirs: int = 0
    stopped: bool = False
    duration_seconds: float = 0.0

    def count(self, outcome: ScanOutcome) -> None:
        if outcome == ScanOutcome.CREATED:
            self.created += 1
        elif outcome == ScanOutcome.MOVED:
            self.moved += 1
        elif outcome == ScanOutcome.MODIFIED:
            self.modified += 1
        elif outcome == ScanOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1


@dataclass
class SearchResult:
    """
    One ranked hit.

    Path hits carry `score` = number of distinct keywords matched; semantic
    hits carry the cosine `distance` and `score = 1 - distance`.
    """
    path: str
    name: str
    score: float
    source: SearchSource
    file_id: Optional[int] = None
    category: Optional[FileCategory] = None
    file_ext: str = ""
    distance: Optional[float] = None
    matched_keywords: List[str] = field(default_factory=list)
    chunk_ids: List[int] = field(default_factory=list)
