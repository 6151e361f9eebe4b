"""
FileRegistry - SQLite persistence for file records, embeddings and tasks.

Tables:
- file_info: one row per known file (identity: content hash, then path)
- file_content_embedding: chunk vectors of a file's content
- file_metadata_embedding: one vector per file for its metadata description
- indexing_task: one row per indexing run
- config: persisted user settings as JSON values

Vectors are stored as fixed-width float32 blobs (see vectors.py) and
nearest-neighbour queries are answered with a numpy cosine scan.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import PersistenceError, VectorFormatError, handle_error
from .models import (
    ContentEmbedding,
    FileCategory,
    FileIndexStatus,
    FileMetadata,
    FileRecord,
    IndexingTask,
    IndexingTaskStatus,
    MetadataEmbedding,
    format_datetime,
    parse_datetime,
)
from .vectors import cosine_distances, deserialize_embedding, serialize_embedding


logger = logging.getLogger(__name__)

_FILE_COLUMNS = """
    id, name, category, path, file_ext, file_size, content, metadata, content_hash,
    content_index_status, content_index_status_msg,
    meta_index_status, meta_index_status_msg,
    is_invalid, invalid_reason,
    file_create_time, file_update_time, create_time, update_time
"""


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _now() -> str:
    return format_datetime(datetime.now())


class FileRegistry:
    """
    Persistence gateway for everything the engine stores.

    The connection is shared with worker threads (vector scans run in an
    executor), so every method holds `_lock` while it talks to SQLite.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            # Performance optimizations
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._init_tables()
        return self._conn

    def _init_tables(self):
        """Create tables if they don't exist."""
        conn = self._conn
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS file_info (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                category INTEGER NOT NULL,
                path TEXT NOT NULL UNIQUE,
                file_ext TEXT NOT NULL DEFAULT '',
                file_size INTEGER NOT NULL DEFAULT 0,
                content TEXT NOT NULL DEFAULT '',
                metadata TEXT,
                content_hash TEXT NOT NULL,
                content_index_status INTEGER NOT NULL DEFAULT 1,
                content_index_status_msg TEXT NOT NULL DEFAULT '',
                meta_index_status INTEGER NOT NULL DEFAULT 1,
                meta_index_status_msg TEXT NOT NULL DEFAULT '',
                is_invalid INTEGER NOT NULL DEFAULT 0,
                invalid_reason TEXT NOT NULL DEFAULT '',
                file_create_time TEXT,
                file_update_time TEXT,
                create_time TEXT NOT NULL,
                update_time TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_file_info_hash ON file_info(content_hash);
            CREATE INDEX IF NOT EXISTS idx_file_info_status
                ON file_info(category, content_index_status);
            CREATE INDEX IF NOT EXISTS idx_file_info_update_time ON file_info(update_time);

            CREATE TABLE IF NOT EXISTS file_content_embedding (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                chunk_index INTEGER NOT NULL,
                chunk_text TEXT NOT NULL,
                embedding BLOB NOT NULL,
                FOREIGN KEY (file_id) REFERENCES file_info(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_content_embedding_file
                ON file_content_embedding(file_id);

            CREATE TABLE IF NOT EXISTS file_metadata_embedding (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                embedding BLOB NOT NULL,
                FOREIGN KEY (file_id) REFERENCES file_info(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_metadata_embedding_file
                ON file_metadata_embedding(file_id);

            CREATE TABLE IF NOT EXISTS indexing_task (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                paths TEXT NOT NULL,
                embedding_model TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                total_cnt INTEGER NOT NULL DEFAULT 0,
                content_processed_cnt INTEGER NOT NULL DEFAULT 0,
                content_indexed_success_cnt INTEGER NOT NULL DEFAULT 0,
                content_indexed_failed_cnt INTEGER NOT NULL DEFAULT 0,
                content_indexed_skipped_cnt INTEGER NOT NULL DEFAULT 0,
                remark TEXT NOT NULL DEFAULT '',
                create_time TEXT NOT NULL,
                update_time TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS config (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                update_time TEXT NOT NULL
            );
        """)
        conn.commit()

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileRecord:
        metadata = FileMetadata.from_dict(json.loads(row["metadata"])) if row["metadata"] else None
        return FileRecord(
            id=row["id"],
            name=row["name"],
            category=FileCategory(row["category"]),
            path=row["path"],
            file_ext=row["file_ext"],
            file_size=row["file_size"],
            content=row["content"],
            metadata=metadata,
            content_hash=row["content_hash"],
            content_index_status=FileIndexStatus(row["content_index_status"]),
            content_index_status_msg=row["content_index_status_msg"],
            meta_index_status=FileIndexStatus(row["meta_index_status"]),
            meta_index_status_msg=row["meta_index_status_msg"],
            is_invalid=bool(row["is_invalid"]),
            invalid_reason=row["invalid_reason"],
            file_create_time=parse_datetime(row["file_create_time"]),
            file_update_time=parse_datetime(row["file_update_time"]),
            create_time=parse_datetime(row["create_time"]),
            update_time=parse_datetime(row["update_time"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> IndexingTask:
        return IndexingTask(
            id=row["id"],
            paths=json.loads(row["paths"]),
            embedding_model=row["embedding_model"],
            status=IndexingTaskStatus(row["status"]),
            start_time=parse_datetime(row["start_time"]),
            end_time=parse_datetime(row["end_time"]),
            duration_ms=row["duration_ms"],
            total_cnt=row["total_cnt"],
            content_processed_cnt=row["content_processed_cnt"],
            content_indexed_success_cnt=row["content_indexed_success_cnt"],
            content_indexed_failed_cnt=row["content_indexed_failed_cnt"],
            content_indexed_skipped_cnt=row["content_indexed_skipped_cnt"],
            remark=row["remark"],
        )

    def _query_one(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchone()

    def _query_all(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchall()

    @contextmanager
    def _transaction(self, action: str):
        """Locked transaction; sqlite errors surface as PersistenceError."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise PersistenceError(f"{e} while {action}") from e

    def _execute(self, sql: str, params: Sequence = ()) -> int:
        """Run one statement in its own transaction. Returns affected rows."""
        with self._transaction(f"executing: {sql.strip()[:80]}") as conn:
            return conn.execute(sql, params).rowcount

    # -------------------------------------------------------------------------
    # File records
    # -------------------------------------------------------------------------

    def insert_file(self, record: FileRecord) -> FileRecord:
        """Insert a new record and return it with id and timestamps set."""
        now = _now()
        metadata = json.dumps(record.metadata.to_dict()) if record.metadata else None
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    cursor = conn.execute(
                        """
                        INSERT INTO file_info (
                            name, category, path, file_ext, file_size, content, metadata,
                            content_hash, content_index_status, content_index_status_msg,
                            meta_index_status, meta_index_status_msg, is_invalid, invalid_reason,
                            file_create_time, file_update_time, create_time, update_time
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.name, int(record.category), record.path, record.file_ext,
                            record.file_size, record.content, metadata, record.content_hash,
                            int(record.content_index_status), record.content_index_status_msg,
                            int(record.meta_index_status), record.meta_index_status_msg,
                            int(record.is_invalid), record.invalid_reason,
                            format_datetime(record.file_create_time),
                            format_datetime(record.file_update_time),
                            now, now,
                        ),
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to insert {record.path}: {e}") from e
            record.id = cursor.lastrowid
        record.create_time = record.update_time = parse_datetime(now)
        return record

    def update_file(self, record: FileRecord) -> None:
        """Write every mutable column of an existing record."""
        metadata = json.dumps(record.metadata.to_dict()) if record.metadata else None
        self._execute(
            """
            UPDATE file_info SET
                name = ?, category = ?, path = ?, file_ext = ?, file_size = ?, metadata = ?,
                content_hash = ?, content_index_status = ?, content_index_status_msg = ?,
                meta_index_status = ?, meta_index_status_msg = ?, is_invalid = ?,
                invalid_reason = ?, file_create_time = ?, file_update_time = ?, update_time = ?
            WHERE id = ?
            """,
            (
                record.name, int(record.category), record.path, record.file_ext,
                record.file_size, metadata, record.content_hash,
                int(record.content_index_status), record.content_index_status_msg,
                int(record.meta_index_status), record.meta_index_status_msg,
                int(record.is_invalid), record.invalid_reason,
                format_datetime(record.file_create_time),
                format_datetime(record.file_update_time),
                _now(), record.id,
            ),
        )

    def get_by_id(self, file_id: int) -> Optional[FileRecord]:
        row = self._query_one(f"SELECT {_FILE_COLUMNS} FROM file_info WHERE id = ?", (file_id,))
        return self._row_to_file(row) if row else None

    def list_by_hash(self, content_hash: str) -> List[FileRecord]:
        rows = self._query_all(
            f"SELECT {_FILE_COLUMNS} FROM file_info WHERE content_hash = ? ORDER BY id",
            (content_hash,),
        )
        return [self._row_to_file(r) for r in rows]

    def get_by_path(self, path: str) -> Optional[FileRecord]:
        row = self._query_one(f"SELECT {_FILE_COLUMNS} FROM file_info WHERE path = ?", (path,))
        return self._row_to_file(row) if row else None

    def list_by_ids(self, ids: Iterable[int]) -> List[FileRecord]:
        ids = list(ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._query_all(
            f"SELECT {_FILE_COLUMNS} FROM file_info WHERE id IN ({placeholders})", ids
        )
        return [self._row_to_file(r) for r in rows]

    def count(self) -> int:
        return self._query_one("SELECT COUNT(*) FROM file_info")[0]

    def list_paths(self, page: int, page_size: int) -> List[str]:
        """Paths in insertion order, one page at a time (page starts at 1)."""
        rows = self._query_all(
            "SELECT path FROM file_info ORDER BY id LIMIT ? OFFSET ?",
            (page_size, (page - 1) * page_size),
        )
        return [r[0] for r in rows]

    def count_updated_since(self, since: datetime) -> int:
        return self._query_one(
            "SELECT COUNT(*) FROM file_info WHERE update_time > ?", (format_datetime(since),)
        )[0]

    def list_paths_updated_since(self, since: datetime, page: int, page_size: int) -> List[str]:
        rows = self._query_all(
            "SELECT path FROM file_info WHERE update_time > ? ORDER BY id LIMIT ? OFFSET ?",
            (format_datetime(since), page_size, (page - 1) * page_size),
        )
        return [r[0] for r in rows]

    def count_unindexed(self, category: FileCategory) -> int:
        return self._query_one(
            "SELECT COUNT(*) FROM file_info WHERE category = ? AND content_index_status = ?"
            " AND is_invalid = 0",
            (int(category), int(FileIndexStatus.WAITING)),
        )[0]

    def list_unindexed(self, category: FileCategory, min_id: int, limit: int) -> List[FileRecord]:
        """Keyset page of waiting records with id > min_id."""
        rows = self._query_all(
            f"""
            SELECT {_FILE_COLUMNS} FROM file_info
            WHERE id > ? AND category = ? AND content_index_status = ? AND is_invalid = 0
            ORDER BY id LIMIT ?
            """,
            (min_id, int(category), int(FileIndexStatus.WAITING), limit),
        )
        return [self._row_to_file(r) for r in rows]

    def update_content_and_metadata(
        self, file_id: int, content: str, metadata: FileMetadata
    ) -> None:
        self._execute(
            "UPDATE file_info SET content = ?, metadata = ?, update_time = ? WHERE id = ?",
            (content, json.dumps(metadata.to_dict()), _now(), file_id),
        )

    def update_content_status(self, file_id: int, status: FileIndexStatus, msg: str = "") -> None:
        self._execute(
            "UPDATE file_info SET content_index_status = ?, content_index_status_msg = ?,"
            " update_time = ? WHERE id = ?",
            (int(status), msg, _now(), file_id),
        )

    def update_meta_status(self, file_id: int, status: FileIndexStatus, msg: str = "") -> None:
        self._execute(
            "UPDATE file_info SET meta_index_status = ?, meta_index_status_msg = ?,"
            " update_time = ? WHERE id = ?",
            (int(status), msg, _now(), file_id),
        )

    def rename_file(
        self, old_path: str, new_path: str, file_ext: str, category: FileCategory
    ) -> int:
        """Move a record to a new path in place. Embeddings are untouched."""
        return self._execute(
            "UPDATE file_info SET path = ?, name = ?, file_ext = ?, category = ?, update_time = ?"
            " WHERE path = ?",
            (new_path, Path(new_path).name, file_ext, int(category), _now(), old_path),
        )

    def count_by_prefix(self, prefix: str, sep: str) -> int:
        return self._query_one(
            "SELECT COUNT(*) FROM file_info WHERE path = ? OR path LIKE ? ESCAPE '\\'",
            (prefix, _escape_like(prefix + sep) + "%"),
        )[0]

    def replace_prefix(self, old_prefix: str, new_prefix: str, sep: str) -> int:
        """Rewrite the directory prefix of every record under old_prefix."""
        return self._execute(
            """
            UPDATE file_info
            SET path = ? || substr(path, ?), update_time = ?
            WHERE path = ? OR path LIKE ? ESCAPE '\\'
            """,
            (
                new_prefix, len(old_prefix) + 1, _now(),
                old_prefix, _escape_like(old_prefix + sep) + "%",
            ),
        )

    def delete_by_id(self, file_id: int) -> None:
        """Delete a record together with both of its embedding sets."""
        with self._transaction(f"deleting file {file_id}") as conn:
            conn.execute("DELETE FROM file_content_embedding WHERE file_id = ?", (file_id,))
            conn.execute("DELETE FROM file_metadata_embedding WHERE file_id = ?", (file_id,))
            conn.execute("DELETE FROM file_info WHERE id = ?", (file_id,))

    def delete_by_path(self, path: str) -> bool:
        record = self.get_by_path(path)
        if record is None:
            return False
        self.delete_by_id(record.id)
        return True

    def delete_by_prefix(self, prefix: str, sep: str) -> int:
        """Delete every record at or under a directory, with embeddings."""
        pattern = _escape_like(prefix + sep) + "%"
        where = "path = ? OR path LIKE ? ESCAPE '\\'"
        with self._transaction(f"deleting records under {prefix}") as conn:
            for table in ("file_content_embedding", "file_metadata_embedding"):
                conn.execute(
                    f"DELETE FROM {table} WHERE file_id IN"
                    f" (SELECT id FROM file_info WHERE {where})",
                    (prefix, pattern),
                )
            return conn.execute(f"DELETE FROM file_info WHERE {where}", (prefix, pattern)).rowcount

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def insert_content_embeddings(
        self, file_id: int, chunks: Sequence[Tuple[int, str, np.ndarray]]
    ) -> None:
        """Insert all chunk vectors of a file in one transaction."""
        rows = [
            (file_id, idx, text, serialize_embedding(vec)) for idx, text, vec in chunks
        ]
        with self._transaction(f"inserting chunks of file {file_id}") as conn:
            conn.executemany(
                "INSERT INTO file_content_embedding (file_id, chunk_index, chunk_text, embedding)"
                " VALUES (?, ?, ?, ?)",
                rows,
            )

    def insert_metadata_embedding(self, file_id: int, embedding: np.ndarray) -> None:
        self._execute(
            "INSERT INTO file_metadata_embedding (file_id, embedding) VALUES (?, ?)",
            (file_id, serialize_embedding(embedding)),
        )

    def delete_content_embeddings(self, file_id: int) -> None:
        self._execute("DELETE FROM file_content_embedding WHERE file_id = ?", (file_id,))

    def delete_metadata_embeddings(self, file_id: int) -> None:
        self._execute("DELETE FROM file_metadata_embedding WHERE file_id = ?", (file_id,))

    def list_content_embeddings(self, file_id: int) -> List[ContentEmbedding]:
        rows = self._query_all(
            "SELECT id, file_id, chunk_index, chunk_text, embedding FROM file_content_embedding"
            " WHERE file_id = ? ORDER BY chunk_index",
            (file_id,),
        )
        return [
            ContentEmbedding(
                id=r["id"], file_id=r["file_id"], chunk_index=r["chunk_index"],
                chunk_text=r["chunk_text"], embedding=deserialize_embedding(r["embedding"]),
            )
            for r in rows
        ]

    def list_metadata_embeddings(self, file_id: int) -> List[MetadataEmbedding]:
        rows = self._query_all(
            "SELECT id, file_id, embedding FROM file_metadata_embedding WHERE file_id = ?",
            (file_id,),
        )
        return [
            MetadataEmbedding(id=r["id"], file_id=r["file_id"],
                              embedding=deserialize_embedding(r["embedding"]))
            for r in rows
        ]

    def _nearest(
        self, table: str, columns: str, query: np.ndarray, max_distance: float, limit: int
    ) -> List[Tuple[sqlite3.Row, float]]:
        """Cosine scan over a vector table. Malformed rows are logged and skipped."""
        rows = self._query_all(f"SELECT {columns}, embedding FROM {table}")
        kept: List[sqlite3.Row] = []
        vectors: List[np.ndarray] = []
        for row in rows:
            try:
                vectors.append(deserialize_embedding(row["embedding"]))
            except VectorFormatError as e:
                handle_error(e, f"{table}#{row['id']}", context="search")
                continue
            kept.append(row)
        if not kept:
            return []

        distances = cosine_distances(query, np.vstack(vectors))
        order = np.argsort(distances, kind="stable")
        hits = []
        for i in order:
            if distances[i] > max_distance or len(hits) >= limit:
                break
            hits.append((kept[i], float(distances[i])))
        return hits

    def search_content(
        self, query: np.ndarray, max_distance: float, limit: int
    ) -> List[ContentEmbedding]:
        """Nearest content chunks within max_distance, closest first."""
        return [
            ContentEmbedding(
                id=row["id"], file_id=row["file_id"], chunk_index=row["chunk_index"],
                chunk_text=row["chunk_text"], embedding=deserialize_embedding(row["embedding"]),
                distance=distance,
            )
            for row, distance in self._nearest(
                "file_content_embedding", "id, file_id, chunk_index, chunk_text",
                query, max_distance, limit,
            )
        ]

    def search_metadata(
        self, query: np.ndarray, max_distance: float, limit: int
    ) -> List[MetadataEmbedding]:
        """Nearest metadata vectors within max_distance, closest first."""
        return [
            MetadataEmbedding(
                id=row["id"], file_id=row["file_id"],
                embedding=deserialize_embedding(row["embedding"]), distance=distance,
            )
            for row, distance in self._nearest(
                "file_metadata_embedding", "id, file_id", query, max_distance, limit,
            )
        ]

    # -------------------------------------------------------------------------
    # Indexing tasks
    # -------------------------------------------------------------------------

    def insert_task(self, task: IndexingTask) -> IndexingTask:
        now = _now()
        with self._transaction("inserting indexing task") as conn:
            cursor = conn.execute(
                "INSERT INTO indexing_task (paths, embedding_model, status, start_time,"
                " remark, create_time, update_time) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    json.dumps(task.paths), task.embedding_model, task.status.value,
                    format_datetime(task.start_time), task.remark, now, now,
                ),
            )
        task.id = cursor.lastrowid
        return task

    def update_task(self, task: IndexingTask) -> None:
        self._execute(
            """
            UPDATE indexing_task SET
                status = ?, end_time = ?, duration_ms = ?, total_cnt = ?,
                content_processed_cnt = ?, content_indexed_success_cnt = ?,
                content_indexed_failed_cnt = ?, content_indexed_skipped_cnt = ?,
                remark = ?, update_time = ?
            WHERE id = ?
            """,
            (
                task.status.value, format_datetime(task.end_time), task.duration_ms,
                task.total_cnt, task.content_processed_cnt, task.content_indexed_success_cnt,
                task.content_indexed_failed_cnt, task.content_indexed_skipped_cnt,
                task.remark, _now(), task.id,
            ),
        )

    def get_task(self, task_id: int) -> Optional[IndexingTask]:
        row = self._query_one("SELECT * FROM indexing_task WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    def latest_task(self) -> Optional[IndexingTask]:
        row = self._query_one("SELECT * FROM indexing_task ORDER BY id DESC LIMIT 1")
        return self._row_to_task(row) if row else None

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_setting(self, name: str) -> Optional[str]:
        row = self._query_one("SELECT value FROM config WHERE name = ?", (name,))
        return row[0] if row else None

    def put_setting(self, name: str, value: str) -> None:
        self._execute(
            "INSERT INTO config (name, value, update_time) VALUES (?, ?, ?)"
            " ON CONFLICT(name) DO UPDATE SET value = excluded.value,"
            " update_time = excluded.update_time",
            (name, value, _now()),
        )
