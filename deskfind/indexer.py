"""
Indexers - Turn waiting file records into embeddings.

`IndexingTemplate` owns the generic run: count, page through waiting
records, embed each file, keep counters. Subclasses only decide how a
category's content becomes text:

- DocumentIndexer: document loaders (bounded extraction)
- ImageIndexer: image analyzer of the configured platform
- AudioIndexer: audio analyzer of the configured platform
"""

import asyncio
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from .analyzers import AudioAnalyzer, ImageAnalyzer
from .errors import (
    ConcurrencyError,
    EmbeddingError,
    ExtractionError,
    ModelLoadError,
    PersistenceError,
    UnsupportedAnalysisError,
    handle_error,
)
from .events import EventKind, EventSink, send_event
from .models import FileCategory, FileIndexStatus, FileMetadata, FileRecord
from .scanner import build_file_metadata
from .text import collapse_newlines, split_text


logger = logging.getLogger(__name__)

SKIPPED_EMPTY_CONTENT = "Skipped empty content"


class EmbedOutcome(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class IndexingTemplate(ABC):
    """
    Generic per-category indexing run.

    Per file: content is extracted and persisted, both embedding kinds are
    deleted, the metadata description is embedded, then the content is
    chunked and embedded. A file's chunks are written all at once, so a
    failure part-way leaves no partial chunk set behind.
    """

    category: FileCategory

    def __init__(self, state):
        self.state = state
        self.config = state.config
        self.registry = state.registry
        self.embeddings = state.embeddings
        self.progress = state.progress

    @abstractmethod
    async def load_content(self, record: FileRecord) -> str:
        """Text for a record ('' when nothing could be extracted)."""
        pass

    async def process(self, task_id: Optional[int] = None, on_event: Optional[EventSink] = None):
        """
        Embed every waiting record of this category.

        Raises:
            ModelLoadError: the embedding model is unavailable (aborts the run)
        """
        started = time.monotonic()
        progress = self.progress.progress(self.category)
        total = self.registry.count_unindexed(self.category)
        progress.total = total
        if total == 0:
            logger.info(f"No {self.category.label.lower()} files waiting")
            return

        page_size = self.config.index_page_size
        max_loops = math.ceil(total / page_size)
        logger.info(f"Indexing {total} {self.category.label.lower()} files")

        min_id = 0
        for _ in range(max_loops):
            records = self.registry.list_unindexed(self.category, min_id, page_size)
            if not records:
                break
            min_id = records[-1].id

            for record in records:
                if self.state.stop_requested:
                    send_event(on_event, EventKind.STOP, task_id, f"{self.category.label} indexing stopped")
                    progress.duration_ms += int((time.monotonic() - started) * 1000)
                    return
                await self._process_record(record, task_id, on_event)
                if progress.processed % self.config.progress_flush_every == 0:
                    self.progress.flush()

        progress.duration_ms += int((time.monotonic() - started) * 1000)
        logger.info(
            f"{self.category.label} indexing finished: {progress.success} indexed, "
            f"{progress.failed} failed, {progress.skipped} skipped"
        )

    async def _process_record(
        self, record: FileRecord, task_id: Optional[int], on_event: Optional[EventSink]
    ) -> None:
        progress = self.progress.progress(self.category)
        progress.processed += 1

        if not os.path.exists(record.path):
            logger.debug(f"File gone, removing record: {record.path}")
            self.registry.delete_by_id(record.id)
            progress.failed += 1
            return

        send_event(on_event, EventKind.EMBED, task_id, record.path)
        try:
            outcome = await self.embed_one_file(record)
        except ModelLoadError:
            # Leave the file queued for the next run
            self.registry.update_content_status(record.id, FileIndexStatus.WAITING)
            raise
        except Exception as e:
            # Any other failure is this file's alone; the run moves on
            handle_error(e, record.path, "embed_file")
            self.mark_failed(record, e)
            progress.failed += 1
            return

        if outcome == EmbedOutcome.SUCCESS:
            progress.success += 1
        elif outcome == EmbedOutcome.SKIPPED:
            progress.skipped += 1
        else:
            progress.failed += 1

    def mark_failed(self, record: FileRecord, error: Exception) -> None:
        """Move a record out of INDEXING so a later rescan can requeue it."""
        try:
            self.registry.update_content_status(
                record.id, FileIndexStatus.INDEX_FAILED, str(error) or type(error).__name__
            )
        except PersistenceError as e:
            handle_error(e, record.path, "mark_failed")

    async def embed_one_file(self, record: FileRecord) -> EmbedOutcome:
        """
        (Re)build both embedding sets of one file.

        Safe to repeat: existing embeddings are deleted first and fully
        rewritten, so the same file yields the same rows every time.

        Raises:
            ModelLoadError: the embedding model is unavailable
        """
        self.registry.update_content_status(record.id, FileIndexStatus.INDEXING)

        content = collapse_newlines(await self.load_content(record))
        metadata = await self._read_metadata(record)
        self.registry.update_content_and_metadata(record.id, content, metadata)
        self.registry.delete_content_embeddings(record.id)
        self.registry.delete_metadata_embeddings(record.id)

        await self._embed_metadata(record, metadata)

        if not content.strip():
            self.registry.update_content_status(
                record.id, FileIndexStatus.INDEXED, SKIPPED_EMPTY_CONTENT
            )
            return EmbedOutcome.SKIPPED

        try:
            chunks = await self._embed_chunks(content)
        except ModelLoadError:
            raise
        except (EmbeddingError, ConcurrencyError) as e:
            handle_error(e, record.path, "embed_content")
            self.registry.update_content_status(record.id, FileIndexStatus.INDEX_FAILED, str(e))
            return EmbedOutcome.FAILED

        self.registry.insert_content_embeddings(record.id, chunks)
        self.registry.update_content_status(record.id, FileIndexStatus.INDEXED, "success")
        return EmbedOutcome.SUCCESS

    async def _read_metadata(self, record: FileRecord) -> FileMetadata:
        loop = asyncio.get_running_loop()
        path = Path(record.path)
        try:
            st = await loop.run_in_executor(None, os.stat, path)
        except OSError:
            return record.metadata or FileMetadata(
                name=record.name, extension=record.file_ext,
                category=record.category, size=record.file_size,
            )
        return build_file_metadata(path, st, record.category)

    async def _embed_metadata(self, record: FileRecord, metadata: FileMetadata) -> None:
        try:
            vec = await self.embeddings.embed(metadata.to_text())
        except ModelLoadError:
            raise
        except (EmbeddingError, ConcurrencyError) as e:
            handle_error(e, record.path, "embed_metadata")
            self.registry.update_meta_status(record.id, FileIndexStatus.INDEX_FAILED, str(e))
            return
        self.registry.insert_metadata_embedding(record.id, vec)
        self.registry.update_meta_status(record.id, FileIndexStatus.INDEXED, "success")

    async def _embed_chunks(self, content: str) -> List[Tuple[int, str, np.ndarray]]:
        tokenizer = await self.embeddings.get_tokenizer()
        pieces = split_text(content, tokenizer, self.config.chunk_tokens, self.config.chunk_overlap)
        chunks = []
        for i, piece in enumerate(pieces):
            chunks.append((i, piece, await self.embeddings.embed(piece)))
        return chunks


class DocumentIndexer(IndexingTemplate):
    category = FileCategory.DOCUMENT

    async def load_content(self, record: FileRecord) -> str:
        loader = self.state.loaders.get(record.file_ext)
        if loader is None:
            logger.debug(f"No loader for .{record.file_ext}: {record.path}")
            return ""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, loader.load_bounded, record.path, self.config.max_document_chars
            )
        except ExtractionError as e:
            handle_error(e, record.path, "load_document")
            return ""


class ImageIndexer(IndexingTemplate):
    category = FileCategory.IMAGE

    def __init__(self, state, analyzer: ImageAnalyzer, model: str):
        super().__init__(state)
        self.analyzer = analyzer
        self.model = model

    @classmethod
    def create(cls, state) -> "ImageIndexer":
        """Raises UnsupportedAnalysisError if the platform has no image analyzer."""
        config = state.config
        return cls(state, state.analyzers.image_analyzer(config.model_platform), config.vision_model)

    async def load_content(self, record: FileRecord) -> str:
        try:
            return await self.analyzer.analyze_image(self.model, record.path)
        except (UnsupportedAnalysisError, OSError) as e:
            handle_error(e, record.path, "analyze_image")
            return ""


class AudioIndexer(IndexingTemplate):
    category = FileCategory.AUDIO

    def __init__(self, state, analyzer: AudioAnalyzer, model: str):
        super().__init__(state)
        self.analyzer = analyzer
        self.model = model

    @classmethod
    def create(cls, state) -> "AudioIndexer":
        """Raises UnsupportedAnalysisError if the platform has no audio analyzer."""
        config = state.config
        return cls(state, state.analyzers.audio_analyzer(config.model_platform), config.asr_model)

    async def load_content(self, record: FileRecord) -> str:
        try:
            return await self.analyzer.analyze_audio(self.model, record.path)
        except (UnsupportedAnalysisError, OSError) as e:
            handle_error(e, record.path, "analyze_audio")
            return ""


def indexer_for(state, category: FileCategory) -> Optional[IndexingTemplate]:
    """The indexer responsible for a category, or None if it cannot be built."""
    if category == FileCategory.DOCUMENT:
        return DocumentIndexer(state)
    if state.indexer_setting.is_private or not state.config.platform_enabled:
        return None
    try:
        if category == FileCategory.IMAGE:
            return ImageIndexer.create(state)
        if category == FileCategory.AUDIO:
            return AudioIndexer.create(state)
    except UnsupportedAnalysisError as e:
        logger.info(str(e))
    return None
