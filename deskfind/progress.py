"""
ProgressTracker - live counters for the current indexing run.

Counters live in memory (IndexingSummary) and are flushed to the run's
IndexingTask row after each phase and every few files.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .models import (
    EmbeddingProgress,
    FileCategory,
    IndexingSummary,
    IndexingTask,
    IndexingTaskStatus,
)
from .registry import FileRegistry


logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, registry: FileRegistry):
        self.registry = registry
        self.summary = IndexingSummary()
        self.task: Optional[IndexingTask] = None

    @property
    def task_id(self) -> Optional[int]:
        return self.task.id if self.task else None

    def new_task(self, paths: List[str], embedding_model: str) -> IndexingTask:
        """Create and persist a running task and reset the summary."""
        now = datetime.now()
        self.task = self.registry.insert_task(IndexingTask(
            paths=list(paths),
            embedding_model=embedding_model,
            status=IndexingTaskStatus.RUNNING,
            start_time=now,
        ))
        self.summary = IndexingSummary(task_id=self.task.id, start_time=now)
        logger.info(f"Indexing task {self.task.id} started for {len(paths)} path(s)")
        return self.task

    def reset(self) -> None:
        """Fresh counters for work that has no task row (background indexing)."""
        self.task = None
        self.summary = IndexingSummary(start_time=datetime.now())

    def set_total(self, total: int) -> None:
        self.summary.total = total

    def progress(self, category: FileCategory) -> EmbeddingProgress:
        return self.summary.progress_for(category)

    def _apply_counters(self) -> None:
        embedding = self.summary.calculate_all_embedding()
        self.task.total_cnt = self.summary.total
        self.task.content_processed_cnt = embedding.processed
        self.task.content_indexed_success_cnt = embedding.success
        self.task.content_indexed_failed_cnt = embedding.failed
        # Files no indexer handles (video, other) count as skipped
        self.task.content_indexed_skipped_cnt = (
            embedding.skipped + max(self.summary.total - embedding.total, 0)
        )

    def flush(self) -> None:
        """Persist the current counters to the task row."""
        if self.task is None:
            return
        self._apply_counters()
        self.registry.update_task(self.task)

    def finish(self, status: IndexingTaskStatus, remark: str = "") -> Optional[IndexingTask]:
        """Finalize the task with a terminal status."""
        if not status.is_terminal:
            raise ValueError(f"Cannot finish a task as {status.value}")
        if self.task is None:
            return None
        end = datetime.now()
        self.summary.end_time = end
        if self.summary.start_time:
            self.summary.duration_ms = int((end - self.summary.start_time).total_seconds() * 1000)
        self._apply_counters()
        self.task.status = status
        self.task.end_time = end
        self.task.duration_ms = self.summary.duration_ms
        self.task.remark = remark
        self.registry.update_task(self.task)
        logger.info(
            f"Indexing task {self.task.id} {status.value} in {self.task.duration_ms}ms: "
            f"{self.task.content_indexed_success_cnt} indexed, "
            f"{self.task.content_indexed_failed_cnt} failed, "
            f"{self.task.content_indexed_skipped_cnt} skipped"
        )
        task, self.task = self.task, None
        return task
