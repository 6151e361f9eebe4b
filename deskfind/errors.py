"""
Error Handling - Centralized error policies and custom exceptions.

This module defines how different error types should be handled throughout
the indexing pipeline: per-file failures are isolated and counted, model
load failures abort the run, and everything else is logged at the level its
policy asks for.
"""

import logging
from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional
from pathlib import Path


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Skip this item, continue processing
    RETRY = auto()          # Retry the operation later
    ABORT = auto()          # Stop the entire run


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    max_retries: int = 0
    message_template: str = "{file}: {error}"


class DeskFindError(Exception):
    """Base exception for the engine."""
    pass


class FileAccessError(DeskFindError):
    """File could not be stat'ed, opened or read."""
    pass


class HashingError(FileAccessError):
    """Error while streaming a file through the hasher."""
    pass


class ExtractionError(DeskFindError):
    """A document loader failed to produce text."""
    pass


class EmbeddingError(DeskFindError):
    """Error during embedding generation."""
    pass


class ModelLoadError(EmbeddingError):
    """The embedding model or tokenizer could not be loaded."""
    pass


class EmbeddingSizeMismatch(EmbeddingError):
    """Model output did not match the expected vector shape."""
    pass


class PersistenceError(DeskFindError):
    """Error during database operations."""
    pass


class VectorFormatError(PersistenceError):
    """A stored vector blob has the wrong length."""

    def __init__(self, length: int, expected: int):
        self.length = length
        self.expected = expected
        super().__init__(f"Invalid vector blob: {length} bytes, expected {expected}")


class ConcurrencyError(DeskFindError):
    """A lock could not be acquired in time or a queue refused work."""
    pass


class PolicyError(DeskFindError):
    """A request was refused by a domain rule."""
    pass


class IndexingAlreadyRunningError(PolicyError):
    pass


class EmptyPathListError(PolicyError):
    pass


class AnalysisPlatformError(PolicyError):
    """The configured media analysis platform cannot be used."""
    pass


class UnsupportedAnalysisError(DeskFindError):
    """No analyzer exists for the requested platform or media kind."""
    pass


class UnsupportedOperationError(DeskFindError):
    """A loader was asked for an operation it does not implement."""
    pass


class IndexingRunError(DeskFindError):
    """An indexing run aborted. The message names the dominant cause."""
    pass


# Error type to policy mapping. Order matters: the first isinstance match wins.
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    ModelLoadError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Embedding model unavailable while processing {file}: {error}"
    ),
    EmbeddingError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Embedding failed for {file}: {error}"
    ),
    ConcurrencyError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.DEBUG,
        max_retries=3,
        message_template="Busy, retry later: {file} - {error}"
    ),
    VectorFormatError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.ERROR,
        message_template="Malformed vector row for {file}: {error}"
    ),
    ExtractionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Cannot extract text: {file} - {error}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}"
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot decode file (binary?): {file}"
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected file, got directory: {file}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading file: {file} - {error}"
    ),
    FileAccessError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Cannot access file: {file} - {error}"
    ),
}


def handle_error(
    error: Exception,
    file_path: Optional[Path | str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_path: Path to the file being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP, RETRY, ABORT)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}"
        )

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
