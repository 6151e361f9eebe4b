"""
Extractor - Document loaders keyed by file extension.

Each loader turns one document format into plain text. The registry maps
extensions to loaders and also defines which extensions count as the
Document category.

To add a new format:
1. Create a class extending DocumentLoader
2. Implement get_supported_extensions and load_bounded
3. Register it in default_loader_registry()
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Set

from docx import Document
from pypdf import PdfReader

from .errors import ExtractionError, UnsupportedOperationError


logger = logging.getLogger(__name__)


class DocumentLoader(ABC):
    """Base class for all document loaders."""

    @abstractmethod
    def get_supported_extensions(self) -> Set[str]:
        """Lowercase extensions without the dot, e.g. {'pdf'}."""
        pass

    @abstractmethod
    def load_bounded(self, path: Path | str, max_chars: int) -> str:
        """
        Extract at most `max_chars` characters of text.

        Loaders stop reading once the bound is reached, so huge files cost
        no more than small ones.

        Raises:
            ExtractionError: the file could not be parsed
        """
        pass

    def load(self, path: Path | str) -> str:
        """Extract the full text."""
        return self.load_bounded(path, max_chars=-1)

    def load_from_handle(self, handle: BinaryIO, max_chars: int = -1) -> str:
        raise UnsupportedOperationError(
            f"{type(self).__name__} can only load from a path"
        )


def _truncate(parts: List[str], max_chars: int) -> str:
    text = "\n".join(parts)
    return text if max_chars < 0 else text[:max_chars]


class PlainTextLoader(DocumentLoader):
    """Reads text files as UTF-8, replacing undecodable bytes."""

    def get_supported_extensions(self) -> Set[str]:
        return {"txt", "log", "md", "mdx", "ini"}

    def load_bounded(self, path: Path | str, max_chars: int) -> str:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read(max_chars) if max_chars >= 0 else f.read()
        except OSError as e:
            raise ExtractionError(f"Cannot read {path}: {e}") from e

    def load_from_handle(self, handle: BinaryIO, max_chars: int = -1) -> str:
        text = handle.read().decode("utf-8", errors="replace")
        return text if max_chars < 0 else text[:max_chars]


class PdfLoader(DocumentLoader):
    """Extracts PDF text page by page with pypdf."""

    def get_supported_extensions(self) -> Set[str]:
        return {"pdf"}

    def _read(self, source, max_chars: int) -> str:
        try:
            reader = PdfReader(source)
            parts: List[str] = []
            length = 0
            for page in reader.pages:
                if text := page.extract_text():
                    parts.append(text)
                    length += len(text) + 1
                if 0 <= max_chars <= length:
                    break
            return _truncate(parts, max_chars)
        except Exception as e:
            raise ExtractionError(f"pypdf extraction failed: {e}") from e

    def load_bounded(self, path: Path | str, max_chars: int) -> str:
        return self._read(str(path), max_chars)

    def load_from_handle(self, handle: BinaryIO, max_chars: int = -1) -> str:
        return self._read(handle, max_chars)


class DocxLoader(DocumentLoader):
    """Extracts paragraph text from Word documents with python-docx."""

    def get_supported_extensions(self) -> Set[str]:
        return {"docx"}

    def _read(self, source, max_chars: int) -> str:
        try:
            doc = Document(source)
        except Exception as e:
            raise ExtractionError(f"DOCX extraction failed: {e}") from e
        parts: List[str] = []
        length = 0
        for paragraph in doc.paragraphs:
            if not paragraph.text:
                continue
            parts.append(paragraph.text)
            length += len(paragraph.text) + 1
            if 0 <= max_chars <= length:
                break
        return _truncate(parts, max_chars)

    def load_bounded(self, path: Path | str, max_chars: int) -> str:
        return self._read(str(path), max_chars)

    def load_from_handle(self, handle: BinaryIO, max_chars: int = -1) -> str:
        return self._read(handle, max_chars)


class LoaderRegistry:
    """Extension -> loader lookup."""

    def __init__(self, loaders: Optional[List[DocumentLoader]] = None):
        self._by_ext: Dict[str, DocumentLoader] = {}
        for loader in loaders or []:
            self.register(loader)

    def register(self, loader: DocumentLoader) -> None:
        for ext in loader.get_supported_extensions():
            self._by_ext[ext.lower()] = loader

    def get(self, ext: str) -> Optional[DocumentLoader]:
        return self._by_ext.get(ext.lower().lstrip("."))

    def supported_extensions(self) -> Set[str]:
        return set(self._by_ext)


def default_loader_registry() -> LoaderRegistry:
    return LoaderRegistry([PlainTextLoader(), PdfLoader(), DocxLoader()])
