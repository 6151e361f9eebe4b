"""
Test Configuration - Shared fixtures for engine tests.

Uses pytest fixtures to create isolated test environments. The embedding
model is replaced by a deterministic bag-of-words fake so tests never need
ONNX model files on disk.
"""

import re
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import numpy as np
import pytest
import xxhash
from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from deskfind.analyzers import AudioAnalyzer, ImageAnalyzer
from deskfind.config import IndexerConfig
from deskfind.errors import EmbeddingError, ModelLoadError
from deskfind.orchestrator import Orchestrator
from deskfind.registry import FileRegistry
from deskfind.state import AppState
from deskfind.vectors import EMBEDDING_DIM


_WORD = re.compile(r"\w+")


def make_word_tokenizer() -> Tokenizer:
    """Whitespace word-level tokenizer: one token per word, real offsets."""
    tokenizer = Tokenizer(WordLevel({"[UNK]": 0}, unk_token="[UNK]"))
    tokenizer.pre_tokenizer = Whitespace()
    return tokenizer


def bag_of_words(text: str) -> np.ndarray:
    """Hashed word counts. Texts sharing words are close in cosine distance."""
    vec = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    for word in _WORD.findall(text.lower()):
        vec[xxhash.xxh32_intdigest(word.encode()) % EMBEDDING_DIM] += 1.0
    return vec


class FakeEmbeddingService:
    """Stands in for the ONNX service; same `tokenizer` / `embed` surface."""

    def __init__(self):
        self.tokenizer = make_word_tokenizer()
        self.name = "fake"
        self.fail_on = None          # embed() raises for texts containing this
        self.unavailable = False     # the factory raises ModelLoadError
        self.embedded = []

    def embed(self, text: str) -> np.ndarray:
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError(f"Inference failed on {self.fail_on!r}")
        self.embedded.append(text)
        return bag_of_words(text)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeImageAnalyzer(ImageAnalyzer):
    def __init__(self, description: str = "a red bicycle leaning on a brick wall"):
        self.description = description
        self.calls = []

    async def analyze_image(self, model, path):
        self.calls.append((model, str(path)))
        return self.description


class FakeAudioAnalyzer(AudioAnalyzer):
    def __init__(self, transcript: str = "welcome to the weekly podcast about gardening"):
        self.transcript = transcript
        self.calls = []

    async def analyze_audio(self, model, path):
        self.calls.append((model, str(path)))
        return self.transcript


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="deskfind_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> IndexerConfig:
    """Create an isolated test configuration with short windows."""
    # Hidden data dir, so scans of temp_dir skip the database files
    data_dir = temp_dir / ".deskfind"
    return IndexerConfig(
        data_dir=data_dir,
        db_path=data_dir / "test.db",
        model_dir=data_dir / "models",
        scanner_concurrency=4,
        hasher_concurrency=2,
        search_concurrency=2,
        scan_queue_retry_delay_ms=5,
        event_queue_retry_delay_ms=5,
        debounce_ms=50,
        rename_window_ms=30,
        path_refresh_interval_s=0.05,
        embedding_sweep_interval_s=0.05,
    )


@pytest.fixture
def registry(test_config: IndexerConfig) -> Generator[FileRegistry, None, None]:
    reg = FileRegistry(test_config.db_path)
    yield reg
    reg.close()


@pytest.fixture
def embedding_service() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def state(test_config, embedding_service) -> Generator[AppState, None, None]:
    """Engine state wired to the fake embedding service."""

    def factory(spec):
        if embedding_service.unavailable:
            raise ModelLoadError(f"Model file not found: {spec.model_path}")
        return embedding_service

    app_state = AppState(test_config, service_factory=factory)
    yield app_state
    app_state.path_search.close()
    app_state.close()


@pytest.fixture
def orchestrator(state) -> Generator[Orchestrator, None, None]:
    orch = Orchestrator(state=state)
    yield orch
    orch.scanner.close()


@pytest.fixture
def media_platform(state):
    """Configure a media platform with fake image and audio analyzers."""
    config = state.config
    config.model_platform = "acme"
    config.model_platform_api_key = "test-key"
    config.vision_model = "acme-vision"
    config.asr_model = "acme-asr"
    image, audio = FakeImageAnalyzer(), FakeAudioAnalyzer()
    state.analyzers.register_image("acme", image)
    state.analyzers.register_audio("acme", audio)
    return image, audio


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def word_tokenizer() -> Tokenizer:
    return make_word_tokenizer()


@pytest.fixture
def sample_files(temp_dir: Path) -> dict[str, Path]:
    """Create sample files for testing."""
    files = {}

    # Text file
    txt = temp_dir / "sample.txt"
    txt.write_text("This is a sample text file.\nIt has multiple lines.\nFor testing purposes.")
    files["txt"] = txt

    # Markdown file
    md = temp_dir / "readme.md"
    md.write_text("# Test Readme\n\nThis is a markdown file for testing.\n\n## Section 1\n\nSome content here.")
    files["md"] = md

    # Python file (no loader, category Other)
    py = temp_dir / "script.py"
    py.write_text('"""A sample Python script."""\n\ndef hello():\n    print("Hello, world!")\n')
    files["py"] = py

    # Nested file
    nested_dir = temp_dir / "subdir" / "nested"
    nested_dir.mkdir(parents=True)
    nested = nested_dir / "deep.txt"
    nested.write_text("A deeply nested file.")
    files["nested"] = nested

    # Hidden file (should be skipped)
    hidden = temp_dir / ".hidden.txt"
    hidden.write_text("This should be skipped.")
    files["hidden"] = hidden

    # Node modules dir (should be skipped)
    node_modules = temp_dir / "node_modules"
    node_modules.mkdir()
    (node_modules / "package.json").write_text('{"name": "test"}')
    files["node_modules"] = node_modules / "package.json"

    return files


@pytest.fixture
def duplicate_files(temp_dir: Path) -> tuple[Path, Path]:
    """Create two files with identical content."""
    content = "This content is duplicated in two files.\n"

    file1 = temp_dir / "original.txt"
    file1.write_text(content)

    file2 = temp_dir / "copy.txt"
    file2.write_text(content)

    return file1, file2
