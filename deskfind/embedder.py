"""
Embedder - ONNX text-to-vector embedding with a managed lifecycle.

`EmbeddingService` owns one ONNX Runtime session plus its tokenizer.
`EmbeddingServiceManager` decides when that service exists:

- loaded lazily on first use (or by `warmup()`)
- inference serialized behind one lock, executed in a worker thread
- evicted after `embedding_ttl_s` of inactivity by a periodic sweep that
  never waits for the lock (a busy service is simply checked next tick)
- dropped immediately when the content language changes
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import onnxruntime as ort
from tokenizers import Tokenizer

from .config import IndexerConfig, LANGUAGE_MULTILINGUAL
from .errors import ConcurrencyError, EmbeddingError, EmbeddingSizeMismatch, ModelLoadError
from .vectors import EMBEDDING_DIM


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-minilm-l6-v2"
MULTILINGUAL_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"


@dataclass(frozen=True)
class ModelSpec:
    """Which model files to load."""
    name: str
    model_path: Path
    tokenizer_path: Path


def resolve_model(config: IndexerConfig, language: str) -> ModelSpec:
    """
    Pick the model for a content language.

    The multilingual model is optional; without its files on disk the
    default English model is used.
    """
    default = ModelSpec(
        name=DEFAULT_MODEL,
        model_path=config.model_dir / f"{DEFAULT_MODEL}.onnx",
        tokenizer_path=config.model_dir / f"{DEFAULT_MODEL}-tokenizer.json",
    )
    if language != LANGUAGE_MULTILINGUAL:
        return default

    slug = MULTILINGUAL_MODEL.lower()
    multilingual = ModelSpec(
        name=MULTILINGUAL_MODEL,
        model_path=config.model_dir / f"{slug}.onnx",
        tokenizer_path=config.model_dir / f"{slug}-tokenizer.json",
    )
    if multilingual.model_path.exists() and multilingual.tokenizer_path.exists():
        return multilingual
    logger.warning(f"Multilingual model not found in {config.model_dir}, using {DEFAULT_MODEL}")
    return default


def select_output_vector(output: np.ndarray) -> np.ndarray:
    """
    Reduce a model output tensor to one vector.

    [1, seq, dim] -> last token position, [1, dim] -> row 0, [dim] -> as is.
    """
    if output.ndim == 3 and output.shape[0] == 1:
        vec = output[0, -1, :]
    elif output.ndim == 2 and output.shape[0] == 1:
        vec = output[0]
    elif output.ndim == 1:
        vec = output
    else:
        raise EmbeddingSizeMismatch(f"Unexpected model output shape {output.shape}")
    if vec.shape[0] != EMBEDDING_DIM:
        raise EmbeddingSizeMismatch(
            f"Model produced {vec.shape[0]} dimensions, expected {EMBEDDING_DIM}"
        )
    return np.asarray(vec, dtype=np.float32)


class EmbeddingService:
    """
    One loaded ONNX model and tokenizer.

    Not thread-safe; the manager serializes access.
    """

    def __init__(self, session: ort.InferenceSession, tokenizer: Tokenizer,
                 name: str, max_input_tokens: int = 512):
        self.session = session
        self.tokenizer = tokenizer
        self.name = name
        self.max_input_tokens = max_input_tokens
        self._input_names = {i.name for i in session.get_inputs()}

    @classmethod
    def load(cls, spec: ModelSpec, config: IndexerConfig) -> "EmbeddingService":
        """Load model and tokenizer from disk. Raises ModelLoadError."""
        if not spec.model_path.exists():
            raise ModelLoadError(f"Model file not found: {spec.model_path}")
        if not spec.tokenizer_path.exists():
            raise ModelLoadError(f"Tokenizer file not found: {spec.tokenizer_path}")

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
        options.intra_op_num_threads = max((os.cpu_count() or 4) - 2, 2)
        try:
            session = ort.InferenceSession(
                str(spec.model_path), sess_options=options, providers=["CPUExecutionProvider"]
            )
            tokenizer = Tokenizer.from_file(str(spec.tokenizer_path))
        except Exception as e:
            raise ModelLoadError(f"Failed to load {spec.name}: {e}") from e

        # Chunking needs untruncated offsets; inputs are capped in embed()
        tokenizer.no_truncation()
        tokenizer.no_padding()
        logger.info(f"Loaded embedding model {spec.name} ({spec.model_path.name})")
        return cls(session, tokenizer, spec.name, config.max_input_tokens)

    def embed(self, text: str) -> np.ndarray:
        encoding = self.tokenizer.encode(text)
        n = min(len(encoding.ids), self.max_input_tokens)
        feeds = {
            "input_ids": np.array([encoding.ids[:n]], dtype=np.int64),
            "attention_mask": np.array([encoding.attention_mask[:n]], dtype=np.int64),
            "token_type_ids": np.array([encoding.type_ids[:n]], dtype=np.int64),
        }
        feeds = {k: v for k, v in feeds.items() if k in self._input_names}
        try:
            outputs = self.session.run(None, feeds)
        except Exception as e:
            raise EmbeddingError(f"Inference failed: {e}") from e
        return select_output_vector(np.asarray(outputs[0]))


class EmbeddingServiceManager:
    """
    Lazily-loaded, evictable holder of the embedding service.

    `service_factory` builds a service for a ModelSpec; it defaults to
    loading the ONNX files and is replaced by a fake in tests.
    """

    def __init__(
        self,
        config: IndexerConfig,
        language: Callable[[], str],
        service_factory: Optional[Callable[[ModelSpec], object]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._language = language
        self._factory = service_factory or (lambda spec: EmbeddingService.load(spec, config))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._service = None
        self._last_used: float = 0.0

    @property
    def model_name(self) -> str:
        return resolve_model(self.config, self._language()).name

    @property
    def is_loaded(self) -> bool:
        return self._service is not None

    async def _acquire(self) -> None:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.config.embed_lock_timeout_s)
        except asyncio.TimeoutError:
            raise ConcurrencyError("Timed out waiting for the embedding service") from None

    async def _ensure_loaded(self):
        """Load the service if absent. Caller holds the lock."""
        if self._service is None:
            spec = resolve_model(self.config, self._language())
            loop = asyncio.get_running_loop()
            try:
                self._service = await loop.run_in_executor(None, self._factory, spec)
            except ModelLoadError:
                raise
            except Exception as e:
                raise ModelLoadError(f"Failed to load {spec.name}: {e}") from e
        self._last_used = self._clock()
        return self._service

    async def warmup(self) -> None:
        """Load the service now instead of on first use. Idempotent."""
        await self._acquire()
        try:
            await self._ensure_loaded()
        finally:
            self._lock.release()

    async def embed(self, text: str) -> np.ndarray:
        """
        Embed one text.

        Raises:
            ModelLoadError: the model could not be loaded (fatal for a run)
            EmbeddingError: inference failed or returned the wrong shape
            ConcurrencyError: the service stayed busy past the lock timeout
        """
        await self._acquire()
        try:
            service = await self._ensure_loaded()
            loop = asyncio.get_running_loop()
            try:
                vec = await loop.run_in_executor(None, service.embed, text)
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(f"Inference failed: {e}") from e
            self._last_used = self._clock()
        finally:
            self._lock.release()

        vec = np.asarray(vec, dtype=np.float32).reshape(-1)
        if vec.shape[0] != EMBEDDING_DIM:
            raise EmbeddingSizeMismatch(
                f"Embedding has {vec.shape[0]} dimensions, expected {EMBEDDING_DIM}"
            )
        return vec

    async def get_tokenizer(self):
        """The tokenizer of the current service (loads it if needed)."""
        await self._acquire()
        try:
            service = await self._ensure_loaded()
            return service.tokenizer
        finally:
            self._lock.release()

    def remove_if_expired(self) -> bool:
        """
        Drop the service if it has been idle longer than the TTL.

        Never waits: when the lock is held the check is skipped and the
        next sweep tries again. Returns True if the service was dropped.
        """
        if self._lock.locked() or self._service is None:
            return False
        idle = self._clock() - self._last_used
        if idle <= self.config.embedding_ttl_s:
            return False
        self._service = None
        logger.info(f"Embedding service evicted after {idle:.0f}s idle")
        return True

    def clear(self) -> None:
        """
        Drop the service unconditionally (language/model change).

        An inference already running keeps its own reference and finishes.
        """
        if self._service is not None:
            logger.info("Embedding service cleared")
        self._service = None

    async def run_eviction_loop(self, stop: asyncio.Event) -> None:
        """Periodic TTL sweep until `stop` is set."""
        interval = self.config.embedding_sweep_interval_s
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.remove_if_expired()
