"""
Vector codec - fixed-width float32 blobs for the embedding tables.

Every stored vector is exactly EMBEDDING_DIM little-endian float32 values.
Decoding validates the blob length before reinterpreting the bytes.
"""

from typing import Sequence

import numpy as np

from .errors import VectorFormatError, EmbeddingSizeMismatch


EMBEDDING_DIM = 384
_DTYPE = np.dtype("<f4")
BLOB_SIZE = EMBEDDING_DIM * _DTYPE.itemsize


def serialize_embedding(embedding: np.ndarray | Sequence[float]) -> bytes:
    """Encode a vector as a little-endian float32 blob."""
    vec = np.asarray(embedding, dtype=_DTYPE).reshape(-1)
    if vec.shape[0] != EMBEDDING_DIM:
        raise EmbeddingSizeMismatch(
            f"Embedding has {vec.shape[0]} dimensions, expected {EMBEDDING_DIM}"
        )
    return vec.tobytes()


def deserialize_embedding(data: bytes) -> np.ndarray:
    """Decode a blob, rejecting anything that is not exactly BLOB_SIZE bytes."""
    if len(data) != BLOB_SIZE:
        raise VectorFormatError(len(data), BLOB_SIZE)
    return np.frombuffer(data, dtype=_DTYPE).astype(np.float32)


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine distance (1 - cosine similarity) from `query` to every row.

    Zero vectors have no direction; their distance is 1.0.
    """
    query = np.asarray(query, dtype=np.float32).reshape(-1)
    if matrix.size == 0:
        return np.empty(0, dtype=np.float32)
    q_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(denom > 0, dots / denom, 0.0)
    return (1.0 - similarity).astype(np.float32)
