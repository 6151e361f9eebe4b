"""
Vector Codec Tests - Verify the persisted embedding format.

Tests:
- Fixed-width little-endian float32 blobs
- Length validation on decode
- Cosine distance edge cases
"""

import numpy as np
import pytest

from deskfind.errors import EmbeddingSizeMismatch, VectorFormatError
from deskfind.vectors import (
    BLOB_SIZE,
    EMBEDDING_DIM,
    cosine_distances,
    deserialize_embedding,
    serialize_embedding,
)


class TestVectorCodec:
    """Tests for serialize/deserialize."""

    def test_round_trip_is_bit_exact(self):
        """Decoding an encoded vector returns the same bits."""
        rng = np.random.default_rng(7)
        vec = rng.standard_normal(EMBEDDING_DIM).astype(np.float32)

        blob = serialize_embedding(vec)

        assert len(blob) == BLOB_SIZE == 1536
        assert deserialize_embedding(blob).tobytes() == vec.tobytes()

    def test_blob_is_little_endian(self):
        """Each value is written as 4 little-endian bytes."""
        vec = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        vec[0] = 1.0

        blob = serialize_embedding(vec)

        assert blob[:4] == b"\x00\x00\x80\x3f"

    def test_rejects_wrong_dimension(self):
        """Vectors that are not 384 long cannot be stored."""
        with pytest.raises(EmbeddingSizeMismatch):
            serialize_embedding(np.zeros(128, dtype=np.float32))

    def test_rejects_wrong_blob_length(self):
        """Blobs of any other length are rejected with both lengths reported."""
        with pytest.raises(VectorFormatError) as exc_info:
            deserialize_embedding(b"\x00" * (BLOB_SIZE - 4))

        assert exc_info.value.length == BLOB_SIZE - 4
        assert exc_info.value.expected == BLOB_SIZE


class TestCosineDistances:
    """Tests for cosine_distances."""

    def test_identical_and_orthogonal(self):
        """Same direction is 0, orthogonal is 1."""
        query = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        query[0] = 2.0
        same = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        same[0] = 5.0
        orthogonal = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        orthogonal[1] = 1.0

        distances = cosine_distances(query, np.vstack([same, orthogonal]))

        assert distances[0] == pytest.approx(0.0, abs=1e-6)
        assert distances[1] == pytest.approx(1.0, abs=1e-6)

    def test_zero_vector_is_maximally_far(self):
        """A zero row has no direction and gets distance 1."""
        query = np.ones(EMBEDDING_DIM, dtype=np.float32)
        matrix = np.zeros((1, EMBEDDING_DIM), dtype=np.float32)

        assert cosine_distances(query, matrix)[0] == pytest.approx(1.0)

    def test_empty_matrix(self):
        """No rows, no distances."""
        query = np.ones(EMBEDDING_DIM, dtype=np.float32)
        empty = np.empty((0, EMBEDDING_DIM), dtype=np.float32)

        assert cosine_distances(query, empty).shape == (0,)
