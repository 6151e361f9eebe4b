"""
Text Tests - Verify newline normalization and token-bounded chunking.
"""

import pytest

from deskfind.text import collapse_newlines, split_text


class TestCollapseNewlines:
    def test_collapses_runs_and_normalizes(self):
        assert collapse_newlines("a\r\n\r\nb\n\n\nc\rd") == "a\nb\nc\nd"

    def test_leaves_single_lines(self):
        assert collapse_newlines("one line") == "one line"


class TestSplitText:
    """Tests for split_text."""

    def test_short_text_is_one_chunk(self, word_tokenizer):
        assert split_text("  a few words here  ", word_tokenizer, 256, 20) == ["a few words here"]

    def test_empty_text(self, word_tokenizer):
        assert split_text(" \n ", word_tokenizer, 256, 20) == []

    def test_sliding_window_with_overlap(self, word_tokenizer):
        """600 words at 256/20 give windows starting at words 0, 236 and 472."""
        text = " ".join(f"w{i}" for i in range(600))

        chunks = split_text(text, word_tokenizer, 256, 20)

        assert len(chunks) == 3
        assert chunks[0].split()[0] == "w0"
        assert chunks[0].split()[-1] == "w255"
        assert chunks[1].split()[0] == "w236"
        assert chunks[2].split()[-1] == "w599"
        assert all(len(c.split()) <= 256 for c in chunks)

    def test_chunks_keep_original_text(self, word_tokenizer):
        """Chunks are slices of the input, punctuation included."""
        text = "Hello, world! " * 100

        chunks = split_text(text, word_tokenizer, 50, 5)

        assert all(chunk in text for chunk in chunks)

    def test_overlap_must_be_smaller(self, word_tokenizer):
        with pytest.raises(ValueError):
            split_text("some text", word_tokenizer, 10, 10)
