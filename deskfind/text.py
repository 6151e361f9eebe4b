"""
Text utilities - newline normalization and token-bounded chunking.
"""

import re
from typing import List


_NEWLINE_RUNS = re.compile(r"(?:\r\n|\r|\n)+")


def collapse_newlines(text: str) -> str:
    """Normalize CR/CRLF to LF and collapse runs of line breaks to one."""
    return _NEWLINE_RUNS.sub("\n", text)


def split_text(text: str, tokenizer, chunk_tokens: int, overlap: int) -> List[str]:
    """
    Split text into overlapping chunks of at most `chunk_tokens` tokens.

    Uses the tokenizer's character offsets to cut the original string, so
    chunks keep their exact text. Sliding window with `overlap` tokens of
    shared context between neighbours.

    Args:
        text: Text to split
        tokenizer: A `tokenizers.Tokenizer` (or anything with the same
            `encode(...).offsets` shape)
        chunk_tokens: Max tokens per chunk
        overlap: Tokens repeated at the start of the next chunk
    """
    if not text.strip():
        return []
    if overlap >= chunk_tokens:
        raise ValueError("overlap must be smaller than chunk_tokens")

    offsets = tokenizer.encode(text, add_special_tokens=False).offsets
    if len(offsets) <= chunk_tokens:
        return [text.strip()]

    chunks = []
    step = chunk_tokens - overlap
    start = 0
    while start < len(offsets):
        end = min(start + chunk_tokens, len(offsets))
        chunk = text[offsets[start][0]:offsets[end - 1][1]].strip()
        if chunk:
            chunks.append(chunk)
        if end == len(offsets):
            break
        start += step
    return chunks
