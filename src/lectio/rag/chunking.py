"""Text chunking and token estimation for RAG indexing."""

import math
from typing import Optional

from lectio.config import get_settings
from lectio.rag.exceptions import InvalidInputError

# Rough estimate: 1 token per 4 characters
CHARS_PER_TOKEN = 4


def chunk_text(
    text: str,
    chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> list[str]:
    """Split text into overlapping windows of words.

    Consecutive chunks share ``overlap`` words. Text with no words is
    returned as a single chunk unchanged.

    Args:
        text: Text to split
        chunk_size: Words per chunk
        overlap: Words shared between consecutive chunks

    Returns:
        List of chunk texts in document order

    Raises:
        InvalidInputError: If chunk_size is not positive or overlap is
            negative or not smaller than chunk_size
    """
    settings = get_settings()
    chunk_size = settings.chunk_size if chunk_size is None else chunk_size
    overlap = settings.chunk_overlap if overlap is None else overlap

    if chunk_size <= 0:
        raise InvalidInputError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise InvalidInputError(
            f"overlap must be in [0, chunk_size), got {overlap} for chunk_size {chunk_size}"
        )

    words = text.split()
    step = chunk_size - overlap
    chunks = []

    for start in range(0, len(words), step):
        chunks.append(" ".join(words[start : start + chunk_size]))
        if start + chunk_size >= len(words):
            break

    return chunks or [text]


def estimate_token_count(text: str) -> int:
    """Estimate the token count of text from its length."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
