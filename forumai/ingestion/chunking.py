from __future__ import annotations

import re
from typing import Iterable


_WORD_RE = re.compile(r"\S+")


def overlap_tokens(chunk_size: int, overlap_percent: int) -> int:
    # Overlap is configured as a share of the chunk; keep at least one token of progress.
    overlap = (chunk_size * overlap_percent) // 100
    return max(0, min(overlap, chunk_size - 1))


def _window_words(words: list[str], size: int, overlap: int) -> Iterable[list[str]]:
    # Stable sliding window for long paragraphs to preserve order.
    start = 0
    length = len(words)
    while start < length:
        end = min(length, start + size)
        yield words[start:end]
        if end == length:
            break
        start = max(0, end - overlap)


def chunk_text(text: str, *, chunk_size: int, overlap_percent: int) -> list[str]:
    """Split text into chunks of at most ``chunk_size`` whitespace tokens."""
    overlap = overlap_tokens(chunk_size, overlap_percent)
    chunks: list[str] = []
    # Prefer paragraph boundaries; fall back to windows for long blocks.
    for paragraph in (p.strip() for p in text.split("\n\n")):
        words = _WORD_RE.findall(paragraph)
        if not words:
            continue
        if len(words) <= chunk_size:
            chunks.append(" ".join(words))
            continue
        chunks.extend(" ".join(window) for window in _window_words(words, chunk_size, overlap))
    return chunks
