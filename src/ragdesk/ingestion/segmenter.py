"""Boundary-aware text segmentation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from ragdesk.models import TextChunk

_SENTENCE_ENDERS = (". ", "! ", "? ", ".\n", "!\n", "?\n", '."', '!"', '?"')
_PARAGRAPH_BREAK = "\n\n"


@dataclass(frozen=True)
class SegmenterConfig:
    """Window sizes for segmentation, in characters."""

    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_chars: int = 50


def clean_text(text: str) -> str:
    """Unify line endings and collapse runs of blank lines and spaces."""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    return cleaned.strip()


class TextSegmenter:
    """Split text into overlapping chunks that prefer sentence boundaries.

    Each window is ``chunk_size`` characters. When the window does not reach
    the end of the text, its end is pulled back to the nearest sentence
    terminator (or, failing that, paragraph break) lying past the window's
    midpoint. The next window starts ``chunk_overlap`` characters before the
    chosen end, and always at least one character after the previous start.
    """

    def __init__(self, config: SegmenterConfig | None = None) -> None:
        self._config = config or SegmenterConfig()
        if self._config.chunk_overlap >= self._config.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")

    @property
    def config(self) -> SegmenterConfig:
        return self._config

    def segment(self, text: str) -> List[TextChunk]:
        cleaned = clean_text(text)
        size = self._config.chunk_size
        length = len(cleaned)
        chunks: List[TextChunk] = []
        start = 0
        while start < length:
            end = min(start + size, length)
            chunk_end = end
            if end < length:
                chunk_end = self._find_boundary(cleaned, start, end)
            content = cleaned[start:chunk_end].strip()
            if len(content) > self._config.min_chunk_chars:
                chunks.append(
                    TextChunk(content=content, index=len(chunks), start_char=start, end_char=chunk_end)
                )
            if chunk_end >= length:
                break
            start = max(start + 1, chunk_end - self._config.chunk_overlap)
        return chunks

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        midpoint = start + self._config.chunk_size // 2
        for i in range(end, midpoint, -1):
            for ender in _SENTENCE_ENDERS:
                if text.startswith(ender, i):
                    # keep the closing quote with its sentence
                    return i + (2 if ender.endswith('"') else 1)
        for i in range(end, midpoint, -1):
            if text.startswith(_PARAGRAPH_BREAK, i):
                return i
        return end
