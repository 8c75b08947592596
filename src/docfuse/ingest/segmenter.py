"""Sentence-aware fixed-window segmenter.

Sizes are in characters. Token counts use a 4-chars-per-token approximation;
no tokenizer dependency is required and none is wanted, since a real
tokenizer would move chunk boundaries.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from docfuse.errors import ValidationError

# Only the trailing 30 % of a window is searched for a sentence boundary.
_BOUNDARY_WINDOW = 0.7
_SENTENCE_END_RE = re.compile(r"[.!?]\s")


@dataclass(frozen=True)
class Segment:
    content: str
    chunk_index: int
    token_count: int


def estimate_tokens(text: str) -> int:
    """Approximate token count: ceil(characters / 4)."""
    return math.ceil(len(text) / 4)


class Segmenter:
    """Split normalized text into ordered, overlapping chunks.

    Each window is ``target_size`` characters. When the window does not reach
    the end of the text, its end is pulled back to the last sentence
    terminator followed by whitespace inside the trailing 30 % of the window.
    The next window starts ``overlap`` characters before the previous end.
    Trimmed pieces no longer than ``min_chunk_length`` are dropped and do not
    consume an index.

    Raises:
        ValidationError: If sizes are out of range; ``overlap >= target_size``
            would never advance the cursor.
    """

    def __init__(self, target_size: int = 1000, overlap: int = 200, min_chunk_length: int = 50) -> None:
        if target_size < 1:
            raise ValidationError(f"target_size must be >= 1, got {target_size}")
        if overlap < 0:
            raise ValidationError(f"overlap must be >= 0, got {overlap}")
        if overlap >= target_size:
            raise ValidationError(
                f"overlap ({overlap}) must be smaller than target_size ({target_size})"
            )
        if min_chunk_length < 0:
            raise ValidationError(f"min_chunk_length must be >= 0, got {min_chunk_length}")
        self.target_size = target_size
        self.overlap = overlap
        self.min_chunk_length = min_chunk_length

    def segment(self, text: str) -> list[Segment]:
        """Return the chunks of *text* in document order, indexed from 0."""
        if not text.strip():
            return []

        length = len(text)
        segments: list[Segment] = []
        start = 0

        while start < length:
            end = min(start + self.target_size, length)
            if end < length:
                end = self._sentence_end(text, start, end)

            piece = text[start:end].strip()
            if len(piece) > self.min_chunk_length:
                segments.append(
                    Segment(
                        content=piece,
                        chunk_index=len(segments),
                        token_count=estimate_tokens(piece),
                    )
                )

            if end >= length:
                break
            next_start = end - self.overlap
            # a boundary pulled far back can leave no room for the overlap
            start = next_start if next_start > start else end

        return segments

    def _sentence_end(self, text: str, start: int, end: int) -> int:
        """Return the end just after the last sentence boundary in the window tail, else *end*."""
        window_start = start + int(self.target_size * _BOUNDARY_WINDOW)
        last = None
        for match in _SENTENCE_END_RE.finditer(text, window_start, end):
            last = match
        return last.end() if last is not None else end


def segment(text: str, target_size: int, overlap: int, min_chunk_length: int) -> list[Segment]:
    """Functional form of ``Segmenter(...).segment(text)``."""
    return Segmenter(target_size, overlap, min_chunk_length).segment(text)
