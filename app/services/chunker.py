"""Paragraph-based text chunking with overlapping windows."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import List, Tuple

from app.config.settings import settings

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
PARAGRAPH_JOINER = "\n\n"


@dataclass(frozen=True)
class TextChunk:
    """A slice of the input text plus its position in that text."""

    content: str
    start_offset: int
    end_offset: int
    chunk_index: int
    token_count: int


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    return math.ceil(len(text) / chars_per_token)


def _split_paragraphs(text: str) -> List[Tuple[str, int, int]]:
    """Return (paragraph, start, end) for every non-blank paragraph."""
    spans: List[Tuple[int, int]] = []
    position = 0
    for separator in PARAGRAPH_BREAK.finditer(text):
        spans.append((position, separator.start()))
        position = separator.end()
    spans.append((position, len(text)))

    paragraphs = []
    for start, end in spans:
        raw = text[start:end]
        stripped = raw.strip()
        if not stripped:
            continue
        begin = start + (len(raw) - len(raw.lstrip()))
        paragraphs.append((stripped, begin, begin + len(stripped)))
    return paragraphs


def _locate(anchors: List[Tuple[int, int]], position: int) -> int:
    """Map a position in the buffer back to an offset in the input text."""
    buffer_pos, text_pos = anchors[0]
    for anchor in anchors:
        if anchor[0] > position:
            break
        buffer_pos, text_pos = anchor
    return text_pos + (position - buffer_pos)


def chunk_text(
    text: str,
    chunk_size: int = settings.CHUNK_SIZE_TOKENS,
    chunk_overlap: int = settings.CHUNK_OVERLAP_TOKENS,
    chars_per_token: int = settings.CHARS_PER_TOKEN,
) -> List[TextChunk]:
    """Split text into overlapping, size-bounded chunks.

    Paragraphs (separated by blank lines) are accumulated until the next one (plus its
    joining blank line) would push the buffer past ``chunk_size * chars_per_token`` characters.
    The buffer is then emitted and a new one starts with the trailing
    ``chunk_overlap * chars_per_token`` characters of the emitted buffer,
    followed by the paragraph that triggered the split. The overlap tail is
    shortened (down to nothing) when the full window plus that paragraph
    would not fit the budget, so only a single paragraph longer than the
    budget ever produces an oversized chunk; it is emitted whole.

    Args:
        text: Plain text to split.
        chunk_size: Chunk budget in approximate tokens.
        chunk_overlap: Overlap window in approximate tokens.
        chars_per_token: Characters per token used for the approximation.

    Returns:
        Chunks in document order with indices starting at 0. Empty or
        whitespace-only input yields an empty list.
    """
    if not text or not text.strip():
        return []

    budget = chunk_size * chars_per_token
    overlap = chunk_overlap * chars_per_token

    chunks: List[TextChunk] = []
    buffer = ""
    buffer_end = 0
    # (position in buffer, offset in text) at every paragraph start
    anchors: List[Tuple[int, int]] = []

    def emit() -> None:
        content = buffer.strip()
        leading = len(buffer) - len(buffer.lstrip())
        chunks.append(
            TextChunk(
                content=content,
                start_offset=_locate(anchors, leading),
                end_offset=buffer_end,
                chunk_index=len(chunks),
                token_count=estimate_tokens(content, chars_per_token),
            )
        )

    for paragraph, start, end in _split_paragraphs(text):
        if buffer and len(buffer) + len(PARAGRAPH_JOINER) + len(paragraph) > budget:
            emit()
            # the seeded buffer must still fit the budget
            window = min(overlap, max(0, budget - len(PARAGRAPH_JOINER) - len(paragraph)))
            if window == 0:
                buffer = paragraph
                anchors = [(0, start)]
            else:
                cut = len(buffer) - min(window, len(buffer))
                seed_anchors = [(0, _locate(anchors, cut))]
                seed_anchors.extend((pos - cut, offset) for pos, offset in anchors if pos > cut)
                buffer = buffer[cut:] + PARAGRAPH_JOINER
                anchors = seed_anchors + [(len(buffer), start)]
                buffer += paragraph
        elif buffer:
            buffer += PARAGRAPH_JOINER
            anchors.append((len(buffer), start))
            buffer += paragraph
        else:
            buffer = paragraph
            anchors = [(0, start)]
        buffer_end = end

    if buffer.strip():
        emit()

    return chunks
