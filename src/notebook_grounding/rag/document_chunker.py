"""Document chunking for retrieval indexing.

This module splits plain document text into overlapping, token-budgeted
passages on sentence boundaries, assigns page numbers from optional page
break offsets, and packs tabular text row by row.
"""

import hashlib
import logging
import math
import re
from bisect import bisect_right
from typing import List, Optional, Sequence, Tuple

from .types import Chunk


logger = logging.getLogger(__name__)

# Characters per token used by the cheap token estimate
CHARS_PER_TOKEN = 4

# Sentence boundary: terminal punctuation followed by whitespace
SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+')


def estimate_tokens(text: str) -> int:
    """Estimate token count as ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_sentences(text: str) -> List[Tuple[int, str]]:
    """Split text into sentences, keeping terminal punctuation attached.

    Args:
        text: Raw document text

    Returns:
        List of (start_offset, sentence) tuples in document order
    """
    sentences = []
    start = 0
    for match in SENTENCE_BOUNDARY.finditer(text):
        piece = text[start:match.start()]
        if piece:
            sentences.append((start, piece))
        start = match.end()

    tail = text[start:]
    if tail:
        sentences.append((start, tail))
    return sentences


class DocumentChunker:
    """Chunks document text for retrieval indexing.

    Sentences are accumulated into a running window. Once the window reaches
    ``chunk_size * 4`` characters it is emitted, and the next window is seeded
    with the trailing sentences that fit in ``chunk_overlap * 4`` characters.
    A single sentence longer than the target becomes its own oversized chunk.

    Attributes:
        chunk_size: Target number of tokens per chunk
        chunk_overlap: Number of overlapping tokens between chunks
    """

    def __init__(self, chunk_size: int = 500, chunk_overlap: int = 100):
        """Initialize the document chunker.

        Args:
            chunk_size: Target tokens per chunk (default: 500)
            chunk_overlap: Overlap tokens between chunks (default: 100)

        Raises:
            ValueError: If the sizes are out of range
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def chunk(
        self,
        text: str,
        source_id: str = "",
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        page_breaks: Optional[Sequence[int]] = None,
    ) -> List[Chunk]:
        """Chunk document text into overlapping passages.

        Args:
            text: Raw document text
            source_id: Source the chunks belong to (used for ids)
            chunk_size: Per-call override of the target tokens per chunk
            overlap: Per-call override of the overlap tokens
            page_breaks: Sorted character offsets at which pages 2..N begin

        Returns:
            Chunks in document order with chunk_index starting at 0
        """
        target_chars = (chunk_size or self.chunk_size) * CHARS_PER_TOKEN
        overlap_chars = (self.chunk_overlap if overlap is None else overlap) * CHARS_PER_TOKEN

        sentences = split_sentences(text or "")
        if not sentences:
            return []

        breaks = sorted(page_breaks) if page_breaks else None
        chunks: List[Chunk] = []
        window: List[Tuple[int, str]] = []
        window_len = 0
        has_new = False

        for sentence in sentences:
            window.append(sentence)
            window_len += len(sentence[1])
            has_new = True

            if window_len >= target_chars:
                self._emit(chunks, window, source_id, breaks)
                has_new = False

                # Seed the next window with trailing sentences up to overlap_chars
                carried: List[Tuple[int, str]] = []
                carried_len = 0
                for previous in reversed(window):
                    carried_len += len(previous[1])
                    if carried_len > overlap_chars:
                        break
                    carried.insert(0, previous)
                window = carried
                window_len = sum(len(s) for _, s in carried)

        # Flush remaining (only if it holds something not already emitted)
        if window and has_new:
            self._emit(chunks, window, source_id, breaks)

        logger.debug(f"Created {len(chunks)} chunks from {len(sentences)} sentences for source {source_id}")
        return chunks

    def chunk_tabular(
        self,
        text: str,
        source_id: str = "",
        chunk_size: Optional[int] = None,
    ) -> List[Chunk]:
        """Chunk CSV/spreadsheet text row by row.

        The first non-empty line is treated as the header and repeated at the
        top of every chunk so each chunk stays self-describing. Rows are never
        split and chunks do not overlap.

        Args:
            text: Tabular text, one row per line
            source_id: Source the chunks belong to
            chunk_size: Per-call override of the target tokens per chunk

        Returns:
            Chunks in row order
        """
        target_chars = (chunk_size or self.chunk_size) * CHARS_PER_TOKEN
        lines = [line for line in (text or "").splitlines() if line.strip()]
        if not lines:
            return []

        header, rows = lines[0], lines[1:]
        chunks: List[Chunk] = []
        if not rows:
            chunks.append(self._create_chunk(header, source_id, 0))
            return chunks

        current: List[str] = []
        current_len = len(header)
        for row in rows:
            if current and current_len + len(row) + 1 > target_chars:
                chunks.append(self._create_chunk('\n'.join([header] + current), source_id, len(chunks)))
                current = []
                current_len = len(header)
            current.append(row)
            current_len += len(row) + 1

        if current:
            chunks.append(self._create_chunk('\n'.join([header] + current), source_id, len(chunks)))

        logger.debug(f"Created {len(chunks)} tabular chunks from {len(rows)} rows for source {source_id}")
        return chunks

    def _emit(
        self,
        chunks: List[Chunk],
        window: List[Tuple[int, str]],
        source_id: str,
        page_breaks: Optional[List[int]],
    ) -> None:
        chunk_text = ' '.join(sentence for _, sentence in window).strip()
        if not chunk_text:
            return

        page_number = None
        if page_breaks is not None:
            page_number = bisect_right(page_breaks, window[0][0]) + 1

        chunks.append(self._create_chunk(chunk_text, source_id, len(chunks), page_number))

    def _create_chunk(
        self,
        content: str,
        source_id: str,
        chunk_index: int,
        page_number: Optional[int] = None,
    ) -> Chunk:
        return Chunk(
            id=self._generate_chunk_id(source_id, chunk_index, content),
            source_id=source_id,
            text=content,
            chunk_index=chunk_index,
            token_count_estimate=estimate_tokens(content),
            page_number=page_number,
        )

    def _generate_chunk_id(self, source_id: str, chunk_index: int, content: str) -> str:
        """Generate a deterministic chunk ID.

        Args:
            source_id: Source ID
            chunk_index: Position of the chunk within the source
            content: Chunk content

        Returns:
            Chunk identifier of the form ``<source_id>_<12 hex chars>``
        """
        hash_input = f"{source_id}:{chunk_index}:{content[:100]}"
        content_hash = hashlib.md5(hash_input.encode()).hexdigest()[:12]
        return f"{source_id or 'chunk'}_{content_hash}"

    def validate_chunk(self, chunk: Chunk) -> bool:
        """Validate that a chunk meets requirements.

        Oversized single-sentence chunks are valid; chunks must carry text
        and a token estimate consistent with their length.

        Args:
            chunk: Chunk to validate

        Returns:
            True if chunk is valid, False otherwise
        """
        if not chunk.id or not chunk.text.strip():
            return False
        if chunk.token_count_estimate != estimate_tokens(chunk.text):
            return False
        return chunk.chunk_index >= 0
