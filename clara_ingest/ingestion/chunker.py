"""Text chunking with sentence awareness and overlap."""

import logging
import re
import uuid
from datetime import datetime
from typing import Optional

from clara_ingest.core.config import ChunkingConfig
from clara_ingest.core.constants import ChunkingStrategy
from clara_ingest.core.utils import utcnow
from clara_ingest.ingestion.models import Chunk, ChunkMetadata

logger = logging.getLogger(__name__)

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def chunk_id_for(url: str, chunk_index: int) -> str:
    """Deterministic chunk id.

    A UUID so that Qdrant accepts it as a point id.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{url}#chunk-{chunk_index}"))


def split_sentences(text: str) -> list[str]:
    """Split on ``.``, ``!`` and ``?`` boundaries, keeping the punctuation."""
    return [s.strip() for s in SENTENCE_BOUNDARY.split(text) if s.strip()]


def _split_long_sentence(sentence: str, max_chunk_size: int) -> list[str]:
    """Break a sentence longer than ``max_chunk_size`` on word boundaries."""
    pieces: list[str] = []
    current: list[str] = []
    length = 0
    for word in sentence.split():
        extra = len(word) + (1 if current else 0)
        if current and length + extra > max_chunk_size:
            pieces.append(" ".join(current))
            current, length = [], 0
            extra = len(word)
        current.append(word)
        length += extra
    if current:
        pieces.append(" ".join(current))
    return pieces


def chunk_by_sentences(text: str, max_chunk_size: int, overlap_words: int) -> list[str]:
    """Accumulate sentences into chunks of at most ``max_chunk_size`` characters.

    When the next sentence would overflow the buffer, the buffer is emitted
    and the next one is seeded with the trailing ``overlap_words`` words of
    the emitted chunk. The seed is shortened when seed plus sentence would
    not fit, so no chunk exceeds ``max_chunk_size``.
    """
    sentences: list[str] = []
    for sentence in split_sentences(text):
        if len(sentence) > max_chunk_size:
            sentences.extend(_split_long_sentence(sentence, max_chunk_size))
        else:
            sentences.append(sentence)

    chunks: list[str] = []
    buffer = ""
    for sentence in sentences:
        candidate = f"{buffer} {sentence}" if buffer else sentence
        if buffer and len(candidate) > max_chunk_size:
            chunks.append(buffer)
            tail = buffer.split()[-overlap_words:] if overlap_words else []
            # Shrink the seed rather than overflow the next chunk
            while tail and len(" ".join(tail + [sentence])) > max_chunk_size:
                tail = tail[1:]
            buffer = " ".join(tail + [sentence])
        else:
            buffer = candidate

    if buffer:
        chunks.append(buffer)
    return chunks


def chunk_by_sliding_window(
    text: str,
    max_chunk: int,
    overlap_ratio: float,
) -> list[tuple[int, int]]:
    """Chunk text using sliding window with overlap."""
    chunks: list[tuple[int, int]] = []
    text_length = len(text)

    if text_length == 0:
        return []
    if text_length <= max_chunk:
        return [(0, text_length)]

    step = max(1, int(max_chunk * (1 - overlap_ratio)))
    offset = 0
    while offset < text_length:
        chunk_end = min(offset + max_chunk, text_length)
        chunk_text = text[offset:chunk_end]

        # Adjust to a paragraph, sentence or word boundary if not at end
        if chunk_end < text_length:
            for break_str in ["\n\n", "\n", ". ", " "]:
                last_break = chunk_text.rfind(break_str)
                if last_break > max_chunk * 0.7:  # Reasonable break point
                    chunk_end = offset + last_break + len(break_str)
                    break

        chunks.append((offset, chunk_end))
        if chunk_end >= text_length:
            break
        offset = min(offset + step, chunk_end)

    return chunks


class Chunker:
    """Splits normalized text into overlapping, size-bounded chunks."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def chunk(
        self,
        text: str,
        url: str,
        title: str,
        max_chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        last_updated: Optional[datetime] = None,
    ) -> list[Chunk]:
        """Chunk ``text`` from ``url``.

        ``overlap`` is a word count for the sentence strategy. The sliding
        window strategy uses ``config.window_overlap_ratio`` instead.
        """
        max_chunk_size = max_chunk_size or self.config.max_chunk_size
        overlap = self.config.overlap_words if overlap is None else overlap
        last_updated = last_updated or utcnow()

        if not text or not text.strip():
            logger.warning(f"Page {url} has no text to chunk")
            return []

        if self.config.strategy == ChunkingStrategy.SLIDING_WINDOW:
            spans = chunk_by_sliding_window(text, max_chunk_size, self.config.window_overlap_ratio)
            pieces = [(text[start:end].strip(), start, end) for start, end in spans]
        else:
            pieces = [(piece, None, None) for piece in chunk_by_sentences(text, max_chunk_size, overlap)]

        chunks: list[Chunk] = []
        for content, char_start, char_end in pieces:
            if len(content) < self.config.min_chunk_chars:
                continue
            index = len(chunks)
            chunks.append(
                Chunk(
                    id=chunk_id_for(url, index),
                    content=content,
                    metadata=ChunkMetadata(
                        source_url=url,
                        source_title=title,
                        chunk_index=index,
                        last_updated=last_updated,
                        char_start=char_start,
                        char_end=char_end,
                    ),
                )
            )

        # Second pass: total is only known once the split is complete
        for chunk in chunks:
            chunk.metadata.total_chunks = len(chunks)

        logger.info(f"Created {len(chunks)} chunks from {url}")
        return chunks
