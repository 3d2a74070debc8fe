"""
Page-Aware Chunker
══════════════════

Splits an ExtractedDocument into overlapping character windows, one page
at a time, so every chunk carries the page it came from (citations,
"similar pages" lookups).

Window rules
────────────
  • target size CHUNK_SIZE characters, OVERLAP characters shared with the
    previous window
  • a window that would cut mid-text is pulled back to the last "." or,
    failing that, the last space, provided the boundary lies past half
    the window
  • whitespace-only windows are dropped
  • chunk indices are global across pages (0, 1, 2 … for the document)

Documents without page structure are chunked as a single page 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from docproc.extraction.models import ExtractedDocument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHUNK_SIZE = 1000
OVERLAP    = 200


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and vector storage."""
    chunk_id:    str           # deterministic: <document_id>_chunk_<index>
    document_id: str
    chunk_index: int           # 0-based, global across pages
    text:        str
    page_number: int           # 1-based
    metadata:    dict = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.text)


def split_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = OVERLAP) -> list[str]:
    """Split `text` into overlapping windows snapped to sentence/word boundaries."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size - 1))

    chunks: list[str] = []
    n = len(text)
    start = 0
    while start < n:
        end = min(start + chunk_size, n)

        if end < n:
            floor = start + chunk_size * 0.5
            last_sentence = text.rfind(".", start, end)
            last_space    = text.rfind(" ", start, end)
            if last_sentence > floor:
                end = last_sentence + 1
            elif last_space > floor:
                end = last_space

        chunks.append(text[start:end])
        if end >= n:
            break
        start = max(end - overlap, start + 1)

    return [c for c in chunks if c.strip()]


class PagedChunker:
    def __init__(self, chunk_size: int = CHUNK_SIZE, overlap: int = OVERLAP) -> None:
        self._chunk_size = chunk_size
        self._overlap    = overlap

    def chunk(self, document_id: str, extracted: ExtractedDocument) -> list[ChunkResult]:
        pages = [(p.page_number, p.text) for p in extracted.pages if p.text.strip()]
        if not pages and extracted.text.strip():
            pages = [(1, extracted.text)]

        results: list[ChunkResult] = []
        for page_number, page_text in pages:
            for piece in split_text(page_text.strip(), self._chunk_size, self._overlap):
                index = len(results)
                results.append(ChunkResult(
                    chunk_id=f"{document_id}_chunk_{index}",
                    document_id=document_id,
                    chunk_index=index,
                    text=piece,
                    page_number=page_number,
                ))

        logger.info(
            "Chunking complete | doc=%s pages=%d chunks=%d",
            document_id, len(pages), len(results),
        )
        return results
