"""
Document Processing Package
════════════════════════════

Post-extraction half of the pipeline:

  ExtractedDocument → Paged Chunking → Embedding → Vector Upsert

Modules
───────
  chunking.py   Fixed-window chunker with overlap and page attribution
  embeddings.py Per-chunk embedding + upsert behind circuit breakers

Embedding is best-effort: a failure here never fails the job.
"""

from docproc.processing.chunking import ChunkResult, PagedChunker, split_text
from docproc.processing.embeddings import EmbeddingOutcome, EmbeddingPipeline, OpenAIEmbedder

__all__ = [
    "ChunkResult",
    "PagedChunker",
    "split_text",
    "EmbeddingOutcome",
    "EmbeddingPipeline",
    "OpenAIEmbedder",
]
