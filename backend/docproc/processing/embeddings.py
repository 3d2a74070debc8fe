"""
Embedding Pipeline  —  Chunk, Embed, Index
══════════════════════════════════════════

Runs after extraction has been persisted.  For every page-aware chunk:

  1. embed it (OpenAI, breaker "embeddings" + policy "embeddings")
  2. upsert it (vector index, breaker "vector_index" + policy "vector_index")

Failure semantics
─────────────────
  The pipeline never raises for a dependency failure.  The first chunk
  that cannot be embedded or indexed stops the run and the outcome comes
  back as skipped=True with the error text and the number of chunks that
  did make it.  The orchestrator turns that into a degraded success: the
  document is completed, similarity search is flagged unavailable.

Idempotency
───────────
  Vector ids are <document_id>_chunk_<n>; a re-run overwrites.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from openai import AsyncOpenAI

from docproc.extraction.models import ExtractedDocument
from docproc.processing.chunking import ChunkResult, PagedChunker
from docproc.resilience.circuit_breaker import CircuitBreakerRegistry
from docproc.resilience.retry import (
    EMBEDDINGS_POLICY,
    VECTOR_INDEX_POLICY,
    RetryExecutor,
)
from docproc.vectorstore.base import VectorIndexBase, VectorRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_INPUT_CHARS = 8000      # ≈ 2K tokens, well inside the model's 8191 limit

# Document metadata keys written by the pipeline itself; never copied to vectors
_MARKER_PREFIX = "embeddings_"


@dataclass
class EmbeddingOutcome:
    skipped:        bool
    error:          str | None = None
    chunks_indexed: int = 0
    total_chunks:   int = 0
    elapsed_ms:     float = 0.0


# ---------------------------------------------------------------------------
# OpenAI embedder
# ---------------------------------------------------------------------------

class OpenAIEmbedder:
    """One text in, one vector out.  Uses openai.AsyncOpenAI for async I/O."""

    def __init__(
        self,
        model:      str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key:    str = "",
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self.model       = model
        self._dimensions = dimensions
        self._client     = client or AsyncOpenAI(api_key=api_key or None)

    async def embed(self, text: str) -> list[float]:
        kwargs: dict[str, Any] = {"model": self.model, "input": [text]}
        # dimensions param only works for text-embedding-3-* models
        if self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions
        response = await self._client.embeddings.create(**kwargs)
        return response.data[0].embedding


def prepare_input(text: str, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Collapse newlines and cap length before sending text to the model."""
    return " ".join(text.split("\n")).strip()[:max_chars]


def _vector_safe(value: Any) -> bool:
    if isinstance(value, (str, int, float, bool)):
        return True
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def business_fields(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Document metadata that is safe to attach to every vector."""
    return {
        k: v
        for k, v in (metadata or {}).items()
        if not k.startswith(_MARKER_PREFIX) and v is not None and _vector_safe(v)
    }


# ---------------------------------------------------------------------------
# Core embedding pipeline
# ---------------------------------------------------------------------------

class EmbeddingPipeline:
    """
    Usage:
        pipeline = EmbeddingPipeline(embedder, index, breakers, executor)
        outcome  = await pipeline.run(document_id, extracted, doc.doc_metadata)
        if outcome.skipped:
            ...
    """

    def __init__(
        self,
        embedder:        OpenAIEmbedder,
        index:           VectorIndexBase,
        breakers:        CircuitBreakerRegistry,
        executor:        RetryExecutor,
        chunker:         PagedChunker | None = None,
        max_input_chars: int = MAX_INPUT_CHARS,
    ) -> None:
        self._embedder        = embedder
        self._index           = index
        self._breakers        = breakers
        self._executor        = executor
        self._chunker         = chunker or PagedChunker()
        self._max_input_chars = max_input_chars

    async def run(
        self,
        document_id:       str,
        extracted:         ExtractedDocument,
        business_metadata: dict[str, Any] | None = None,
    ) -> EmbeddingOutcome:
        t0      = time.monotonic()
        chunks  = self._chunker.chunk(document_id, extracted)
        extra   = business_fields(business_metadata)
        indexed = 0

        logger.info(
            "EmbeddingPipeline | doc=%s chunks=%d model=%s",
            document_id, len(chunks), self._embedder.model,
        )

        try:
            for chunk in chunks:
                await self._index_chunk(chunk, extra)
                indexed += 1
        except Exception as exc:
            elapsed_ms = (time.monotonic() - t0) * 1000
            logger.error(
                "EmbeddingPipeline failed | doc=%s indexed=%d/%d error=%s",
                document_id, indexed, len(chunks), exc,
            )
            return EmbeddingOutcome(
                skipped=True,
                error=str(exc) or type(exc).__name__,
                chunks_indexed=indexed,
                total_chunks=len(chunks),
                elapsed_ms=elapsed_ms,
            )

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "EmbeddingPipeline done | doc=%s vectors=%d elapsed_ms=%.0f",
            document_id, indexed, elapsed_ms,
        )
        return EmbeddingOutcome(
            skipped=False,
            chunks_indexed=indexed,
            total_chunks=len(chunks),
            elapsed_ms=elapsed_ms,
        )

    async def _index_chunk(self, chunk: ChunkResult, extra: dict[str, Any]) -> None:
        text = prepare_input(chunk.text, self._max_input_chars)

        embedded = await self._breakers.get("embeddings").run(
            lambda: self._embedder.embed(text), EMBEDDINGS_POLICY, self._executor,
        )
        vector = embedded.unwrap()

        record = VectorRecord(
            id=chunk.chunk_id,
            vector=vector,
            metadata={
                **extra,
                "document_id":     chunk.document_id,
                "chunk_index":     chunk.chunk_index,
                "page_number":     chunk.page_number,
                "text":            chunk.text,
                "embedding_model": self._embedder.model,
                "indexed_at":      datetime.now(timezone.utc).isoformat(),
            },
        )

        upserted = await self._breakers.get("vector_index").run(
            lambda: self._index.upsert([record]), VECTOR_INDEX_POLICY, self._executor,
        )
        upserted.unwrap()
