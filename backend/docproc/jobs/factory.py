"""
Process-level wiring for the orchestrator.

Breakers must outlive a single tick (their whole point is remembering
failures), so the Orchestrator is built once per process and reused by
every trigger in that process.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import aioboto3

from docproc.core.config import Settings, get_settings
from docproc.core.exceptions import CapacityExceededError
from docproc.db.session import get_session_factory
from docproc.extraction.client import ExtractionClient
from docproc.extraction.merger import ResultMerger
from docproc.jobs.orchestrator import Orchestrator
from docproc.jobs.store import JobStore
from docproc.processing.chunking import PagedChunker
from docproc.processing.embeddings import EmbeddingPipeline, OpenAIEmbedder
from docproc.resilience.circuit_breaker import CircuitBreakerRegistry
from docproc.resilience.retry import RetryExecutor
from docproc.storage.s3 import S3BlobStore
from docproc.storage.staging import BlobStagingArea
from docproc.vectorstore.factory import get_vector_index

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> Orchestrator:
    session  = aioboto3.Session(region_name=settings.aws_region, **settings.aws_credentials)
    breakers = CircuitBreakerRegistry.from_settings(settings, ignore=(CapacityExceededError,))
    executor = RetryExecutor()

    originals = S3BlobStore(settings.s3_bucket, region=settings.aws_region, session=session)
    staging = BlobStagingArea(
        S3BlobStore(settings.resolved_staging_bucket, region=settings.aws_region, session=session),
        input_prefix=settings.staging_input_prefix,
        output_prefix=settings.staging_output_prefix,
    )

    embeddings = EmbeddingPipeline(
        embedder=OpenAIEmbedder(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
        ),
        index=get_vector_index(settings.pinecone_namespace),
        breakers=breakers,
        executor=executor,
        chunker=PagedChunker(settings.chunk_size_chars, settings.chunk_overlap_chars),
        max_input_chars=settings.embedding_max_input_chars,
    )

    orchestrator = Orchestrator(
        store=JobStore(
            get_session_factory(),
            lease_seconds=settings.job_lease_seconds,
            default_max_attempts=settings.job_max_attempts,
        ),
        originals=originals,
        staging=staging,
        extraction=ExtractionClient(
            region=settings.aws_region,
            feature_types=settings.textract_feature_types,
            capacity_codes=settings.textract_capacity_error_codes,
            session=session,
        ),
        merger=ResultMerger(),
        embeddings=embeddings,
        breakers=breakers,
        executor=executor,
        lease_seconds=settings.job_lease_seconds,
        batch_max_age_seconds=settings.batch_max_age_seconds,
    )
    logger.info(
        "Orchestrator ready | bucket=%s staging=%s index=%s",
        settings.s3_bucket, settings.resolved_staging_bucket, settings.pinecone_index_name,
    )
    return orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return build_orchestrator(get_settings())
