"""
Document-Processing Orchestrator
════════════════════════════════

tick() is invoked on a fixed interval (Celery beat or the cron endpoint).
Each call performs at most one state transition for at most one job and
returns a TickResult.  Nothing is carried in memory between calls; the
job row is the state machine.

Per-job flow
────────────
  processing_method = null / sync
      download original → AnalyzeDocument
        ok                     → persist, embed, completed
        capacity exceeded      → method = batch, come back next tick
        other error            → retry policy

  processing_method = batch, no operation id
      stage to S3 → StartDocumentAnalysis → store operation id

  processing_method = batch, operation id set
      too old                  → permanent failure → retry policy
      poll: RUNNING            → nothing to do
            SUCCEEDED + output → collect, merge, persist, embed, completed,
                                 clean up staging
            FAILED             → permanent failure → retry policy

Retry policy
────────────
  attempts < max_attempts  → job queued again, document queued with
                             processing_error; processing_method kept.
                             Permanent batch failures also drop the
                             operation id so the next attempt resubmits.
  otherwise                → job failed, document error.

Embedding failure after extraction is a degraded success: the document is
completed with metadata.embeddings_skipped = true.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from docproc.core.exceptions import (
    CapacityExceededError,
    LeaseLostError,
    PermanentExtractionError,
)
from docproc.extraction.client import BatchState, ExtractionClient
from docproc.extraction.merger import ResultMerger
from docproc.extraction.models import ExtractedDocument, infer_field_type
from docproc.jobs.store import ClaimedJob, JobStore, StatusEvent
from docproc.models.documents import Document
from docproc.processing.embeddings import EmbeddingPipeline
from docproc.resilience.circuit_breaker import CircuitBreakerRegistry
from docproc.resilience.retry import BLOB_STORE_POLICY, EXTRACTION_POLICY, RetryExecutor
from docproc.storage.s3 import S3BlobStore
from docproc.storage.staging import BlobStagingArea

logger = logging.getLogger(__name__)

DEFAULT_BATCH_MAX_AGE_SECONDS = 6 * 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickResult:
    action:             str                 # idle | completed | switched_to_batch | batch_submitted
                                            # | batch_running | requeued | failed
    job_id:             str | None = None
    document_id:        str | None = None
    job_status:         str | None = None
    processing_method:  str | None = None
    attempts:           int | None = None
    max_attempts:       int | None = None
    operation_id:       str | None = None
    page_count:         int | None = None
    embeddings_skipped: bool | None = None
    error:              str | None = None
    message:            str | None = None

    @property
    def is_failure(self) -> bool:
        return self.action == "failed"


class Orchestrator:
    def __init__(
        self,
        store:         JobStore,
        originals:     S3BlobStore,
        staging:       BlobStagingArea,
        extraction:    ExtractionClient,
        merger:        ResultMerger,
        embeddings:    EmbeddingPipeline,
        breakers:      CircuitBreakerRegistry,
        executor:      RetryExecutor,
        lease_seconds: int = 300,
        batch_max_age_seconds: int = DEFAULT_BATCH_MAX_AGE_SECONDS,
        clock:         Callable[[], datetime] | None = None,
    ) -> None:
        self._store         = store
        self._originals     = originals
        self._staging       = staging
        self._extraction    = extraction
        self._merger        = merger
        self._embeddings    = embeddings
        self._breakers      = breakers
        self._executor      = executor
        self._lease_seconds = lease_seconds
        self._batch_max_age = timedelta(seconds=batch_max_age_seconds)
        self._now           = clock or _utcnow

    # read-only views for the operations API
    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def extraction(self) -> ExtractionClient:
        return self._extraction

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult:
        job = await self._store.claim(self._lease_seconds, now=self._now())
        if job is None:
            return TickResult(action="idle", message="No jobs to process")

        try:
            return await self._advance(job)
        except LeaseLostError:
            logger.warning("Lease lost mid-tick | job=%s", job.id)
            return TickResult(
                action="idle",
                job_id=str(job.id),
                document_id=str(job.document_id),
                message="Job taken over by another invocation",
            )

    async def _advance(self, job: ClaimedJob) -> TickResult:
        try:
            doc = await self._store.get_document(job.document_id)
            if job.processing_method == "batch":
                return await self._advance_batch(job, doc)
            return await self._run_sync(job, doc)
        except LeaseLostError:
            raise
        except Exception as exc:
            logger.error(
                "Job attempt failed | job=%s attempt=%d/%d error=%s",
                job.id, job.attempts, job.max_attempts, exc,
            )
            return await self._handle_failure(job, exc)

    # ------------------------------------------------------------------
    # Sync path
    # ------------------------------------------------------------------

    async def _run_sync(self, job: ClaimedJob, doc: Document) -> TickResult:
        job = await self._store.write(
            job,
            document_values={"status": "processing"},
            events=(StatusEvent("processing", 10, "Starting document processing"),),
            now=self._now(),
        )
        data = await self._download(doc)

        result = await self._breakers.get("extraction").run(
            lambda: self._extraction.extract_sync(data, doc.content_type),
            EXTRACTION_POLICY,
            self._executor,
        )
        if not result.success and isinstance(result.error, CapacityExceededError):
            job = await self._store.write(
                job,
                job_values={"processing_method": "batch"},
                events=(StatusEvent(
                    "processing", 50,
                    "Document exceeds synchronous limits; switching to batch processing",
                ),),
                release=True,
                now=self._now(),
            )
            logger.info("Switched to batch | job=%s doc=%s", job.id, doc.id)
            return self._result("switched_to_batch", job, message="Large document rerouted to batch processing")

        extracted = result.unwrap()
        job = await self._store.write(
            job,
            job_values={"processing_method": "sync"},
            events=(StatusEvent("processing", 40, "Text extraction completed"),),
            now=self._now(),
        )
        return await self._complete(job, doc, extracted)

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    async def _advance_batch(self, job: ClaimedJob, doc: Document) -> TickResult:
        if job.batch_operation_id is None:
            return await self._submit_batch(job, doc)

        submitted_at = job.batch_submitted_at
        if submitted_at is not None and self._now() - submitted_at > self._batch_max_age:
            raise PermanentExtractionError(
                f"Batch operation {job.batch_operation_id} exceeded max age "
                f"({int(self._batch_max_age.total_seconds())}s)"
            )

        status = (await self._breakers.get("extraction").run(
            lambda: self._extraction.get_batch_status(job.batch_operation_id),
            EXTRACTION_POLICY,
            self._executor,
        )).unwrap()

        if status.state is BatchState.FAILED:
            raise PermanentExtractionError(status.message or "Batch operation failed")

        job_key = str(job.id)
        if status.state is BatchState.SUCCEEDED:
            ready = (await self._executor.execute(
                lambda: self._staging.output_ready(job_key), BLOB_STORE_POLICY,
            )).unwrap()
            if ready:
                return await self._collect_batch(job, doc, status.page_count)
            logger.info("Batch reported done, output not visible yet | job=%s", job.id)

        job = await self._store.write(job, release=True, now=self._now())
        return self._result("batch_running", job, message="Batch processing still running")

    async def _submit_batch(self, job: ClaimedJob, doc: Document) -> TickResult:
        job_key = str(job.id)
        job = await self._store.write(
            job,
            document_values={"status": "processing"},
            events=(StatusEvent("processing", 50, "Uploading for batch processing"),),
            now=self._now(),
        )
        data = await self._download(doc)

        staged = (await self._executor.execute(
            lambda: self._staging.stage(job_key, data, doc.filename), BLOB_STORE_POLICY,
        )).unwrap()

        # one token per attempt: a FAILED operation must not be handed back on retry
        request_token = f"{job_key}-a{job.attempts}"
        operation_id = (await self._breakers.get("extraction").run(
            lambda: self._extraction.start_batch(staged, request_token),
            EXTRACTION_POLICY,
            self._executor,
        )).unwrap()

        metadata = {
            **job.job_metadata,
            "input_prefix":  staged.input_prefix,
            "output_prefix": staged.output_prefix,
            "input_key":     staged.key,
            "processor":     self._extraction.processor_ref,
        }
        job = await self._store.write(
            job,
            job_values={
                "batch_operation_id": operation_id,
                "batch_submitted_at": self._now(),
                "job_metadata":       metadata,
            },
            events=(StatusEvent("processing", 60, "Batch processing initiated"),),
            release=True,
            now=self._now(),
        )
        logger.info("Batch submitted | job=%s operation=%s", job.id, operation_id)
        return self._result("batch_submitted", job, message="Batch processing initiated")

    async def _collect_batch(
        self,
        job:            ClaimedJob,
        doc:            Document,
        reported_pages: int | None = None,
    ) -> TickResult:
        job_key = str(job.id)
        shards = (await self._executor.execute(
            lambda: self._staging.collect(job_key), BLOB_STORE_POLICY,
        )).unwrap()
        extracted = self._merger.merge(shards, expected_pages=reported_pages)

        metadata = {**job.job_metadata, "shard_count": len(shards)}
        if reported_pages is not None:
            metadata["reported_pages"] = reported_pages
        job = await self._store.write(
            job,
            job_values={"job_metadata": metadata},
            now=self._now(),
        )
        result = await self._complete(job, doc, extracted)
        await self._staging.cleanup(job_key)
        return result

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _complete(self, job: ClaimedJob, doc: Document, extracted: ExtractedDocument) -> TickResult:
        job = await self._store.write(
            job,
            document_values={
                "extracted_text":   extracted.text,
                "extracted_fields": extracted.to_fields_json(),
                "page_count":       extracted.page_count,
            },
            fields=_field_rows(extracted),
            events=(
                StatusEvent("processing", 60, "Extraction results saved"),
                StatusEvent("processing", 80, "Generating embeddings"),
            ),
            now=self._now(),
        )

        outcome = await self._embeddings.run(str(doc.id), extracted, doc.doc_metadata)

        metadata = dict(doc.doc_metadata or {})
        if outcome.skipped:
            metadata["embeddings_skipped"] = True
            metadata["embeddings_error"]   = outcome.error
            message = "Document processed (similarity search unavailable)"
        else:
            metadata.pop("embeddings_skipped", None)
            metadata.pop("embeddings_error", None)
            message = "Document processing completed successfully"

        job = await self._store.write(
            job,
            job_values={"status": "completed", "completed_at": self._now(), "error_message": None},
            document_values={"status": "completed", "processing_error": None, "doc_metadata": metadata},
            events=(StatusEvent("completed", 100, message),),
            release=True,
            now=self._now(),
        )
        logger.info(
            "Job completed | job=%s doc=%s method=%s pages=%d embeddings_skipped=%s",
            job.id, doc.id, job.processing_method, extracted.page_count, outcome.skipped,
        )
        return self._result(
            "completed", job,
            page_count=extracted.page_count,
            embeddings_skipped=outcome.skipped,
            error=outcome.error,
            message=message,
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, job: ClaimedJob, exc: Exception) -> TickResult:
        error = str(exc) or type(exc).__name__
        job_values: dict[str, Any] = {"error_message": error}

        permanent_batch = isinstance(exc, PermanentExtractionError) and job.batch_operation_id is not None
        if isinstance(exc, PermanentExtractionError):
            job_values.update(batch_operation_id=None, batch_submitted_at=None)

        if job.attempts < job.max_attempts:
            job_values.update(status="queued", completed_at=None)
            job = await self._store.write(
                job,
                job_values=job_values,
                document_values={"status": "queued", "processing_error": error},
                events=(StatusEvent(
                    "queued", 0,
                    f"Retrying after error (attempt {job.attempts}/{job.max_attempts})",
                    error,
                ),),
                release=True,
                now=self._now(),
            )
            action = "requeued"
            message = "Job failed, will retry"
        else:
            job_values.update(status="failed", completed_at=self._now())
            job = await self._store.write(
                job,
                job_values=job_values,
                document_values={"status": "error", "processing_error": error},
                events=(StatusEvent("error", 0, "Processing failed", error),),
                release=True,
                now=self._now(),
            )
            action = "failed"
            message = "Job failed permanently"
            logger.error("Job failed permanently | job=%s error=%s", job.id, error)

        if permanent_batch:
            await self._staging.cleanup(str(job.id))

        return self._result(action, job, error=error, message=message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _download(self, doc: Document) -> bytes:
        return (await self._executor.execute(
            lambda: self._originals.get_object(doc.storage_path), BLOB_STORE_POLICY,
        )).unwrap()

    @staticmethod
    def _result(action: str, job: ClaimedJob, **kwargs: Any) -> TickResult:
        return TickResult(
            action=action,
            job_id=str(job.id),
            document_id=str(job.document_id),
            job_status=job.status,
            processing_method=job.processing_method,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            operation_id=job.batch_operation_id,
            **kwargs,
        )


def _field_rows(extracted: ExtractedDocument) -> list[dict[str, Any]]:
    return [
        {
            "field_name":   e.type,
            "field_value":  e.text,
            "field_type":   infer_field_type(e.type),
            "confidence":   e.confidence,
            "page_number":  e.page_number,
            "bounding_box": e.bounding_box,
        }
        for e in extracted.entities
        if e.type and e.text
    ]
