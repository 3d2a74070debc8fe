"""
Error taxonomy for the document-processing pipeline.

Only the orchestrator decides whether an error is terminal for a job; the
lower layers either return typed results or raise one of these.
"""

from __future__ import annotations


class DocProcError(Exception):
    """Base class for all pipeline errors."""


class CapacityExceededError(DocProcError):
    """
    The synchronous extraction call refused the document as too large.

    A routing signal, not a failure: never retried, never counted by a
    circuit breaker, never consumes a job attempt.
    """


class PermanentExtractionError(DocProcError):
    """A batch extraction attempt cannot succeed (FAILED, too old, unusable output)."""


class MergeError(PermanentExtractionError):
    """No result shard produced usable document data."""


class CircuitOpenError(DocProcError):
    """Call rejected because the dependency's circuit breaker is open."""

    def __init__(self, dependency: str, retry_after: float = 0.0) -> None:
        self.dependency  = dependency
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open for '{dependency}' (retry in {retry_after:.0f}s)"
        )


class JobStoreError(DocProcError):
    """Persistence failure in the job store."""


class LeaseLostError(JobStoreError):
    """A fenced write matched no row: another invocation owns the job now."""

    def __init__(self, job_id: object) -> None:
        self.job_id = job_id
        super().__init__(f"Lease lost for job {job_id}")


class DocumentNotFoundError(DocProcError):
    """The job references a document row that does not exist."""

    def __init__(self, document_id: object) -> None:
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")
