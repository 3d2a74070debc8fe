"""
Operations — Pydantic Response Schemas

Covers the read-only operational surface (GET /api/v1/ops/...):
  - PendingBatchListResponse: jobs waiting on a batch extraction operation
  - BatchStatusResponse: live status of one operation
  - BreakerListResponse: circuit breaker state in this process
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from docproc.extraction.client import BatchStatus
from docproc.jobs.store import PendingBatch
from docproc.resilience.circuit_breaker import BreakerSnapshot


class PendingBatchResponse(BaseModel):
    job_id:          str
    document_id:     str
    filename:        str
    document_status: str
    job_status:      str
    operation_id:    str
    submitted_at:    datetime | None = None
    attempts:        int
    max_attempts:    int
    output_prefix:   str | None = Field(None, description="Staging prefix the operation writes to")

    @classmethod
    def from_pending(cls, pending: PendingBatch) -> "PendingBatchResponse":
        return cls(
            job_id=str(pending.job_id),
            document_id=str(pending.document_id),
            filename=pending.filename,
            document_status=pending.document_status,
            job_status=pending.job_status,
            operation_id=pending.operation_id,
            submitted_at=pending.submitted_at,
            attempts=pending.attempts,
            max_attempts=pending.max_attempts,
            output_prefix=pending.job_metadata.get("output_prefix"),
        )


class PendingBatchListResponse(BaseModel):
    pending_operations: int
    operations:         list[PendingBatchResponse]


class BatchStatusResponse(BaseModel):
    operation_id: str
    state:        str            = Field(..., description="running | succeeded | failed")
    message:      str | None     = None
    page_count:   int | None     = Field(None, description="Pages reported by the extraction service")
    job_id:       str | None     = Field(None, description="Pending job that owns the operation, if any")
    document_id:  str | None     = None

    @classmethod
    def from_status(
        cls,
        operation_id: str,
        status:       BatchStatus,
        owner:        PendingBatch | None = None,
    ) -> "BatchStatusResponse":
        return cls(
            operation_id=operation_id,
            state=status.state.value,
            message=status.message,
            page_count=status.page_count,
            job_id=str(owner.job_id) if owner else None,
            document_id=str(owner.document_id) if owner else None,
        )


class BreakerResponse(BaseModel):
    name:        str
    state:       str            = Field(..., description="closed | open | half_open")
    failures:    int
    retry_after: float          = Field(0.0, description="Seconds until an open breaker lets a trial call through")

    @classmethod
    def from_snapshot(cls, snap: BreakerSnapshot) -> "BreakerResponse":
        return cls(
            name=snap.name,
            state=snap.state.value,
            failures=snap.failures,
            retry_after=round(snap.retry_after, 1),
        )


class BreakerListResponse(BaseModel):
    breakers: list[BreakerResponse]
