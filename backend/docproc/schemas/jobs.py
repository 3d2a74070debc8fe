"""
Job Processing — Pydantic Response Schemas

Covers the scheduled trigger (GET|POST /api/v1/cron/process-jobs):
  - TickResponse: what one orchestrator tick did
  - ErrorResponse: uniform body for 401 / 502 / 503 / 504 / unhandled 500
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from docproc.jobs.orchestrator import TickResult


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    """Maps to document_jobs.status."""
    QUEUED     = "queued"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class TickAction(str, Enum):
    IDLE              = "idle"
    COMPLETED         = "completed"
    SWITCHED_TO_BATCH = "switched_to_batch"
    BATCH_SUBMITTED   = "batch_submitted"
    BATCH_RUNNING     = "batch_running"
    REQUEUED          = "requeued"
    FAILED            = "failed"


# ---------------------------------------------------------------------------
# Tick response
# ---------------------------------------------------------------------------

class TickResponse(BaseModel):
    """Result of one orchestrator tick."""
    success:            bool       = Field(..., description="False only when the job failed permanently")
    action:             TickAction
    message:            str | None = None
    job_id:             str | None = None
    document_id:        str | None = None
    job_status:         JobStatus | None = None
    processing_method:  str | None = Field(None, description="sync | batch")
    attempts:           int | None = None
    max_attempts:       int | None = None
    operation_id:       str | None = Field(None, description="Batch extraction operation id")
    page_count:         int | None = None
    embeddings_skipped: bool | None = None
    error:              str | None = None

    @classmethod
    def from_result(cls, result: TickResult) -> "TickResponse":
        return cls(
            success=not result.is_failure,
            action=TickAction(result.action),
            message=result.message,
            job_id=result.job_id,
            document_id=result.document_id,
            job_status=JobStatus(result.job_status) if result.job_status else None,
            processing_method=result.processing_method,
            attempts=result.attempts,
            max_attempts=result.max_attempts,
            operation_id=result.operation_id,
            page_count=result.page_count,
            embeddings_skipped=result.embeddings_skipped,
            error=result.error,
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error, may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
