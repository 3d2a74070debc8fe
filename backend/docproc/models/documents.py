"""
SQLAlchemy ORM Models — Documents, Jobs, Status Events, Extracted Fields

SQLAlchemy 2.x mapped classes for full async support.  Column types are
portable (generic Uuid, JSON with a JSONB variant on PostgreSQL) so the
same models run against SQLite in tests.

Tables:
  documents          one row per uploaded file
  document_jobs      one processing job per document (the orchestrator's queue)
  processing_status  append-only progress log, read by status endpoints
  extracted_fields   key/value pairs found by extraction
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    A single uploaded PDF and everything extraction produced for it.

    State machine (status column):
        uploading  — upload in flight, no job yet
        queued     — job created, waiting for (or between) orchestrator attempts
        processing — an attempt is in progress (sync call or batch operation)
        completed  — text persisted; embeddings may be skipped (see metadata)
        error      — job exhausted its attempts (see processing_error)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploading', 'queued', 'processing', 'completed', 'error')",
            name="documents_status_check",
        ),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # File reference
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    content_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="application/pdf",
        server_default="application/pdf",
    )
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 key of the uploaded original",
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="queued",
        server_default="queued",
    )

    # Extraction output: null until an attempt succeeds
    extracted_text:   Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    extracted_fields: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    page_count:       Mapped[Optional[int]]  = mapped_column(Integer, nullable=True)

    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
        comment="Business metadata; embeddings_skipped / embeddings_error live here too",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} status={self.status} file={self.filename!r}>"


# ---------------------------------------------------------------------------
# DocumentJob model: document_jobs
# ---------------------------------------------------------------------------

class DocumentJob(Base):
    """
    The orchestrator's unit of work.

    version is bumped on every write; claims and in-tick writes are
    conditional on it (compare-and-swap).  lease_expires_at is set at claim
    and cleared by the tick's final write; once it passes, the job may be
    claimed by another invocation.
    """

    __tablename__ = "document_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="document_jobs_status_check",
        ),
        CheckConstraint(
            "processing_method IS NULL OR processing_method IN ('sync', 'batch')",
            name="document_jobs_method_check",
        ),
        CheckConstraint("attempts <= max_attempts", name="document_jobs_attempts_check"),
        Index("idx_document_jobs_claim", "status", "priority", "created_at"),
        Index("idx_document_jobs_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(Text, nullable=False, default="queued", server_default="queued")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")

    processing_method:  Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    batch_operation_id: Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    batch_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    job_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        comment="Staging prefixes, processor reference, shard count",
    )

    # Concurrency control
    version:          Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DocumentJob id={self.id} doc={self.document_id} status={self.status} "
            f"method={self.processing_method} attempts={self.attempts}/{self.max_attempts}>"
        )


# ---------------------------------------------------------------------------
# ProcessingStatusEvent model: processing_status (append-only)
# ---------------------------------------------------------------------------

class ProcessingStatusEvent(Base):
    __tablename__ = "processing_status"
    __table_args__ = (
        CheckConstraint("progress BETWEEN 0 AND 100", name="processing_status_progress_check"),
        Index("idx_processing_status_document", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    status:   Mapped[str]           = mapped_column(Text, nullable=False)
    progress: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    message:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ProcessingStatusEvent doc={self.document_id} status={self.status} progress={self.progress}>"


# ---------------------------------------------------------------------------
# ExtractedField model: extracted_fields
# ---------------------------------------------------------------------------

class ExtractedField(Base):
    """One key/value pair; rows for a document are replaced on every persist."""

    __tablename__ = "extracted_fields"
    __table_args__ = (
        CheckConstraint(
            "field_type IN ('text', 'number', 'date', 'checkbox')",
            name="extracted_fields_type_check",
        ),
        Index("idx_extracted_fields_document", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    field_name:   Mapped[str]              = mapped_column(Text, nullable=False)
    field_value:  Mapped[Optional[str]]    = mapped_column(Text, nullable=True)
    field_type:   Mapped[str]              = mapped_column(Text, nullable=False, default="text")
    confidence:   Mapped[Optional[float]]  = mapped_column(Float, nullable=True)
    page_number:  Mapped[Optional[int]]    = mapped_column(Integer, nullable=True)
    bounding_box: Mapped[Optional[dict]]   = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
