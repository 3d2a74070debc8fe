"""
Job Store — durable state for the orchestrator

All cross-tick state lives here.  Two primitives carry the concurrency
guarantees:

  claim()   picks the highest-priority, oldest eligible job and takes it
            with a single conditional UPDATE guarded by `version`
            (compare-and-swap) that also sets a lease.  Losing the race
            just moves on to the next candidate.

            A processing job is claimable again once its lease is clear or
            expired.  Cleared means the last tick released it on purpose
            (batch polling) and costs nothing; expired means that tick died
            mid-step, so the re-claim counts as a new attempt and a job
            with none left is failed.

  write()   every later write in the same tick is fenced by the version the
            tick holds: UPDATE ... WHERE id = :id AND version = :v.  A write
            that matches nothing raises LeaseLostError and rolls back, so a
            tick whose lease expired can never clobber a newer owner.  Every
            non-final write renews the lease, so a long tick stays owned
            while it keeps making progress.

Document updates, extracted-field replacement and status events ride in
the same transaction as the fenced job update.

Timestamps are passed in from Python (never NOW() in SQL) so the same
statements run on PostgreSQL and SQLite.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docproc.core.exceptions import DocumentNotFoundError, JobStoreError, LeaseLostError
from docproc.models.documents import (
    Document,
    DocumentJob,
    ExtractedField,
    ProcessingStatusEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300
_CANDIDATE_LIMIT      = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClaimedJob:
    """Immutable view of a job row as held by the current tick."""
    id:                 uuid.UUID
    document_id:        uuid.UUID
    status:             str
    attempts:           int
    max_attempts:       int
    version:            int
    priority:           int = 0
    processing_method:  Optional[str] = None
    batch_operation_id: Optional[str] = None
    batch_submitted_at: Optional[datetime] = None
    error_message:      Optional[str] = None
    job_metadata:       dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: DocumentJob) -> "ClaimedJob":
        return cls(
            id=row.id,
            document_id=row.document_id,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            version=row.version,
            priority=row.priority,
            processing_method=row.processing_method,
            batch_operation_id=row.batch_operation_id,
            batch_submitted_at=_as_utc(row.batch_submitted_at),
            error_message=row.error_message,
            job_metadata=dict(row.job_metadata or {}),
        )


@dataclass(frozen=True)
class StatusEvent:
    status:   str
    progress: int
    message:  str | None = None
    error:    str | None = None


@dataclass(frozen=True)
class PendingBatch:
    """A job waiting on an external batch operation."""
    job_id:             uuid.UUID
    document_id:        uuid.UUID
    filename:           str
    document_status:    str
    job_status:         str
    operation_id:       str
    submitted_at:       Optional[datetime]
    attempts:           int
    max_attempts:       int
    job_metadata:       dict = field(default_factory=dict)


_SNAPSHOT_FIELDS = frozenset(f.name for f in dataclasses.fields(ClaimedJob))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class JobStore:
    def __init__(
        self,
        session_factory:     async_sessionmaker[AsyncSession],
        lease_seconds:       int = DEFAULT_LEASE_SECONDS,
        default_max_attempts: int = 3,
    ) -> None:
        self._session_factory      = session_factory
        self._lease_seconds        = lease_seconds
        self._default_max_attempts = default_max_attempts

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        document_id:  uuid.UUID,
        priority:     int = 0,
        max_attempts: int | None = None,
    ) -> uuid.UUID:
        """Create a job for an uploaded document and mark the document queued."""
        now    = utcnow()
        job_id = uuid.uuid4()
        async with self._session_factory() as session, session.begin():
            doc = await session.get(Document, document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            session.add(DocumentJob(
                id=job_id,
                document_id=document_id,
                status="queued",
                priority=priority,
                attempts=0,
                max_attempts=max_attempts or self._default_max_attempts,
                job_metadata={},
                version=0,
                created_at=now,
            ))
            doc.status     = "queued"
            doc.updated_at = now
            session.add(ProcessingStatusEvent(
                document_id=document_id, status="queued", progress=0,
                message="Queued for processing", created_at=now,
            ))

        logger.info("Job enqueued | job=%s doc=%s priority=%d", job_id, document_id, priority)
        return job_id

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(
        self,
        lease_seconds: int | None = None,
        now:           datetime | None = None,
    ) -> ClaimedJob | None:
        now         = now or utcnow()
        lease_until = now + timedelta(seconds=lease_seconds or self._lease_seconds)

        async with self._session_factory() as session:
            candidates = (await session.execute(
                select(
                    DocumentJob.id,
                    DocumentJob.document_id,
                    DocumentJob.status,
                    DocumentJob.attempts,
                    DocumentJob.max_attempts,
                    DocumentJob.version,
                    DocumentJob.error_message,
                    DocumentJob.lease_expires_at,
                )
                .where(DocumentJob.status.in_(("queued", "processing")))
                .where(or_(
                    DocumentJob.lease_expires_at.is_(None),
                    DocumentJob.lease_expires_at <= now,
                ))
                .order_by(DocumentJob.priority.desc(), DocumentJob.created_at.asc())
                .limit(_CANDIDATE_LIMIT)
            )).all()

        for row in candidates:
            # an expired (not released) lease means the previous tick died
            abandoned = row.status == "processing" and row.lease_expires_at is not None
            counts_attempt = row.status == "queued" or abandoned

            if counts_attempt and row.attempts >= row.max_attempts:
                await self._fail_exhausted(row, now, abandoned=abandoned)
                continue

            values: dict[str, Any] = {
                "version":          row.version + 1,
                "lease_expires_at": lease_until,
            }
            if counts_attempt:
                values["attempts"] = row.attempts + 1
            if row.status == "queued":
                values.update(
                    status="processing",
                    started_at=now,
                    completed_at=None,
                )
            elif abandoned:
                logger.warning(
                    "Job lease expired, re-claiming as a new attempt | job=%s attempts=%d/%d",
                    row.id, row.attempts + 1, row.max_attempts,
                )

            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(DocumentJob)
                    .where(DocumentJob.id == row.id, DocumentJob.version == row.version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.debug("Claim lost race | job=%s version=%d", row.id, row.version)
                    continue
                claimed = await session.get(DocumentJob, row.id)
                if claimed is None:
                    raise JobStoreError(f"Job {row.id} vanished after claim")
                snapshot = ClaimedJob.from_row(claimed)

            logger.info(
                "Job claimed | job=%s doc=%s status=%s attempts=%d/%d method=%s",
                snapshot.id, snapshot.document_id, row.status,
                snapshot.attempts, snapshot.max_attempts, snapshot.processing_method,
            )
            return snapshot

        return None

    async def _fail_exhausted(self, row: Any, now: datetime, abandoned: bool = False) -> None:
        """A job with no attempts left is failed instead of claimed."""
        if abandoned:
            error = "Processing abandoned (lease expired); maximum attempts reached"
        else:
            error = row.error_message or "Maximum attempts reached"
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(DocumentJob)
                .where(DocumentJob.id == row.id, DocumentJob.version == row.version)
                .values(
                    status="failed",
                    completed_at=now,
                    error_message=error,
                    lease_expires_at=None,
                    version=row.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return
            await session.execute(
                update(Document)
                .where(Document.id == row.document_id)
                .values(status="error", processing_error=error, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.add(ProcessingStatusEvent(
                document_id=row.document_id, status="error", progress=0,
                message="Processing failed", error=error, created_at=now,
            ))
        logger.warning("Job failed at claim (attempts exhausted) | job=%s abandoned=%s", row.id, abandoned)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_document(self, document_id: uuid.UUID) -> Document:
        async with self._session_factory() as session:
            doc = await session.get(Document, document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    async def list_pending_batches(self, operation_id: str | None = None) -> list[PendingBatch]:
        """Jobs in flight on the batch path, oldest submission first."""
        stmt = (
            select(DocumentJob, Document.filename, Document.status)
            .join(Document, Document.id == DocumentJob.document_id)
            .where(DocumentJob.processing_method == "batch")
            .where(DocumentJob.batch_operation_id.is_not(None))
            .where(DocumentJob.status.in_(("queued", "processing")))
            .order_by(DocumentJob.batch_submitted_at.asc())
        )
        if operation_id is not None:
            stmt = stmt.where(DocumentJob.batch_operation_id == operation_id)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            PendingBatch(
                job_id=job.id,
                document_id=job.document_id,
                filename=filename,
                document_status=doc_status,
                job_status=job.status,
                operation_id=job.batch_operation_id,
                submitted_at=_as_utc(job.batch_submitted_at),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                job_metadata=dict(job.job_metadata or {}),
            )
            for job, filename, doc_status in rows
        ]

    # ------------------------------------------------------------------
    # Fenced write
    # ------------------------------------------------------------------

    async def write(
        self,
        job:             ClaimedJob,
        job_values:      dict[str, Any] | None = None,
        document_values: dict[str, Any] | None = None,
        fields:          list[dict[str, Any]] | None = None,
        events:          tuple[StatusEvent, ...] = (),
        release:         bool = False,
        now:             datetime | None = None,
    ) -> ClaimedJob:
        """
        Apply one atomic step of the tick, fenced by `job.version`.

        job_values       columns to set on the job row
        document_values  columns to set on the job's document
        fields           replacement extracted_fields rows (delete + insert)
        events           status events to append, in order
        release          clear the lease (the tick's final write); any other
                         write renews it for another lease period

        Returns the job view with the new version.  Raises LeaseLostError
        when another invocation has taken the job in the meantime.
        """
        now    = now or utcnow()
        values = dict(job_values or {})
        values["version"] = job.version + 1
        if release:
            values["lease_expires_at"] = None
        else:
            values["lease_expires_at"] = now + timedelta(seconds=self._lease_seconds)

        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(DocumentJob)
                .where(DocumentJob.id == job.id, DocumentJob.version == job.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise LeaseLostError(job.id)

            if document_values:
                await session.execute(
                    update(Document)
                    .where(Document.id == job.document_id)
                    .values({**document_values, "updated_at": now})
                    .execution_options(synchronize_session=False)
                )

            if fields is not None:
                await session.execute(
                    delete(ExtractedField)
                    .where(ExtractedField.document_id == job.document_id)
                    .execution_options(synchronize_session=False)
                )
                if fields:
                    await session.execute(
                        insert(ExtractedField),
                        [
                            {"id": uuid.uuid4(), "document_id": job.document_id, "created_at": now, **f}
                            for f in fields
                        ],
                    )

            for event in events:
                session.add(ProcessingStatusEvent(
                    document_id=job.document_id,
                    status=event.status,
                    progress=event.progress,
                    message=event.message,
                    error=event.error,
                    created_at=now,
                ))

        changes = {k: v for k, v in values.items() if k in _SNAPSHOT_FIELDS}
        return dataclasses.replace(job, **changes)
