"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, job_store, blob_store,
                    staging, extraction, embedder, vector_index, breakers,
                    executor, clock, orchestrator, make_document, ...

Environment strategy:
  - The job store runs against a throwaway SQLite file (aiosqlite) per test;
    the models are portable so no PostgreSQL is needed.
  - S3 is an in-memory blob store with the S3BlobStore interface.
  - Textract, OpenAI and Pinecone are MagicMock/AsyncMock doubles.
  - Retry backoff never sleeps (executor gets an AsyncMock sleep).

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # API-level tests
  pytest backend/tests/unit/test_orchestrator.py
"""

from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./docproc_test.db")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("STAGING_BUCKET",        "staging-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("PINECONE_API_KEY",      "pc-test-key")
os.environ.setdefault("CRON_SECRET",           "test-cron-secret")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from docproc.core.exceptions import CapacityExceededError  # noqa: E402
from docproc.db.session import make_session_factory  # noqa: E402
from docproc.extraction.client import ExtractionClient  # noqa: E402
from docproc.extraction.merger import ResultMerger  # noqa: E402
from docproc.extraction.models import ExtractedDocument, Line, Page  # noqa: E402
from docproc.jobs.orchestrator import Orchestrator  # noqa: E402
from docproc.jobs.store import JobStore  # noqa: E402
from docproc.models.documents import (  # noqa: E402
    Base,
    Document,
    ExtractedField,
    ProcessingStatusEvent,
)
from docproc.processing.embeddings import EmbeddingPipeline, OpenAIEmbedder  # noqa: E402
from docproc.resilience.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from docproc.resilience.retry import RetryExecutor  # noqa: E402
from docproc.storage.s3 import S3Object  # noqa: E402
from docproc.storage.staging import BlobStagingArea  # noqa: E402
from docproc.vectorstore.base import VectorIndexBase  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Test doubles
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryBlobStore:
    """Dict-backed stand-in for S3BlobStore (same four calls)."""

    def __init__(self, bucket: str = "test-bucket") -> None:
        self.bucket  = bucket
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []

    async def put_object(self, key: str, body: bytes, content_type: str | None = None) -> S3Object:
        self.objects[key] = body
        return S3Object(
            key=key,
            bucket=self.bucket,
            size_bytes=len(body),
            content_type=content_type or "application/octet-stream",
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    async def get_object(self, key: str) -> bytes:
        if key not in self.objects:
            raise FileNotFoundError(f"Object not found: {key}")
        return self.objects[key]

    async def list_objects(self, prefix: str, max_keys: int | None = None) -> list[dict]:
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        if max_keys is not None:
            keys = keys[:max_keys]
        return [{"Key": k, "Size": len(self.objects[k])} for k in keys]

    async def delete_object(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)


class RecordingVectorIndex(VectorIndexBase):
    """Keeps upserted records in memory, keyed by id (upsert overwrites)."""

    def __init__(self, namespace: str = "") -> None:
        super().__init__(namespace)
        self.records: dict = {}
        self.calls = 0

    async def upsert(self, records, batch_size: int = 100) -> int:
        self.calls += 1
        for rec in records:
            self.records[rec.id] = rec
        return len(records)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test, schema created from the ORM models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'docproc.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory, lease_seconds=300, default_max_attempts=3)


@pytest.fixture
def db_get(session_factory):
    """Load one row by primary key in a fresh session: await db_get(DocumentJob, id)."""
    async def _get(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)
    return _get


@pytest.fixture
def status_events(session_factory):
    """All processing_status rows for a document, oldest first."""
    async def _events(document_id: uuid.UUID) -> list[ProcessingStatusEvent]:
        async with session_factory() as session:
            rows = await session.execute(
                select(ProcessingStatusEvent)
                .where(ProcessingStatusEvent.document_id == document_id)
                .order_by(ProcessingStatusEvent.id)
            )
            return list(rows.scalars())
    return _events


@pytest.fixture
def field_rows(session_factory):
    async def _fields(document_id: uuid.UUID) -> list[ExtractedField]:
        async with session_factory() as session:
            rows = await session.execute(
                select(ExtractedField).where(ExtractedField.document_id == document_id)
            )
            return list(rows.scalars())
    return _fields


# ─────────────────────────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    """Holds the uploaded originals."""
    return InMemoryBlobStore("test-bucket")


@pytest.fixture
def staging_store() -> InMemoryBlobStore:
    return InMemoryBlobStore("staging-bucket")


@pytest.fixture
def staging(staging_store) -> BlobStagingArea:
    return BlobStagingArea(staging_store)


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF: passes magic-byte check (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"%%EOF"
    )


@pytest.fixture
def make_document(session_factory, blob_store, sample_pdf_bytes):
    """
    Factory fixture: uploads bytes to the blob store and inserts a
    `documents` row in status 'uploading'.  Returns the document id.
    """
    async def _make(
        filename: str = "invoice.pdf",
        body:     bytes | None = None,
        metadata: dict | None = None,
    ) -> uuid.UUID:
        body   = body or sample_pdf_bytes
        doc_id = uuid.uuid4()
        key    = f"documents/{doc_id}/{filename}"
        await blob_store.put_object(key, body, "application/pdf")
        async with session_factory() as session, session.begin():
            session.add(Document(
                id=doc_id,
                filename=filename,
                file_size=len(body),
                content_type="application/pdf",
                storage_path=key,
                status="uploading",
                doc_metadata=metadata or {},
            ))
        return doc_id
    return _make


@pytest.fixture
def enqueue(job_store, make_document):
    """Upload a document and queue a job for it.  Returns (document_id, job_id)."""
    async def _enqueue(priority: int = 0, max_attempts: int | None = None, **doc_kwargs):
        doc_id = await make_document(**doc_kwargs)
        job_id = await job_store.enqueue(doc_id, priority=priority, max_attempts=max_attempts)
        return doc_id, job_id
    return _enqueue


# ─────────────────────────────────────────────────────────────────────────────
# Extraction payload builders
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_extracted():
    """ExtractedDocument with `pages` pages of two lines each."""
    def _build(pages: int = 5, first_page: int = 1) -> ExtractedDocument:
        doc = ExtractedDocument()
        texts: list[str] = []
        offset = 0
        for pn in range(first_page, first_page + pages):
            page = Page(page_number=pn)
            for line_text in (f"Page {pn} heading", f"Body text for page {pn}."):
                if texts:
                    offset += 1
                page.lines.append(Line(text=line_text, start=offset, end=offset + len(line_text)))
                texts.append(line_text)
                offset += len(line_text)
            doc.pages.append(page)
        doc.text = "\n".join(texts)
        return doc
    return _build


@pytest.fixture
def textract_shard():
    """Textract batch output shard ({"Blocks": [...]}) covering `count` pages."""
    def _build(first_page: int, count: int) -> dict:
        blocks: list[dict] = []
        for pn in range(first_page, first_page + count):
            blocks.append({"Id": f"page-{pn}", "BlockType": "PAGE", "Page": pn})
            blocks.append({
                "Id": f"line-{pn}",
                "BlockType": "LINE",
                "Page": pn,
                "Text": f"Line on page {pn}",
            })
        return {"DocumentMetadata": {"Pages": count}, "JobStatus": "SUCCEEDED", "Blocks": blocks}
    return _build


@pytest.fixture
def write_shards(staging, staging_store):
    """Simulate Textract writing numbered result shards for a job."""
    async def _write(job_id: uuid.UUID, shards: list[dict], operation_id: str = "op-123") -> None:
        prefix = staging.output_prefix_for(str(job_id))
        await staging_store.put_object(f"{prefix}.s3_access_check", b"")
        for n, shard in enumerate(shards, start=1):
            await staging_store.put_object(f"{prefix}{operation_id}/{n}", json.dumps(shard).encode())
    return _write


# ─────────────────────────────────────────────────────────────────────────────
# External service doubles
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def extraction():
    """
    Mocked ExtractionClient.  extract_sync / start_batch / get_batch_status
    are AsyncMock; configure return_value / side_effect per test.
    """
    client = MagicMock(spec=ExtractionClient)
    client.processor_ref    = "textract:FORMS+TABLES"
    client.extract_sync     = AsyncMock()
    client.start_batch      = AsyncMock(return_value="op-123")
    client.get_batch_status = AsyncMock()
    return client


@pytest.fixture
def embedder():
    emb = MagicMock(spec=OpenAIEmbedder)
    emb.model = "text-embedding-3-small"
    emb.embed = AsyncMock(return_value=[0.1] * 8)
    return emb


@pytest.fixture
def vector_index() -> RecordingVectorIndex:
    return RecordingVectorIndex(namespace="test")


@pytest.fixture
def breakers() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(ignore=(CapacityExceededError,))


@pytest.fixture
def executor() -> RetryExecutor:
    """Retry executor whose backoff returns immediately."""
    return RetryExecutor(sleep=AsyncMock(return_value=None))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def embedding_pipeline(embedder, vector_index, breakers, executor) -> EmbeddingPipeline:
    return EmbeddingPipeline(embedder, vector_index, breakers, executor)


@pytest.fixture
def orchestrator(
    job_store, blob_store, staging, extraction, embedding_pipeline, breakers, executor, clock,
) -> Orchestrator:
    return Orchestrator(
        store=job_store,
        originals=blob_store,
        staging=staging,
        extraction=extraction,
        merger=ResultMerger(),
        embeddings=embedding_pipeline,
        breakers=breakers,
        executor=executor,
        lease_seconds=300,
        batch_max_age_seconds=6 * 3600,
        clock=clock,
    )


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_orchestrator():
    """Orchestrator double for API tests; tick() is an AsyncMock."""
    orch = MagicMock(spec=Orchestrator)
    orch.tick = AsyncMock()
    return orch


@pytest.fixture
def cron_secret() -> str:
    return "test-cron-secret"


@pytest.fixture
def app_with_overrides(mock_orchestrator, cron_secret):
    """
    FastAPI app with external dependencies overridden:
      - get_settings     → Settings with the test cron secret
      - get_orchestrator → mock_orchestrator (no DB, no AWS)
    """
    from docproc.core.config import Settings, get_settings
    from docproc.jobs.factory import get_orchestrator
    from docproc.main import app

    app.dependency_overrides[get_settings]     = lambda: Settings(cron_secret=cron_secret)
    app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app.

    httpx >= 0.28 removed the 'app=' shortcut; use ASGITransport explicitly.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
