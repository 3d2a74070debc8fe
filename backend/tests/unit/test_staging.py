"""
Unit Tests — S3 Blob Store and Staging Area
════════════════════════════════════════════
Tests for docproc/storage/s3.py and docproc/storage/staging.py

Coverage:
  ✅ put_object returns an S3Object with the stripped ETag
  ✅ get_object NoSuchKey → FileNotFoundError
  ✅ list_objects follows continuation tokens; max_keys returns one page
  ✅ stage() writes under the job's input prefix
  ✅ collect() orders shards naturally (2 before 10) and skips junk
  ✅ output_ready() ignores the access-check marker
  ✅ cleanup() is best effort and never raises
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from docproc.storage.s3 import S3BlobStore
from docproc.storage.staging import BlobStagingArea


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "test"}}, "operation")


def _build_s3_mock() -> MagicMock:
    """Build a mock S3 client context manager."""
    s3 = AsyncMock()
    s3.__aenter__ = AsyncMock(return_value=s3)
    s3.__aexit__  = AsyncMock(return_value=None)
    s3.put_object    = AsyncMock(return_value={"ETag": '"etag-123"'})
    s3.delete_object = AsyncMock(return_value={})
    return s3


@pytest.fixture
def s3_mock() -> MagicMock:
    return _build_s3_mock()


@pytest.fixture
def s3_store(s3_mock) -> S3BlobStore:
    session = MagicMock()
    session.client.return_value = s3_mock
    return S3BlobStore("test-bucket", region="us-east-1", session=session)


# ─────────────────────────────────────────────────────────────────────────────
# S3BlobStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.s3
class TestS3BlobStore:

    async def test_put_object(self, s3_store, s3_mock):
        obj = await s3_store.put_object("docs/a.pdf", b"%PDF", content_type="application/pdf")

        assert obj.etag == "etag-123"
        assert obj.size_bytes == 4
        assert obj.uri == "s3://test-bucket/docs/a.pdf"
        s3_mock.put_object.assert_awaited_once_with(
            Bucket="test-bucket", Key="docs/a.pdf", Body=b"%PDF", ContentType="application/pdf",
        )

    async def test_put_object_guesses_content_type(self, s3_store):
        obj = await s3_store.put_object("shards/1.json", b"{}")
        assert obj.content_type == "application/json"

    async def test_get_object(self, s3_store, s3_mock):
        body = AsyncMock()
        body.read = AsyncMock(return_value=b"content")
        s3_mock.get_object = AsyncMock(return_value={"Body": body})

        assert await s3_store.get_object("docs/a.pdf") == b"content"

    async def test_get_object_missing_key(self, s3_store, s3_mock):
        s3_mock.get_object = AsyncMock(side_effect=_client_error("NoSuchKey"))
        with pytest.raises(FileNotFoundError):
            await s3_store.get_object("docs/missing.pdf")

    async def test_get_object_other_error_propagates(self, s3_store, s3_mock):
        s3_mock.get_object = AsyncMock(side_effect=_client_error("AccessDenied"))
        with pytest.raises(ClientError):
            await s3_store.get_object("docs/a.pdf")

    async def test_list_objects_paginates(self, s3_store, s3_mock):
        s3_mock.list_objects_v2 = AsyncMock(side_effect=[
            {"Contents": [{"Key": "p/1"}], "IsTruncated": True, "NextContinuationToken": "tok"},
            {"Contents": [{"Key": "p/2"}], "IsTruncated": False},
        ])

        objects = await s3_store.list_objects("p/")

        assert [o["Key"] for o in objects] == ["p/1", "p/2"]
        assert s3_mock.list_objects_v2.call_args_list[1].kwargs["ContinuationToken"] == "tok"

    async def test_list_objects_single_page_with_max_keys(self, s3_store, s3_mock):
        s3_mock.list_objects_v2 = AsyncMock(return_value={
            "Contents": [{"Key": "p/1"}], "IsTruncated": True, "NextContinuationToken": "tok",
        })

        objects = await s3_store.list_objects("p/", max_keys=1)

        assert len(objects) == 1
        s3_mock.list_objects_v2.assert_awaited_once_with(Bucket="test-bucket", Prefix="p/", MaxKeys=1)

    async def test_delete_object(self, s3_store, s3_mock):
        await s3_store.delete_object("p/1")
        s3_mock.delete_object.assert_awaited_once_with(Bucket="test-bucket", Key="p/1")


# ─────────────────────────────────────────────────────────────────────────────
# BlobStagingArea
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestBlobStagingArea:

    async def test_stage_writes_under_input_prefix(self, staging, staging_store):
        staged = await staging.stage("job-1", b"%PDF", "scan.pdf")

        assert staged.key == "batch-processing/input/job-1/scan.pdf"
        assert staged.bucket == "staging-bucket"
        assert staged.output_prefix == "batch-processing/output/job-1/"
        assert staging_store.objects[staged.key] == b"%PDF"

    async def test_stage_sanitises_filename(self, staging):
        staged = await staging.stage("job-1", b"%PDF", "../etc/passwd")
        assert staged.key.startswith("batch-processing/input/job-1/")
        assert "/../" not in staged.key

    async def test_collect_orders_naturally_and_skips_junk(self, staging, staging_store):
        prefix = staging.output_prefix_for("job-1")
        for n in (10, 2, 1):
            await staging_store.put_object(f"{prefix}op/{n}", json.dumps({"n": n}).encode())
        await staging_store.put_object(f"{prefix}.s3_access_check", b"")
        await staging_store.put_object(f"{prefix}op/3", b"{not json")
        await staging_store.put_object(f"{prefix}op/4", b"[1, 2]")

        shards = await staging.collect("job-1")

        assert [s["n"] for s in shards] == [1, 2, 10]

    async def test_output_ready(self, staging, staging_store):
        prefix = staging.output_prefix_for("job-1")
        await staging_store.put_object(f"{prefix}.s3_access_check", b"")
        assert await staging.output_ready("job-1") is False

        await staging_store.put_object(f"{prefix}op/1", b"{}")
        assert await staging.output_ready("job-1") is True

    async def test_cleanup_deletes_input_and_output(self, staging, staging_store):
        await staging.stage("job-1", b"%PDF", "scan.pdf")
        await staging_store.put_object(f"{staging.output_prefix_for('job-1')}op/1", b"{}")
        await staging_store.put_object("batch-processing/input/job-2/other.pdf", b"%PDF")

        deleted = await staging.cleanup("job-1")

        assert deleted == 2
        assert list(staging_store.objects) == ["batch-processing/input/job-2/other.pdf"]

    async def test_cleanup_never_raises(self, staging_store):
        staging_store.delete_object = AsyncMock(side_effect=ConnectionError("network down"))
        area = BlobStagingArea(staging_store)
        await area.stage("job-1", b"%PDF", "scan.pdf")

        assert await area.cleanup("job-1") == 0

    async def test_cleanup_survives_listing_failure(self, staging_store):
        staging_store.list_objects = AsyncMock(side_effect=TimeoutError("slow"))
        assert await BlobStagingArea(staging_store).cleanup("job-1") == 0
