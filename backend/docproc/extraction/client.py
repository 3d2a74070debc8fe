"""
Extraction Client — AWS Textract (sync + batch)

Two routes into the same service:

  extract_sync()      AnalyzeDocument on raw bytes.  Fast, but Textract
                      refuses multi-page PDFs and large files with
                      UnsupportedDocumentException / DocumentTooLargeException.
                      Those codes are translated into CapacityExceededError
                      so the orchestrator can reroute to batch.

  start_batch()       StartDocumentAnalysis on a staged S3 object.  Results
  get_batch_status()  are written by Textract to the staging output prefix
                      as numbered JSON shards; GetDocumentAnalysis is only
                      used to read the job status (MaxResults=1).

ClientRequestToken is stable for one job attempt, so resubmitting after a
crash returns the same JobId instead of starting a duplicate analysis.

IAM permissions required on the worker task role:
  textract:AnalyzeDocument
  textract:StartDocumentAnalysis
  textract:GetDocumentAnalysis
  s3:GetObject / s3:PutObject on the staging bucket
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import aioboto3
from botocore.exceptions import ClientError

from docproc.core.config import settings
from docproc.core.exceptions import CapacityExceededError
from docproc.extraction.models import ExtractedDocument
from docproc.extraction.textract import normalize_blocks
from docproc.storage.staging import StagedInput

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    RUNNING   = "running"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"


@dataclass(frozen=True)
class BatchStatus:
    state:      BatchState
    message:    str | None = None
    page_count: int | None = None


_STATUS_MAP = {
    "IN_PROGRESS":     BatchState.RUNNING,
    "SUCCEEDED":       BatchState.SUCCEEDED,
    "PARTIAL_SUCCESS": BatchState.SUCCEEDED,
    "FAILED":          BatchState.FAILED,
}


class ExtractionClient:
    def __init__(
        self,
        region:         str | None = None,
        feature_types:  list[str] | None = None,
        capacity_codes: list[str] | None = None,
        session:        aioboto3.Session | None = None,
    ) -> None:
        self._region         = region or settings.aws_region
        self._feature_types  = list(feature_types or settings.textract_feature_types)
        self._capacity_codes = frozenset(capacity_codes or settings.textract_capacity_error_codes)
        self._session        = session or aioboto3.Session()

    @property
    def processor_ref(self) -> str:
        """Label recorded in job metadata: which analysis was requested."""
        return "textract:" + "+".join(self._feature_types)

    def _client(self):
        return self._session.client("textract", region_name=self._region)

    # ------------------------------------------------------------------
    # Synchronous route
    # ------------------------------------------------------------------

    async def extract_sync(self, data: bytes, mime_type: str = "application/pdf") -> ExtractedDocument:
        async with self._client() as textract:
            try:
                resp = await textract.analyze_document(
                    Document={"Bytes": data},
                    FeatureTypes=self._feature_types,
                )
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in self._capacity_codes:
                    logger.info(
                        "Sync extraction over capacity | code=%s size=%d mime=%s",
                        code, len(data), mime_type,
                    )
                    raise CapacityExceededError(
                        exc.response.get("Error", {}).get("Message") or code
                    ) from exc
                raise

        doc = normalize_blocks(resp.get("Blocks", []))
        logger.info(
            "Sync extraction ok | pages=%d chars=%d entities=%d",
            doc.page_count, len(doc.text), len(doc.entities),
        )
        return doc

    # ------------------------------------------------------------------
    # Batch route
    # ------------------------------------------------------------------

    async def start_batch(self, staged: StagedInput, request_token: str) -> str:
        async with self._client() as textract:
            resp = await textract.start_document_analysis(
                DocumentLocation={"S3Object": {"Bucket": staged.bucket, "Name": staged.key}},
                FeatureTypes=self._feature_types,
                ClientRequestToken=request_token,
                JobTag=request_token[:64],
                OutputConfig={
                    "S3Bucket": staged.bucket,
                    "S3Prefix": staged.output_prefix.rstrip("/"),
                },
            )
        operation_id = resp["JobId"]
        logger.info(
            "Batch extraction started | token=%s operation=%s input=%s",
            request_token, operation_id, staged.uri,
        )
        return operation_id

    async def get_batch_status(self, operation_id: str) -> BatchStatus:
        async with self._client() as textract:
            try:
                resp = await textract.get_document_analysis(JobId=operation_id, MaxResults=1)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") == "InvalidJobIdException":
                    return BatchStatus(BatchState.FAILED, f"Unknown operation {operation_id}")
                raise

        raw_status = resp.get("JobStatus", "")
        state = _STATUS_MAP.get(raw_status)
        if state is None:
            logger.warning("Unknown batch status | operation=%s status=%s", operation_id, raw_status)
            state = BatchState.RUNNING

        return BatchStatus(
            state=state,
            message=resp.get("StatusMessage"),
            page_count=(resp.get("DocumentMetadata") or {}).get("Pages"),
        )
