"""
S3 Blob Store

Thin async wrapper over the four S3 calls the pipeline needs:

  put_object     stage a document for batch extraction
  get_object     download an uploaded original / a result shard
  list_objects   enumerate staged input or extraction output
  delete_object  clean up staging artifacts

One instance is bound to one bucket.  Credentials come from the default
provider chain (ECS task role / IRSA in production, env vars locally).
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import ClientError

from docproc.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class S3Object:
    """Represents a stored object, returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class S3BlobStore:
    def __init__(
        self,
        bucket:  str,
        region:  str | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self.bucket   = bucket
        self._region  = region or settings.aws_region
        self._session = session or aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        key:          str,
        body:         bytes,
        content_type: str | None = None,
    ) -> S3Object:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=ct,
            )

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self.bucket, key, len(body))

        return S3Object(
            key=key,
            bucket=self.bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self.bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def list_objects(self, prefix: str, max_keys: int | None = None) -> list[dict]:
        """
        List objects under `prefix`, following continuation tokens.

        With `max_keys` set, a single page of at most that many keys is
        returned (used for cheap existence checks).
        """
        objects: list[dict] = []
        params: dict = {"Bucket": self.bucket, "Prefix": prefix}
        if max_keys is not None:
            params["MaxKeys"] = max_keys

        async with self._client() as s3:
            while True:
                resp = await s3.list_objects_v2(**params)
                objects.extend(resp.get("Contents", []))
                if max_keys is not None or not resp.get("IsTruncated"):
                    break
                params["ContinuationToken"] = resp["NextContinuationToken"]
        return objects

    async def delete_object(self, key: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)
        logger.debug("S3 delete | bucket=%s key=%s", self.bucket, key)
