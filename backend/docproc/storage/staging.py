"""
Blob Staging Area — batch extraction input/output on S3

Layout (prefixes configurable):

  <staging_input_prefix><job_key>/<filename>       staged source document
  <staging_output_prefix><job_key>/<JobId>/1, 2…   Textract result shards
  <staging_output_prefix><job_key>/.s3_access_check

Textract names its shards with bare integers, so artifacts are ordered
naturally (2 before 10).  Non-result artifacts such as the access-check
marker are ignored; a shard that fails to parse is logged and skipped so
the merger can decide whether the remainder is usable.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from docproc.storage.s3 import S3BlobStore

logger = logging.getLogger(__name__)

_NUM_RE = re.compile(r"(\d+)")

# Listing page used by output_ready(); large enough to see past the marker file
_READY_SCAN_KEYS = 20


@dataclass(frozen=True)
class StagedInput:
    bucket:        str
    key:           str
    input_prefix:  str
    output_prefix: str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


def _natural_key(key: str) -> list:
    return [int(p) if p.isdigit() else p for p in _NUM_RE.split(key)]


def _is_result_artifact(key: str) -> bool:
    name = key.rsplit("/", 1)[-1]
    return name.endswith(".json") or name.isdigit()


def _safe_name(filename: str) -> str:
    return filename.replace("/", "_").replace("..", "_") or "document.pdf"


class BlobStagingArea:
    def __init__(
        self,
        store:         S3BlobStore,
        input_prefix:  str = "batch-processing/input/",
        output_prefix: str = "batch-processing/output/",
    ) -> None:
        self._store         = store
        self._input_prefix  = input_prefix
        self._output_prefix = output_prefix

    @property
    def bucket(self) -> str:
        return self._store.bucket

    def input_prefix_for(self, job_key: str) -> str:
        return f"{self._input_prefix}{job_key}/"

    def output_prefix_for(self, job_key: str) -> str:
        return f"{self._output_prefix}{job_key}/"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def stage(self, job_key: str, data: bytes, filename: str) -> StagedInput:
        """Upload the source document under the job's input prefix."""
        input_prefix = self.input_prefix_for(job_key)
        obj = await self._store.put_object(
            f"{input_prefix}{_safe_name(filename)}",
            data,
            content_type="application/pdf",
        )
        logger.info("Document staged | job=%s key=%s size=%d", job_key, obj.key, obj.size_bytes)
        return StagedInput(
            bucket=obj.bucket,
            key=obj.key,
            input_prefix=input_prefix,
            output_prefix=self.output_prefix_for(job_key),
        )

    async def collect(self, job_key: str) -> list[dict]:
        """Download and parse every result artifact, in natural key order."""
        prefix = self.output_prefix_for(job_key)
        keys = sorted(
            (o["Key"] for o in await self._store.list_objects(prefix) if _is_result_artifact(o["Key"])),
            key=_natural_key,
        )

        shards: list[dict] = []
        for key in keys:
            raw = await self._store.get_object(key)
            try:
                payload = json.loads(raw)
            except (ValueError, UnicodeDecodeError) as exc:
                logger.warning("Unparseable shard skipped | job=%s key=%s error=%s", job_key, key, exc)
                continue
            if not isinstance(payload, dict):
                logger.warning("Non-object shard skipped | job=%s key=%s", job_key, key)
                continue
            shards.append(payload)

        logger.info("Shards collected | job=%s listed=%d parsed=%d", job_key, len(keys), len(shards))
        return shards

    async def output_ready(self, job_key: str) -> bool:
        objects = await self._store.list_objects(
            self.output_prefix_for(job_key), max_keys=_READY_SCAN_KEYS,
        )
        return any(_is_result_artifact(o["Key"]) for o in objects)

    async def cleanup(self, job_key: str) -> int:
        """
        Delete staged input and extraction output.  Best effort: failures
        are logged and never raised.  Returns the number of objects deleted.
        """
        deleted = 0
        for prefix in (self.input_prefix_for(job_key), self.output_prefix_for(job_key)):
            try:
                objects = await self._store.list_objects(prefix)
            except Exception as exc:
                logger.warning("Cleanup listing failed | prefix=%s error=%s", prefix, exc)
                continue
            for obj in objects:
                try:
                    await self._store.delete_object(obj["Key"])
                    deleted += 1
                except Exception as exc:
                    logger.warning("Cleanup delete failed | key=%s error=%s", obj["Key"], exc)

        logger.info("Staging cleaned up | job=%s deleted=%d", job_key, deleted)
        return deleted
