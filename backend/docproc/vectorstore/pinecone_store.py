"""
Pinecone Vector Index

One shared serverless index; every record for this deployment goes to the
configured namespace (Pinecone creates it implicitly on first upsert).
Record ids are deterministic, so re-indexing a document after a retry
overwrites the earlier vectors instead of duplicating them.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from pinecone import Pinecone

from docproc.core.config import settings
from docproc.vectorstore.base import VectorIndexBase, VectorRecord

logger = logging.getLogger(__name__)

_REQUIRED_METADATA = ("document_id", "chunk_index", "text")


class PineconeVectorIndex(VectorIndexBase):
    def __init__(self, namespace: str = "", index=None) -> None:
        super().__init__(namespace)
        if index is None:
            pc    = Pinecone(api_key=settings.pinecone_api_key)
            index = pc.Index(settings.pinecone_index_name)
        self._index = index

    def _validate_record(self, record: VectorRecord) -> None:
        missing = [k for k in _REQUIRED_METADATA if k not in record.metadata]
        if missing:
            raise ValueError(f"Record {record.id} missing metadata: {', '.join(missing)}")

    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        """
        Batches to stay within Pinecone's 2MB request limit.  The SDK call is
        blocking, so each batch runs in the default executor.
        """
        loop  = asyncio.get_running_loop()
        total = 0
        for i in range(0, len(records), batch_size):
            batch = records[i : i + batch_size]

            vectors = []
            for rec in batch:
                self._validate_record(rec)
                vectors.append({
                    "id":       rec.id,
                    "values":   rec.vector,
                    "metadata": rec.metadata,
                })

            await loop.run_in_executor(
                None, partial(self._index.upsert, vectors=vectors, namespace=self._namespace),
            )
            total += len(batch)
            logger.debug(
                "Pinecone upsert | namespace=%s batch=%d total=%d",
                self._namespace or "<default>", len(batch), total,
            )

        return total

