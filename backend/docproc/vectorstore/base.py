"""
Vector Index — Abstract Base

The embedding pipeline only speaks this protocol, so the backend can be
swapped (or faked in tests) without touching the pipeline.

Every instance is bound to one namespace at construction time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector index."""
    id:        str              # deterministic: <document_id>_chunk_<n>
    vector:    list[float]
    metadata:  dict             # filterable payload stored alongside the vector
    # Fields always present inside metadata:
    # - document_id: str
    # - chunk_index: int
    # - page_number: int
    # - text: str
    # - embedding_model: str
    # - indexed_at: str         (ISO-8601, UTC)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndexBase(ABC):
    def __init__(self, namespace: str = "") -> None:
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    @abstractmethod
    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        """
        Insert or update embedding records in this namespace.
        Returns the number of vectors upserted.
        """
