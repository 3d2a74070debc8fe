"""
Vector Index Factory

The rest of the app only imports get_vector_index(), never the concrete
Pinecone class.
"""

from __future__ import annotations

from docproc.core.config import settings
from docproc.vectorstore.base import VectorIndexBase


def get_vector_index(namespace: str | None = None) -> VectorIndexBase:
    """Return the vector index bound to the configured (or given) namespace."""
    from docproc.vectorstore.pinecone_store import PineconeVectorIndex

    return PineconeVectorIndex(
        namespace=settings.pinecone_namespace if namespace is None else namespace,
    )
