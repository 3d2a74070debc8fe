from docproc.vectorstore.base import VectorIndexBase, VectorRecord
from docproc.vectorstore.factory import get_vector_index

__all__ = ["VectorIndexBase", "VectorRecord", "get_vector_index"]
