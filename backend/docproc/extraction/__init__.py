"""
Extraction Package

  models.py    canonical ExtractedDocument types
  textract.py  Textract Blocks → ExtractedDocument
  client.py    Textract sync + batch calls
  merger.py    batch result shards → one ExtractedDocument
"""

from docproc.extraction.client import BatchState, BatchStatus, ExtractionClient
from docproc.extraction.merger import ResultMerger
from docproc.extraction.models import Entity, ExtractedDocument, Line, Page, Table

__all__ = [
    "BatchState",
    "BatchStatus",
    "ExtractionClient",
    "ResultMerger",
    "Entity",
    "ExtractedDocument",
    "Line",
    "Page",
    "Table",
]
