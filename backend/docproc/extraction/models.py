"""
Canonical extraction result types.

Every extraction backend (Textract sync response, Textract batch shards,
document-shaped JSON) is normalised into an ExtractedDocument before it
reaches the orchestrator, so persistence and embedding never see vendor
payloads.

Offsets on Line are character positions into ExtractedDocument.text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Line:
    text:  str
    start: int
    end:   int


@dataclass
class Page:
    page_number: int                      # 1-based
    lines:       list[Line] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(ln.text for ln in self.lines)


@dataclass
class Entity:
    """A key/value pair or typed entity found in the document."""
    type:         str
    text:         str
    confidence:   float = 0.0
    page_number:  int | None = None
    bounding_box: dict[str, float] | None = None


@dataclass
class Table:
    page_number: int
    rows:        list[list[str]] = field(default_factory=list)


@dataclass
class ExtractedDocument:
    text:     str = ""
    pages:    list[Page]   = field(default_factory=list)
    entities: list[Entity] = field(default_factory=list)
    tables:   list[Table]  = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.pages

    def to_fields_json(self) -> dict[str, Any]:
        """Projection stored on documents.extracted_fields."""
        return {
            "fields": [
                {
                    "name":         e.type,
                    "value":        e.text,
                    "type":         infer_field_type(e.type),
                    "confidence":   e.confidence,
                    "page_number":  e.page_number,
                    "bounding_box": e.bounding_box,
                }
                for e in self.entities
                if e.type and e.text
            ],
            "tables": [
                {"index": i, "page_number": t.page_number, "rows": t.rows}
                for i, t in enumerate(self.tables)
                if t.rows
            ],
        }


_FIELD_TYPE_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("date",     ("date", "time")),
    ("number",   ("number", "amount", "price", "total")),
    ("checkbox", ("checkbox", "bool", "selection")),
)


def infer_field_type(name: str) -> str:
    """Guess a field's type from its name: date | number | checkbox | text."""
    lowered = name.lower()
    for field_type, hints in _FIELD_TYPE_HINTS:
        if any(h in lowered for h in hints):
            return field_type
    return "text"
