"""
Textract block normaliser.

Turns the flat `Blocks` list returned by AnalyzeDocument (or written to S3
by StartDocumentAnalysis) into an ExtractedDocument:

  PAGE / LINE           → pages with line offsets into the document text
  KEY_VALUE_SET         → entities (key text as type, value text as text)
  TABLE / CELL          → tables of cell text, row-major

Textract splits batch output every N blocks, not on page boundaries, so a
page, a key/value pair or a table can straddle two shard files.  Callers
pool the blocks of every shard and normalise once; relationships that
still point outside the given list are ignored.
"""

from __future__ import annotations

import logging
from typing import Any

from docproc.extraction.models import Entity, ExtractedDocument, Line, Page, Table

logger = logging.getLogger(__name__)


def _child_ids(block: dict, rel_type: str = "CHILD") -> list[str]:
    ids: list[str] = []
    for rel in block.get("Relationships") or []:
        if rel.get("Type") == rel_type:
            ids.extend(rel.get("Ids") or [])
    return ids


def _text_of(block: dict, by_id: dict[str, dict]) -> str:
    """Concatenate WORD children; selection elements render as X / empty."""
    parts: list[str] = []
    for cid in _child_ids(block):
        child = by_id.get(cid)
        if child is None:
            continue
        if child.get("BlockType") == "WORD":
            parts.append(child.get("Text", ""))
        elif child.get("BlockType") == "SELECTION_ELEMENT":
            if child.get("SelectionStatus") == "SELECTED":
                parts.append("X")
    return " ".join(p for p in parts if p)


def _bounding_box(block: dict) -> dict[str, float] | None:
    box = (block.get("Geometry") or {}).get("BoundingBox")
    if not box:
        return None
    return {
        "x":      float(box.get("Left", 0.0)),
        "y":      float(box.get("Top", 0.0)),
        "width":  float(box.get("Width", 0.0)),
        "height": float(box.get("Height", 0.0)),
    }


def normalize_blocks(blocks: list[dict[str, Any]]) -> ExtractedDocument:
    by_id = {b["Id"]: b for b in blocks if "Id" in b}

    # --- pages + lines -------------------------------------------------
    page_numbers: set[int] = set()
    lines_by_page: dict[int, list[str]] = {}
    for block in blocks:
        kind = block.get("BlockType")
        if kind == "PAGE":
            page_numbers.add(int(block.get("Page", 1)))
        elif kind == "LINE":
            pn = int(block.get("Page", 1))
            page_numbers.add(pn)
            lines_by_page.setdefault(pn, []).append(block.get("Text", ""))

    pages: list[Page] = []
    text_parts: list[str] = []
    offset = 0
    for pn in sorted(page_numbers):
        page = Page(page_number=pn)
        for line_text in lines_by_page.get(pn, []):
            if text_parts:
                offset += 1          # "\n" separator
            page.lines.append(Line(text=line_text, start=offset, end=offset + len(line_text)))
            text_parts.append(line_text)
            offset += len(line_text)
        pages.append(page)

    # --- key/value pairs -----------------------------------------------
    entities: list[Entity] = []
    for block in blocks:
        if block.get("BlockType") != "KEY_VALUE_SET" or "KEY" not in (block.get("EntityTypes") or []):
            continue
        key_text = _text_of(block, by_id).strip().rstrip(":").strip()
        value_text = " ".join(
            _text_of(by_id[vid], by_id)
            for vid in _child_ids(block, "VALUE")
            if vid in by_id
        ).strip()
        if not key_text or not value_text:
            continue
        entities.append(Entity(
            type=key_text,
            text=value_text,
            confidence=round(float(block.get("Confidence", 0.0)) / 100.0, 4),   # normalize to 0–1
            page_number=int(block.get("Page", 1)),
            bounding_box=_bounding_box(block),
        ))

    # --- tables --------------------------------------------------------
    tables: list[Table] = []
    for block in blocks:
        if block.get("BlockType") != "TABLE":
            continue
        cells: dict[tuple[int, int], str] = {}
        for cid in _child_ids(block):
            cell = by_id.get(cid)
            if cell is None or cell.get("BlockType") != "CELL":
                continue
            cells[(int(cell.get("RowIndex", 1)), int(cell.get("ColumnIndex", 1)))] = _text_of(cell, by_id)
        if not cells:
            continue
        n_rows = max(r for r, _ in cells)
        n_cols = max(c for _, c in cells)
        rows = [
            [cells.get((r, c), "") for c in range(1, n_cols + 1)]
            for r in range(1, n_rows + 1)
        ]
        tables.append(Table(page_number=int(block.get("Page", 1)), rows=rows))

    doc = ExtractedDocument(
        text="\n".join(text_parts),
        pages=pages,
        entities=entities,
        tables=tables,
    )
    logger.debug(
        "Textract blocks normalised | blocks=%d pages=%d entities=%d tables=%d",
        len(blocks), len(pages), len(entities), len(tables),
    )
    return doc
