"""
Result Merger — many shards in, one ExtractedDocument out

Batch extraction writes its output as several JSON files.

Textract shards ({"Blocks": [...]}) are cut every N blocks, not per page,
so their blocks are pooled in shard order and normalised together; a
continuation shard holding only LINE or VALUE blocks is still usable.

Any other shard is recognised by an ordered list of shape matchers; the
first matcher that claims a payload projects it into the canonical
ExtractedDocument:

  1. document     {"document": {...}}
  2. responses    {"responses": [{"document": {...}}]}
  3. response     {"response": {"document": {...}}}
  4. bare         {"text": "...", "pages": [...]}

Parts are concatenated in the order given: texts joined with "\\n" (line
offsets rebased onto the merged text), pages sharing a number folded into
one, entities and tables appended.
A shard that matches nothing or blows up while parsing is skipped with a
warning; if nothing usable is left, MergeError.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from docproc.core.exceptions import MergeError
from docproc.extraction.models import Entity, ExtractedDocument, Line, Page, Table
from docproc.extraction.textract import normalize_blocks

logger = logging.getLogger(__name__)

Matcher = Callable[[dict[str, Any]], "ExtractedDocument | None"]


# ---------------------------------------------------------------------------
# Document-shaped payload projection
# ---------------------------------------------------------------------------

def _segments(text: str, anchor: dict | None) -> list[tuple[int, int]]:
    if not anchor:
        return []
    spans = []
    for seg in anchor.get("textSegments") or []:
        start = int(seg.get("startIndex") or 0)
        end   = int(seg.get("endIndex") or len(text))
        if end > start:
            spans.append((start, end))
    return spans


def _anchor_text(text: str, anchor: dict | None) -> str:
    return "".join(text[s:e] for s, e in _segments(text, anchor))


def _page_ref(page_anchor: dict | None) -> tuple[int | None, dict[str, float] | None]:
    refs = (page_anchor or {}).get("pageRefs") or []
    if not refs:
        return None, None
    ref  = refs[0]
    page = int(ref.get("page") or 0) + 1            # 0-based → 1-based

    vertices = ((ref.get("boundingPoly") or {}).get("normalizedVertices")) or []
    box = None
    if len(vertices) >= 2:
        x0 = vertices[0].get("x", 0.0)
        y0 = vertices[0].get("y", 0.0)
        far = vertices[2] if len(vertices) > 2 else {}
        box = {
            "x":      x0,
            "y":      y0,
            "width":  far.get("x", 1.0) - x0,
            "height": far.get("y", 1.0) - y0,
        }
    return page, box


def _project_document(doc: dict[str, Any]) -> ExtractedDocument | None:
    text = doc.get("text") or ""
    if not isinstance(text, str):
        raise TypeError("document.text is not a string")

    pages:    list[Page]   = []
    entities: list[Entity] = []
    tables:   list[Table]  = []

    for idx, raw_page in enumerate(doc.get("pages") or []):
        page_number = int(raw_page.get("pageNumber") or idx + 1)
        page = Page(page_number=page_number)

        # paragraphs first; lines only when the page has no paragraphs
        layouts = raw_page.get("paragraphs") or raw_page.get("lines") or []
        for item in layouts:
            for start, end in _segments(text, (item.get("layout") or {}).get("textAnchor")):
                page.lines.append(Line(text=text[start:end].rstrip("\n"), start=start, end=end))
        pages.append(page)

        for ff in raw_page.get("formFields") or []:
            name  = _anchor_text(text, (ff.get("fieldName") or {}).get("textAnchor")).strip()
            value = _anchor_text(text, (ff.get("fieldValue") or {}).get("textAnchor")).strip()
            if name and value:
                entities.append(Entity(
                    type=name,
                    text=value,
                    confidence=float((ff.get("fieldName") or {}).get("confidence") or 0.0),
                    page_number=page_number,
                ))

        for raw_table in raw_page.get("tables") or []:
            rows = []
            for row in (raw_table.get("headerRows") or []) + (raw_table.get("bodyRows") or []):
                cells = [
                    _anchor_text(text, (c.get("layout") or {}).get("textAnchor")).strip()
                    for c in row.get("cells") or []
                ]
                if cells:
                    rows.append(cells)
            if rows:
                tables.append(Table(page_number=page_number, rows=rows))

    for ent in doc.get("entities") or []:
        if not ent.get("type") or not ent.get("mentionText"):
            continue
        page_number, box = _page_ref(ent.get("pageAnchor"))
        entities.append(Entity(
            type=ent["type"],
            text=ent["mentionText"],
            confidence=float(ent.get("confidence") or 0.0),
            page_number=page_number,
            bounding_box=box,
        ))

    result = ExtractedDocument(text=text, pages=pages, entities=entities, tables=tables)
    return None if result.is_empty else result


# ---------------------------------------------------------------------------
# Shape matchers (first match wins)
# ---------------------------------------------------------------------------

def _textract_blocks(payload: Any) -> list[dict[str, Any]] | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("Blocks"), list):
        return None
    return [b for b in payload["Blocks"] if isinstance(b, dict)]


def _match_document(payload: dict) -> ExtractedDocument | None:
    if not isinstance(payload.get("document"), dict):
        return None
    return _project_document(payload["document"])


def _match_responses(payload: dict) -> ExtractedDocument | None:
    responses = payload.get("responses")
    if not isinstance(responses, list) or not responses or not isinstance(responses[0].get("document"), dict):
        return None
    return _project_document(responses[0]["document"])


def _match_response(payload: dict) -> ExtractedDocument | None:
    response = payload.get("response")
    if not isinstance(response, dict) or not isinstance(response.get("document"), dict):
        return None
    return _project_document(response["document"])


def _match_bare(payload: dict) -> ExtractedDocument | None:
    if not isinstance(payload.get("text"), str) or not isinstance(payload.get("pages"), list):
        return None
    return _project_document(payload)


DEFAULT_MATCHERS: list[tuple[str, Matcher]] = [
    ("document",  _match_document),
    ("responses", _match_responses),
    ("response",  _match_response),
    ("bare",      _match_bare),
]

_PARSE_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


# ---------------------------------------------------------------------------
# Merger
# ---------------------------------------------------------------------------

class ResultMerger:
    def __init__(self, matchers: list[tuple[str, Matcher]] | None = None) -> None:
        self._matchers = matchers or DEFAULT_MATCHERS

    def _project(self, index: int, shard: Any) -> ExtractedDocument | None:
        if not isinstance(shard, dict):
            logger.warning("Shard skipped | index=%d reason=not an object", index)
            return None
        for name, matcher in self._matchers:
            try:
                doc = matcher(shard)
            except _PARSE_ERRORS as exc:
                logger.warning("Shard skipped | index=%d shape=%s error=%s", index, name, exc)
                return None
            if doc is not None:
                logger.debug("Shard matched | index=%d shape=%s pages=%d", index, name, doc.page_count)
                return doc
        logger.warning("Shard skipped | index=%d reason=unrecognised shape keys=%s", index, sorted(shard)[:5])
        return None

    @staticmethod
    def _normalize_pooled(blocks: list[dict[str, Any]], shard_count: int) -> ExtractedDocument | None:
        try:
            doc = normalize_blocks(blocks)
        except _PARSE_ERRORS as exc:
            logger.warning("Textract shards skipped | shards=%d error=%s", shard_count, exc)
            return None
        if doc.is_empty:
            logger.warning("Textract shards skipped | shards=%d reason=no usable blocks", shard_count)
            return None
        logger.debug("Textract shards pooled | shards=%d blocks=%d pages=%d", shard_count, len(blocks), doc.page_count)
        return doc

    def merge(
        self,
        shards:         list[Any],
        expected_pages: int | None = None,
    ) -> ExtractedDocument:
        """
        Merge batch output shards into one document.

        Textract shards are pooled and normalised once, in the slot of the
        first Textract shard.  Other shapes are projected one by one.
        expected_pages (the page count the extraction service reported) is
        only checked and logged.
        """
        pooled: list[dict[str, Any]] = []
        textract_shards = 0
        slots: list[ExtractedDocument | None] = []      # None marks the pooled Textract slot

        for index, shard in enumerate(shards):
            blocks = _textract_blocks(shard)
            if blocks is not None:
                if not textract_shards:
                    slots.append(None)
                textract_shards += 1
                pooled.extend(blocks)
                continue
            doc = self._project(index, shard)
            if doc is not None:
                slots.append(doc)

        docs: list[ExtractedDocument] = []
        for slot in slots:
            doc = slot if slot is not None else self._normalize_pooled(pooled, textract_shards)
            if doc is not None:
                docs.append(doc)

        if not docs:
            raise MergeError(f"No usable extraction data in {len(shards)} shard(s)")

        merged = _concatenate(docs)
        logger.info(
            "Shards merged | shards=%d parts=%d pages=%d chars=%d",
            len(shards), len(docs), merged.page_count, len(merged.text),
        )
        if expected_pages is not None and expected_pages != merged.page_count:
            logger.warning(
                "Merged page count differs from service | merged=%d reported=%d",
                merged.page_count, expected_pages,
            )
        return merged


def _concatenate(docs: list[ExtractedDocument]) -> ExtractedDocument:
    """Join texts with "\\n", rebase line offsets, fold pages sharing a number."""
    merged = ExtractedDocument()
    by_number: dict[int, Page] = {}
    texts: list[str] = []
    base = 0

    for doc in docs:
        if texts:
            base += 1                      # "\n" separator
        for page in doc.pages:
            lines = [Line(text=ln.text, start=ln.start + base, end=ln.end + base) for ln in page.lines]
            existing = by_number.get(page.page_number)
            if existing is None:
                existing = Page(page_number=page.page_number)
                by_number[page.page_number] = existing
                merged.pages.append(existing)
            existing.lines.extend(lines)
        texts.append(doc.text)
        base += len(doc.text)

        merged.entities.extend(doc.entities)
        merged.tables.extend(doc.tables)

    merged.text = "\n".join(texts)
    return merged
