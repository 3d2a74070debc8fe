"""
Unit Tests — Result Merger and Textract normaliser
═══════════════════════════════════════════════════
Tests for docproc/extraction/merger.py and docproc/extraction/textract.py

Coverage:
  ✅ N shards → text concatenated in order, pages appended, page_count = Σ pages
  ✅ Textract pages, key/value pairs and tables that straddle shard files
     are resolved against the pooled blocks and counted once
  ✅ line offsets are rebased onto the merged text
  ✅ zero usable shards → MergeError
  ✅ usable + malformed shards → success with the usable ones only
  ✅ every supported shard shape is recognised (textract, document,
     responses, response, bare)
  ✅ Textract blocks: pages/lines, key/value entities, tables
"""

from __future__ import annotations

import logging

import pytest

from docproc.core.exceptions import MergeError, PermanentExtractionError
from docproc.extraction.merger import ResultMerger
from docproc.extraction.textract import normalize_blocks


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _document_payload(text: str, page_numbers: list[int]) -> dict:
    """Document-shaped payload, one paragraph per page covering its slice of text."""
    lines = text.split("\n")
    pages, offset = [], 0
    for pn, line in zip(page_numbers, lines):
        pages.append({
            "pageNumber": pn,
            "paragraphs": [{
                "layout": {"textAnchor": {"textSegments": [
                    {"startIndex": offset, "endIndex": offset + len(line)},
                ]}},
            }],
        })
        offset += len(line) + 1
    return {"text": text, "pages": pages}


def _kv_blocks() -> list[dict]:
    return [
        {"Id": "p1", "BlockType": "PAGE", "Page": 1},
        {"Id": "l1", "BlockType": "LINE", "Page": 1, "Text": "Invoice Number: INV-42"},
        {"Id": "l2", "BlockType": "LINE", "Page": 1, "Text": "Total: 99.50"},
        {"Id": "w1", "BlockType": "WORD", "Text": "Invoice"},
        {"Id": "w2", "BlockType": "WORD", "Text": "Number:"},
        {"Id": "w3", "BlockType": "WORD", "Text": "INV-42"},
        {
            "Id": "k1", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["KEY"], "Page": 1,
            "Confidence": 91.5,
            "Geometry": {"BoundingBox": {"Left": 0.1, "Top": 0.2, "Width": 0.3, "Height": 0.05}},
            "Relationships": [
                {"Type": "CHILD", "Ids": ["w1", "w2"]},
                {"Type": "VALUE", "Ids": ["v1"]},
            ],
        },
        {
            "Id": "v1", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["VALUE"], "Page": 1,
            "Relationships": [{"Type": "CHILD", "Ids": ["w3"]}],
        },
        {"Id": "cw1", "BlockType": "WORD", "Text": "Item"},
        {"Id": "cw2", "BlockType": "WORD", "Text": "Qty"},
        {"Id": "cw3", "BlockType": "WORD", "Text": "Widget"},
        {"Id": "c11", "BlockType": "CELL", "RowIndex": 1, "ColumnIndex": 1, "Relationships": [{"Type": "CHILD", "Ids": ["cw1"]}]},
        {"Id": "c12", "BlockType": "CELL", "RowIndex": 1, "ColumnIndex": 2, "Relationships": [{"Type": "CHILD", "Ids": ["cw2"]}]},
        {"Id": "c21", "BlockType": "CELL", "RowIndex": 2, "ColumnIndex": 1, "Relationships": [{"Type": "CHILD", "Ids": ["cw3"]}]},
        {"Id": "t1", "BlockType": "TABLE", "Page": 1, "Relationships": [{"Type": "CHILD", "Ids": ["c11", "c12", "c21"]}]},
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Textract normaliser
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestNormalizeBlocks:

    def test_pages_and_line_offsets(self):
        doc = normalize_blocks(_kv_blocks())

        assert doc.page_count == 1
        assert doc.text == "Invoice Number: INV-42\nTotal: 99.50"
        first, second = doc.pages[0].lines
        assert doc.text[first.start:first.end] == "Invoice Number: INV-42"
        assert doc.text[second.start:second.end] == "Total: 99.50"

    def test_key_value_entities(self):
        doc = normalize_blocks(_kv_blocks())

        assert len(doc.entities) == 1
        entity = doc.entities[0]
        assert entity.type == "Invoice Number"
        assert entity.text == "INV-42"
        assert entity.confidence == pytest.approx(0.915)
        assert entity.page_number == 1
        assert entity.bounding_box == {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.05}

    def test_tables_are_row_major_and_padded(self):
        doc = normalize_blocks(_kv_blocks())
        assert doc.tables[0].rows == [["Item", "Qty"], ["Widget", ""]]

    def test_fields_projection(self):
        fields = normalize_blocks(_kv_blocks()).to_fields_json()
        assert fields["fields"][0]["name"] == "Invoice Number"
        assert fields["fields"][0]["type"] == "number"
        assert fields["tables"][0]["index"] == 0

    def test_empty_blocks(self):
        doc = normalize_blocks([])
        assert doc.is_empty
        assert doc.page_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Merger
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestResultMerger:

    def test_concatenates_in_order_and_sums_pages(self, textract_shard):
        shards = [textract_shard(1, 30), textract_shard(31, 30), textract_shard(61, 20)]

        merged = ResultMerger().merge(shards)

        assert merged.page_count == 80
        assert [p.page_number for p in merged.pages] == list(range(1, 81))
        parts = [ResultMerger().merge([s]).text for s in shards]
        assert merged.text == "\n".join(parts)

    def test_line_offsets_rebased_onto_merged_text(self, textract_shard):
        merged = ResultMerger().merge([textract_shard(1, 2), textract_shard(3, 2)])

        for page in merged.pages:
            for line in page.lines:
                assert merged.text[line.start:line.end] == line.text
        assert merged.pages[2].lines[0].text == "Line on page 3"

    def test_entities_and_tables_appended(self):
        merged = ResultMerger().merge([
            {"Blocks": _kv_blocks()},
            {"document": {
                **_document_payload("Total 10", [2]),
                "entities": [{"type": "total_amount", "mentionText": "10", "confidence": 0.8}],
            }},
        ])
        assert [e.type for e in merged.entities] == ["Invoice Number", "total_amount"]
        assert len(merged.tables) == 1

    def test_page_split_across_textract_shards_counts_once(self):
        first = {"Blocks": [
            {"Id": "p1", "BlockType": "PAGE", "Page": 1},
            {"Id": "l1", "BlockType": "LINE", "Page": 1, "Text": "one"},
            {"Id": "p2", "BlockType": "PAGE", "Page": 2},
            {"Id": "l2", "BlockType": "LINE", "Page": 2, "Text": "two a"},
        ]}
        second = {"Blocks": [
            {"Id": "l3", "BlockType": "LINE", "Page": 2, "Text": "two b"},
            {"Id": "p3", "BlockType": "PAGE", "Page": 3},
            {"Id": "l4", "BlockType": "LINE", "Page": 3, "Text": "three"},
        ]}

        merged = ResultMerger().merge([first, second], expected_pages=3)

        assert [p.page_number for p in merged.pages] == [1, 2, 3]
        assert merged.page_count == 3
        assert [ln.text for ln in merged.pages[1].lines] == ["two a", "two b"]
        assert merged.text == "one\ntwo a\ntwo b\nthree"

    def test_key_value_split_across_textract_shards(self):
        blocks = _kv_blocks()
        value_side = [b for b in blocks if b["Id"] in {"v1", "w3"}]
        key_side   = [b for b in blocks if b["Id"] not in {"v1", "w3"}]

        merged = ResultMerger().merge([{"Blocks": key_side}, {"Blocks": value_side}])

        assert len(merged.entities) == 1
        assert merged.entities[0].type == "Invoice Number"
        assert merged.entities[0].text == "INV-42"

    def test_continuation_only_shard_is_used(self, textract_shard):
        tail = {"Blocks": [{"Id": "tail", "BlockType": "LINE", "Page": 2, "Text": "tail line"}]}

        merged = ResultMerger().merge([textract_shard(1, 2), tail])

        assert merged.page_count == 2
        assert [ln.text for ln in merged.pages[1].lines] == ["Line on page 2", "tail line"]

    def test_page_count_mismatch_is_logged(self, textract_shard, caplog):
        with caplog.at_level(logging.WARNING, logger="docproc.extraction.merger"):
            merged = ResultMerger().merge([textract_shard(1, 2)], expected_pages=5)
        assert merged.page_count == 2
        assert "reported=5" in caplog.text

    def test_zero_usable_shards_raises_merge_error(self):
        with pytest.raises(MergeError):
            ResultMerger().merge([{"unexpected": True}, {"Blocks": []}])

    def test_merge_error_is_permanent(self):
        with pytest.raises(PermanentExtractionError):
            ResultMerger().merge([])

    def test_malformed_shards_are_skipped(self, textract_shard):
        shards = [
            {"nothing": "here"},
            textract_shard(1, 3),
            {"document": {"text": 12345}},           # text is not a string
            ["not", "an", "object"],
        ]
        merged = ResultMerger().merge(shards)
        assert merged.page_count == 3
        assert merged.text.startswith("Line on page 1")

    @pytest.mark.parametrize("wrap", [
        lambda d: {"document": d},
        lambda d: {"responses": [{"document": d}]},
        lambda d: {"response": {"document": d}},
        lambda d: d,
    ], ids=["document", "responses", "response", "bare"])
    def test_document_shaped_payloads(self, wrap):
        payload = _document_payload("first page\nsecond page", [1, 2])

        merged = ResultMerger().merge([wrap(payload)])

        assert merged.text == "first page\nsecond page"
        assert merged.page_count == 2
        assert merged.pages[1].lines[0].text == "second page"

    def test_document_entities_use_one_based_page(self):
        payload = _document_payload("Total 10", [1])
        payload["entities"] = [{
            "type": "total_amount",
            "mentionText": "10",
            "confidence": 0.8,
            "pageAnchor": {"pageRefs": [{
                "page": "0",
                "boundingPoly": {"normalizedVertices": [
                    {"x": 0.1, "y": 0.1}, {"x": 0.5, "y": 0.1}, {"x": 0.5, "y": 0.3}, {"x": 0.1, "y": 0.3},
                ]},
            }]},
        }]

        entity = ResultMerger().merge([{"document": payload}]).entities[0]

        assert entity.page_number == 1
        assert entity.bounding_box["width"] == pytest.approx(0.4)
        assert entity.bounding_box["height"] == pytest.approx(0.2)

    def test_mixed_shapes_merge(self, textract_shard):
        merged = ResultMerger().merge([
            textract_shard(1, 1),
            {"document": _document_payload("from a document shard", [2])},
        ])
        assert merged.page_count == 2
        assert merged.text == "Line on page 1\nfrom a document shard"
        second_line = merged.pages[1].lines[0]
        assert merged.text[second_line.start:second_line.end] == "from a document shard"
