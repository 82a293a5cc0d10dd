import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.brand_dictionary import BrandDictionary  # noqa: E402
from services.header_detector import text_rows  # noqa: E402
from services.table_parser import FALLBACK, HEADER_BASED, HEURISTIC, TableParser  # noqa: E402
from utils.procurement_schema import NormalizedDocument, SourceType, TextToken  # noqa: E402


@pytest.fixture
def parser(tmp_path):
    path = tmp_path / "brands.json"
    path.write_text(json.dumps({"categories": [{"name": "Bearings", "brands": ["SKF"]}]}), encoding="utf-8")
    return TableParser(brands=BrandDictionary(path))


def _document(*lines):
    text = "\n".join(lines)
    return NormalizedDocument(
        source_type=SourceType.EMAIL_TEXT,
        source_name="email_body",
        raw_text=text,
        rows=tuple(row for row in text_rows(text) if row.raw),
    )


def test_header_based_parse(parser):
    document = _document(
        "Line Qty UOM Description",
        "1 10 EA First item",
        "2 5 SET Second item",
        "3 2 EA Third item",
    )

    result = parser.parse_document(document)

    assert result.extraction_method == HEADER_BASED
    assert [item.quantity for item in result.items] == [10, 5, 2]
    assert [item.unit for item in result.items] == ["EA", "SET", "EA"]
    assert not result.fallback_triggered
    assert result.warnings == []
    assert result.zone.detection_method == "header-based"
    assert result.zone.end_reason == "end-of-document"
    assert result.layout_stats is None


def test_too_few_header_items_trigger_fallback(parser):
    document = _document("Line Qty UOM Description", "1 10 EA First item", "2 5 SET Second item")

    result = parser.parse_document(document)

    assert result.extraction_method == FALLBACK
    assert result.fallback_triggered
    assert result.items_before_fallback == 2
    assert result.fallback_reason == "Header-based parsing yielded only 2 items (< 3)"
    assert len(result.items) == 2
    assert result.to_json()["fallback_reason"] == result.fallback_reason


def test_form_metadata_header_recorded_as_warning(parser):
    document = _document("Fleet Number / Activity code / GL Code / WO", "1 10 EA Brake pad kit")

    result = parser.parse_document(document)

    assert not result.header.found
    assert result.header.is_form_metadata
    assert result.extraction_method == HEURISTIC
    assert result.warnings[0] == "Header rejected: Line is form metadata (not item table header)"
    assert [item.description for item in result.items] == ["Brake pad kit"]


def test_rejected_candidate_reported_with_reason(parser):
    document = _document("Please quote", "2 x Roulement SKF 6205")

    result = parser.parse_document(document)

    assert result.warnings[0].startswith("Header rejected: ")
    assert result.extraction_method == HEURISTIC
    assert result.items[0].brand == "SKF"


def test_terms_section_bounds_extraction(parser):
    document = _document(
        "Line Qty UOM Description",
        "1 10 EA First item",
        "2 5 SET Second item",
        "3 2 EA Third item",
        "Terms and conditions",
        "4 1 EA Not an item",
    )

    result = parser.parse_document(document)

    assert len(result.items) == 3
    assert result.zone.end_reason == "keyword"
    assert result.zone.end_line == 3


def test_layout_stats_for_positioned_tokens(parser):
    tokens = (
        TextToken("2", 10, 100, 6, 10),
        TextToken("EA", 30, 101, 14, 10),
        TextToken("Hydraulic", 60, 99, 50, 10),
        TextToken("pump", 115, 100, 25, 10),
        TextToken("4", 10, 130, 6, 10),
        TextToken("PCS", 30, 131, 18, 10),
        TextToken("Seal", 60, 130, 22, 10),
        TextToken("kit", 85, 130, 14, 10),
    )
    document = NormalizedDocument(source_type=SourceType.PDF, source_name="scan.pdf", tokens=tokens)

    result = parser.parse_document(document)

    assert result.warnings[0] == "No header row detected - using heuristic parsing"
    assert result.layout_stats == {
        "total_pages": 1,
        "total_tokens": 8,
        "total_rows": 0,
        "avg_cells_per_row": 0.0,
        "median_gap_x": 13.0,
    }
    assert [item.description for item in result.items] == ["Hydraulic pump", "Seal kit"]
