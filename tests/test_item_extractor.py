import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.header_detector import HeaderDetector, text_rows  # noqa: E402
from services.item_extractor import (  # noqa: E402
    ExtractionStrategy,
    ItemExtractor,
    is_noise_line,
    match_line_pattern,
    parse_quantity,
    select_strategy,
    spec_line_patterns,
)
from utils.procurement_schema import (  # noqa: E402
    HeaderDetection,
    NormalizedDocument,
    SourceType,
    TextToken,
)


@pytest.fixture
def extractor():
    return ItemExtractor()


def _text_document(text, source_type=SourceType.EMAIL_TEXT):
    return NormalizedDocument(
        source_type=source_type,
        source_name="body",
        raw_text=text,
        rows=tuple(row for row in text_rows(text) if row.raw),
    )


def test_rows_with_header_yield_typed_items(extractor):
    document = _text_document("Line Qty UOM Description\n1 10 EA First item\n2 5 SET Second item")
    header = HeaderDetector().detect(document)

    outcome = extractor.extract(document, header)

    assert outcome.strategy is ExtractionStrategy.ROWS
    assert [item.description for item in outcome.items] == ["First item", "Second item"]
    assert [item.quantity for item in outcome.items] == [10, 5]
    assert [item.unit for item in outcome.items] == ["EA", "SET"]
    assert [item.original_line for item in outcome.items] == [1, 2]


def test_tables_map_cells_by_header_columns(extractor):
    table = (
        ("Item Code", "Description", "Qty", "UOM"),
        ("12345", "Hydraulic filter", "4", "EA"),
        ("67890", "Seal kit", "2,5", "SET"),
    )
    document = NormalizedDocument(
        source_type=SourceType.EXCEL, source_name="rfq.xlsx", tables=(table,)
    )
    header = HeaderDetector().detect(document)

    outcome = extractor.extract(document, header)

    assert outcome.strategy is ExtractionStrategy.TABLES
    first, second = outcome.items
    assert first.internal_code == "12345"
    assert first.description == "Hydraulic filter"
    assert first.quantity == 4
    assert second.quantity == 2.5
    assert second.unit == "SET"


def test_invalid_quantity_defaults_to_one(extractor):
    table = (
        ("Description", "Qty", "UOM"),
        ("Brake pad", "abc", "EA"),
        ("Wiper blade", "250000", "EA"),
    )
    document = NormalizedDocument(source_type=SourceType.EXCEL, source_name="rfq.xlsx", tables=(table,))
    header = HeaderDetector().detect(document)

    outcome = extractor.extract(document, header)

    assert [item.quantity for item in outcome.items] == [1.0, 1.0]
    assert all(item.is_estimated for item in outcome.items)


def test_free_text_patterns_without_header(extractor):
    document = _text_document(
        "Bonjour,\n"
        "Merci de nous faire une offre pour:\n"
        "3 x Roulement SKF 6205-2RS\n"
        "2 PCS Joint torique 45x3\n"
        "Cordialement"
    )

    outcome = extractor.extract(document, HeaderDetection.not_found())

    descriptions = [item.description for item in outcome.items]
    assert "Roulement SKF 6205-2RS" in descriptions
    assert "Joint torique 45x3" in descriptions
    assert outcome.noise_lines >= 2


def test_positions_grouped_by_y(extractor):
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

    outcome = extractor.extract(document, HeaderDetection.not_found())

    assert outcome.strategy is ExtractionStrategy.POSITIONS
    assert [item.description for item in outcome.items] == ["Hydraulic pump", "Seal kit"]
    assert [item.quantity for item in outcome.items] == [2, 4]


def test_select_strategy_follows_populated_variant():
    not_found = HeaderDetection.not_found()
    tokens = NormalizedDocument(
        source_type=SourceType.PDF, source_name="a.pdf", tokens=(TextToken("x", 0, 0, 1, 1),)
    )
    tables = NormalizedDocument(source_type=SourceType.EXCEL, source_name="a.xlsx", tables=((("a", "b"),),))
    raw = NormalizedDocument(source_type=SourceType.EMAIL_TEXT, source_name="body", raw_text="text")
    assert select_strategy(tokens, not_found) is ExtractionStrategy.POSITIONS
    assert select_strategy(tables, not_found) is ExtractionStrategy.TABLES
    assert select_strategy(raw, not_found) is ExtractionStrategy.RAW_TEXT


@pytest.mark.parametrize(
    "line",
    [
        "From: buyer@example.com",
        "Page 1 of 3",
        "Total HT: 1 200 000 FCFA",
        "Capital social 10 000 000 FCFA - RCCM CI-ABJ-2010",
        "Tel: +225 27 22 00 00",
        "Line Qty UOM Description",
        "12/05/2024",
        "--",
    ],
)
def test_noise_lines(line):
    assert is_noise_line(line)


def test_item_lines_are_not_noise():
    assert not is_noise_line("Brake pad set for Caterpillar 320D")
    assert not is_noise_line("1 10 EA First item")


def test_parse_quantity_bounds():
    assert parse_quantity("2,5") == 2.5
    assert parse_quantity(" 10 ") == 10
    assert parse_quantity("0") is None
    assert parse_quantity("100000") == 100000
    assert parse_quantity("100001") is None
    assert parse_quantity("ten") is None
    assert parse_quantity(None) is None


def test_line_pattern_table_order():
    name, groups = match_line_pattern("1 10 EA 12345 Hydraulic filter element")
    assert name == "line_qty_unit_code_description"
    assert groups["code"] == "12345"
    assert groups["description"] == "Hydraulic filter element"

    name, groups = match_line_pattern("5 x Bearing 6205")
    assert name == "qty_x_description"
    assert groups["qty"] == "5"


def test_spec_lines_are_recognised():
    assert "key:value" in spec_line_patterns("Voltage: 24 VDC")
    assert spec_line_patterns("Protection IP65") == ["IP65"]
    assert spec_line_patterns("Brake pad") == []
