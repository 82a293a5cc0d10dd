import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.header_detector import (  # noqa: E402
    HeaderDetector,
    header_tokens,
    text_rows,
)
from utils.procurement_schema import (  # noqa: E402
    ColumnType,
    HeaderOrigin,
    NormalizedDocument,
    SourceType,
)


@pytest.fixture
def detector():
    return HeaderDetector()


def _rows(*lines):
    return text_rows("\n".join(lines))


def test_simple_header_found_on_first_line(detector):
    rows = _rows("Line Qty UOM Description", "1 10 EA First item", "2 5 SET Second item")

    header = detector.detect_in_rows(rows)

    assert header.found
    assert header.line_index == 0
    assert header.column_types == {
        ColumnType.LINE_NO,
        ColumnType.QTY,
        ColumnType.UOM,
        ColumnType.DESCRIPTION,
    }
    # 3 + 3 + 2 + 3 plus the line/qty, qty/uom and description bonuses
    assert header.score == pytest.approx(18.0)


def test_header_after_title_line(detector):
    rows = _rows(
        "Purchase Requisition",
        "Line Quantity UOM Item Code Part Number Item Description",
        "1 10 EA 12345 ABC-123 Test item description",
        "2 4 EA 67890 XYZ-456 Second test item",
    )

    header = detector.detect_in_rows(rows)

    assert header.found
    assert header.line_index == 1
    assert ColumnType.DESCRIPTION in header.column_types
    assert ColumnType.PART_NUMBER in header.column_types


def test_form_metadata_row_is_rejected(detector):
    rows = _rows("Fleet Number / Activity code / GL Code / WO", "1 10 EA Brake pad")

    header = detector.detect_in_rows(rows)

    assert not header.found
    assert header.is_form_metadata
    assert header.rejection_reason == "Line is form metadata (not item table header)"


def test_is_form_metadata_needs_two_keywords(detector):
    assert detector.is_form_metadata("Requestor: J. Doe / Cost Center 4410")
    assert not detector.is_form_metadata("Purchase Requisition")


def test_quantity_only_row_is_not_a_header(detector):
    detection = detector.score_cells(["Qty"], 0)
    assert not detection.found
    assert detection.rejection_reason.startswith("Missing description column")


def test_low_score_row_is_rejected(detector):
    detection = detector.score_cells(["Remarks", "Description"], 0)
    assert not detection.found
    assert detection.rejection_reason.startswith("Score")


def test_header_wrapped_over_two_lines(detector):
    rows = _rows("Line Qty", "UOM Description", "1 10 EA First item")

    header = detector.detect_in_rows(rows)

    assert header.found
    assert header.line_index == 0
    assert header.spans_two_lines
    assert ColumnType.DESCRIPTION in header.column_types


def test_detect_prefers_rows_then_tables_then_raw_text(detector):
    table = (
        ("Item Code", "Description", "Qty", "UOM"),
        ("12345", "Hydraulic filter", "4", "EA"),
    )
    document = NormalizedDocument(
        source_type=SourceType.EXCEL,
        source_name="sheet.xlsx",
        raw_text="12345\tHydraulic filter\t4\tEA",
        tables=(table,),
    )

    header = detector.detect(document)

    assert header.found
    assert header.origin is HeaderOrigin.TABLES
    assert header.table_index == 0
    assert header.column_for(ColumnType.QTY).column_index == 2


def test_detect_falls_back_to_raw_text(detector):
    document = NormalizedDocument(
        source_type=SourceType.EMAIL_TEXT,
        source_name="email_body",
        raw_text="Hello,\nQty\tUOM\tDescription\n2\tEA\tV-belt",
    )

    header = detector.detect(document)

    assert header.found
    assert header.origin is HeaderOrigin.RAW_TEXT
    assert header.line_index == 1


def test_detect_returns_sentinel_when_nothing_matches(detector):
    document = NormalizedDocument(
        source_type=SourceType.EMAIL_TEXT,
        source_name="email_body",
        raw_text="Please send us your best offer",
    )

    header = detector.detect(document)

    assert not header.found
    assert header.score == 0
    assert header.line_index == -1


def test_zone_ends_at_terms_keyword(detector):
    rows = _rows(
        "Line Qty UOM Description",
        "1 10 EA First item",
        "2 5 SET Second item",
        "3 2 EA Third item",
        "Terms and conditions apply",
    )
    header = detector.detect_in_rows(rows)

    zone = detector.detect_zone(rows, header)

    assert zone.start_line == 1
    assert zone.end_line == 3
    assert zone.detection_method == "header-based"
    assert zone.end_reason == "keyword"
    assert zone.to_json()["zone_line_count"] == 3


def test_zone_ends_before_repeated_header(detector):
    rows = _rows(
        "Line Qty UOM Description",
        "1 10 EA First item",
        "2 5 SET Second item",
        "Line Qty UOM Description",
        "3 2 EA Third item",
    )
    header = detector.detect_in_rows(rows)

    zone = detector.detect_zone(rows, header)

    assert zone.end_line == 2
    assert zone.end_reason == "repeated-header"


def test_zone_without_header_uses_quantity_anchor(detector):
    rows = _rows("Hello team", "please quote", "2 EA hydraulic pump", "3 PCS seal kit")

    zone = detector.detect_zone(rows, None)

    assert zone.start_line == 2
    assert zone.detection_method == "heuristic"
    assert zone.end_reason == "end-of-document"


def test_header_reappearance_threshold():
    tokens = header_tokens("Line Qty UOM Description")
    assert HeaderDetector.is_header_reappearance("LINE QTY UOM DESCRIPTION", tokens)
    assert not HeaderDetector.is_header_reappearance("1 10 EA First item", tokens)
