import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.brand_dictionary import BrandDictionary  # noqa: E402
from services.email_message import EmailClassification  # noqa: E402
from services.header_detector import text_rows  # noqa: E402
from services.parse_log import ParseLogBuilder, ParseLogService  # noqa: E402
from services.table_parser import TableParser  # noqa: E402
from utils.procurement_schema import (  # noqa: E402
    FilteredImage,
    FilterReason,
    NormalizedDocument,
    SourceType,
)


@pytest.fixture
def service(tmp_path):
    return ParseLogService(tmp_path / "logs")


@pytest.fixture
def extraction(tmp_path):
    brands = tmp_path / "brands.json"
    brands.write_text(json.dumps({"categories": []}), encoding="utf-8")
    text = "Line Qty UOM Description\n1 10 EA First item\n2 5 SET Second item\n3 2 EA Third item"
    document = NormalizedDocument(
        source_type=SourceType.EMAIL_TEXT,
        source_name="email_body",
        raw_text=text,
        rows=tuple(text_rows(text)),
    )
    return TableParser(brands=BrandDictionary(brands)).parse_document(document)


def test_builder_accumulates_sources_and_types():
    log = (
        ParseLogBuilder("req-1")
        .add_source(SourceType.EMAIL_TEXT, "email_body")
        .add_source("excel", "items.xlsx", mime="application/vnd.ms-excel", size=2048)
        .add_source(SourceType.WORD, "rfq.docx")
        .add_source(SourceType.EXCEL, "more.xlsx")
        .build()
    )

    assert [source.name for source in log.sources] == ["email_body", "items.xlsx", "rfq.docx", "more.xlsx"]
    assert log.detected_input_types == ["email_text", "xlsx", "docx"]
    assert log.sources[1].size == 2048
    assert not log.header_detected
    assert log.extraction_method == ""


def test_builder_is_sealed_after_build():
    builder = ParseLogBuilder("req-2").add_warning("first")
    builder.build()

    with pytest.raises(RuntimeError, match="already been built"):
        builder.add_warning("second")
    with pytest.raises(RuntimeError):
        builder.build()


def test_apply_extraction_result(extraction):
    builder = ParseLogBuilder("req-3")
    builder.apply_extraction_result(extraction, "email_body")

    log = builder.build()

    assert log.header_detected
    assert log.header_line_index == 0
    assert log.detected_columns == ["line_no", "qty", "uom", "description"]
    assert log.line_count == 3
    assert log.extraction_method == "header-based"
    entry = log.documents[0]
    assert entry.strategy == "rows"
    assert entry.zone["detection_method"] == "header-based"
    assert entry.confidence["max"] == 100


def test_ocr_images_and_errors():
    builder = (
        ParseLogBuilder("req-4")
        .set_ocr_used([2, 1], "tesseract")
        .set_ocr_used([2], None)
        .add_filtered_images([FilteredImage(name="logo.png", reason=FilterReason.LOGO, size=900)])
        .add_processed_images(["plate.jpg"])
        .add_error("quote.pdf: broken xref")
    )

    assert builder.has_errors
    log = builder.build()

    assert log.ocr_used
    assert log.ocr_used_pages == [1, 2]
    assert log.ocr_method == "tesseract"
    assert log.filtered_images == [{"name": "logo.png", "reason": "logo", "size": 900}]
    assert log.errors == ["quote.pdf: broken xref"]


def test_save_and_load_round_trip(service):
    log = (
        service.create_builder("RFQ 2024/001")
        .set_rfq_number("PR000123")
        .set_classification(EmailClassification(label="offer", score=0.92))
        .set_needs_verification(True)
        .build()
    )

    path = service.save_log(log)

    assert path == service.output_dir / "RFQ_2024_001.parse-log.json"
    assert path.exists()
    loaded = service.load_log("RFQ 2024/001")
    assert loaded == log
    assert loaded.classification == {"label": "offer", "score": 0.92, "reasons": []}


def test_load_missing_or_corrupt_log(service):
    assert service.load_log("nothing-here") is None

    service.output_dir.mkdir(parents=True)
    service.log_path("broken").write_text("{not json", encoding="utf-8")
    assert service.load_log("broken") is None


def test_log_path_sanitizes_request_id(service):
    assert service.log_path("../etc/passwd").name == "etc_passwd.parse-log.json"
    assert service.log_path("///").name == "request.parse-log.json"


def test_save_failure_returns_none(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    service = ParseLogService(blocker)

    assert service.save_log(ParseLogBuilder("req-5").build()) is None


def test_generate_summary_sections(service, extraction):
    log = (
        service.create_builder("req-6")
        .add_source(SourceType.EMAIL_TEXT, "email_body")
        .apply_extraction_result(extraction, "email_body")
        .set_rfq_number("PR000123")
        .add_warning("quote.pdf: Unsupported attachment skipped: quote.pdf")
        .build()
    )

    summary = service.generate_summary(log)
    lines = summary.splitlines()

    assert lines[0] == "=== Parse Log Summary ==="
    assert "Request ID: req-6" in lines
    assert "RFQ Number: PR000123" in lines
    assert "Sources: 1" in lines
    assert "OCR Used: No" in lines
    assert "Header Detection: Yes (score: 18.00)" in lines
    assert "Extraction:" in lines
    assert "  Lines Extracted: 3" in lines
    assert "Warnings: 1" in lines
    assert "Errors: 0" in lines
