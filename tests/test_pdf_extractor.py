import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.ocr_pipeline import OCREngine, OCRResult  # noqa: E402
from services.pdf_extractor import PdfExtractor, PdfExtractorConfig, _PlumberOutput  # noqa: E402
from utils.procurement_schema import DocumentReadError  # noqa: E402

TABLE_TEXT = "Qty UOM Description\n2 EA Hydraulic pump assembly\n4 PCS Seal kit for cylinder"


class _FixtureOCR(OCREngine):
    def __init__(self, text: str = "") -> None:
        super().__init__()
        self.text = text
        self.calls = 0

    def pdf_to_text(self, content, pages=None) -> OCRResult:
        self.calls += 1
        return OCRResult(text=self.text, method="fixture" if self.text else None, pages=(1,) if self.text else ())


def _pdf(text=None):
    fitz = pytest.importorskip("fitz")
    document = fitz.open()
    page = document.new_page()
    if text:
        page.insert_text((72, 72), text, fontsize=11)
    data = document.tobytes()
    document.close()
    return data


def _extractor(ocr_text=""):
    ocr = _FixtureOCR(ocr_text)
    return PdfExtractor(config=PdfExtractorConfig(), ocr_engine=ocr), ocr


def test_text_pdf_stays_on_pdfplumber():
    pytest.importorskip("pdfplumber")
    extractor, ocr = _extractor("should not be used")

    document = extractor.extract(_pdf(TABLE_TEXT), "quote.pdf")

    assert "Hydraulic pump assembly" in document.raw_text
    assert document.tokens
    assert document.page_count == 1
    assert document.ocr_used_pages == ()
    assert not document.needs_verification
    assert ocr.calls == 0


def test_image_only_pdf_falls_through_to_ocr():
    extractor, ocr = _extractor("2 x Hydraulic pump assembly for loader")

    document = extractor.extract(_pdf(), "scan.pdf")

    assert ocr.calls == 1
    assert document.raw_text == "2 x Hydraulic pump assembly for loader"
    assert document.ocr_used_pages == (1,)
    assert document.ocr_method == "fixture"
    assert document.needs_verification
    assert document.tokens == ()


def test_short_ocr_text_is_rejected():
    pytest.importorskip("pdfplumber")
    extractor, ocr = _extractor("Pump")

    document = extractor.extract(_pdf("Pump P-100"), "short.pdf")

    assert ocr.calls == 1
    assert "ocr_insufficient_text" in document.warnings
    assert document.raw_text.strip() == "Pump P-100"
    assert document.ocr_method is None
    assert not document.needs_verification


def test_empty_scan_with_no_ocr_text_gives_nothing():
    extractor, _ = _extractor("")

    assert extractor.extract(_pdf(), "blank.pdf") is None


def test_unopenable_pdf_raises():
    pytest.importorskip("pdfplumber")
    pytest.importorskip("fitz")
    extractor, ocr = _extractor("")

    with pytest.raises(DocumentReadError):
        extractor.extract(b"this is not a pdf", "broken.pdf")
    assert ocr.calls == 0


def test_reader_failures_without_libraries(monkeypatch):
    extractor, _ = _extractor("")

    def plumber_failed(content, warnings):
        warnings.append("pdfplumber_failed")
        return _PlumberOutput()

    def pymupdf_missing(content, warnings):
        warnings.append("pymupdf_unavailable")
        return "", 0

    monkeypatch.setattr(extractor, "_read_with_pdfplumber", plumber_failed)
    monkeypatch.setattr(extractor, "_read_with_pymupdf", pymupdf_missing)

    with pytest.raises(DocumentReadError, match="No PDF reader"):
        extractor.extract(b"%PDF-1.4", "broken.pdf")


def test_pymupdf_text_used_when_pdfplumber_recovers_little(monkeypatch):
    extractor, ocr = _extractor("")
    monkeypatch.setattr(
        extractor, "_read_with_pdfplumber", lambda content, warnings: _PlumberOutput(text="x", page_count=1)
    )
    monkeypatch.setattr(extractor, "_read_with_pymupdf", lambda content, warnings: (TABLE_TEXT, 1))

    document = extractor.extract(b"%PDF-1.4", "quote.pdf")

    assert document.raw_text == TABLE_TEXT
    assert document.tokens == ()
    assert ocr.calls == 0
