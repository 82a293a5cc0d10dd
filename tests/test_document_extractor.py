import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.document_extractor import (  # noqa: E402
    DocumentExtractor,
    DocumentKind,
    detect_document_kind,
)
from services.ocr_pipeline import OCREngine, OCRResult  # noqa: E402
from utils.procurement_schema import SourceType  # noqa: E402


class _FixtureOCR(OCREngine):
    def __init__(self, text: str = "") -> None:
        super().__init__()
        self.text = text
        self.calls = 0

    def image_to_text(self, content: bytes) -> OCRResult:
        self.calls += 1
        return OCRResult(text=self.text, method="fixture" if self.text else None, pages=(1,))


class _RecordingExtractor:
    def __init__(self) -> None:
        self.seen = []

    def extract(self, content, filename):
        self.seen.append(filename)
        return None


@pytest.mark.parametrize(
    "filename,content_type,content,expected",
    [
        ("quote.PDF", None, b"", DocumentKind.PDF),
        ("items.xlsx", None, b"", DocumentKind.EXCEL),
        ("items.csv", None, b"", DocumentKind.EXCEL),
        ("request.docx", None, b"", DocumentKind.WORD),
        ("photo.jpeg", None, b"", DocumentKind.IMAGE),
        ("notes.txt", None, b"", DocumentKind.TEXT),
        ("attachment", "application/pdf", b"", DocumentKind.PDF),
        ("attachment", "image/png", b"", DocumentKind.IMAGE),
        ("blob", None, b"%PDF-1.7 ...", DocumentKind.PDF),
        ("blob", None, b"\x89PNG\r\n\x1a\n....", DocumentKind.IMAGE),
        ("blob", None, b"PK\x03\x04....[Content_Types].xml xl/workbook.xml", DocumentKind.EXCEL),
        ("blob", None, b"PK\x03\x04....word/document.xml", DocumentKind.WORD),
        ("winmail.dat", "application/ms-tnef", b"\x78\x9f", DocumentKind.OTHER),
    ],
)
def test_detect_document_kind(filename, content_type, content, expected):
    assert detect_document_kind(filename, content_type, content) is expected


def test_router_dispatches_by_kind():
    pdf = _RecordingExtractor()
    excel = _RecordingExtractor()
    word = _RecordingExtractor()
    router = DocumentExtractor(
        ocr_engine=_FixtureOCR(), pdf_extractor=pdf, excel_extractor=excel, word_extractor=word
    )

    router.extract(b"%PDF-1.4", "a.pdf")
    router.extract(b"", "b.xlsx")
    router.extract(b"", "c.docx")

    assert (pdf.seen, excel.seen, word.seen) == (["a.pdf"], ["b.xlsx"], ["c.docx"])


def test_image_goes_through_ocr_and_needs_verification():
    ocr = _FixtureOCR("P/N: 1R-0750\nMODEL: 320D")
    router = DocumentExtractor(ocr_engine=ocr)

    document = router.extract(b"\x89PNG\r\n\x1a\n", "plate.png")

    assert ocr.calls == 1
    assert document.source_type is SourceType.IMAGE
    assert document.needs_verification
    assert document.ocr_used_pages == (1,)
    assert document.ocr_method == "fixture"
    assert [row.raw for row in document.rows] == ["P/N: 1R-0750", "MODEL: 320D"]


def test_image_without_text_returns_none():
    router = DocumentExtractor(ocr_engine=_FixtureOCR(""))
    assert router.extract(b"\x89PNG\r\n\x1a\n", "blank.png") is None


def test_plain_text_document():
    router = DocumentExtractor(ocr_engine=_FixtureOCR())

    document = router.extract("Qty\tDescription\n2\tPump".encode("utf-8"), "list.txt")

    assert document.source_type is SourceType.EMAIL_TEXT
    assert document.rows[1].cells == ("2", "Pump")


def test_unsupported_format_returns_none():
    router = DocumentExtractor(ocr_engine=_FixtureOCR())
    assert router.extract(b"\x00\x01", "winmail.dat", "application/ms-tnef") is None


def test_extract_path_missing_file(tmp_path):
    router = DocumentExtractor(ocr_engine=_FixtureOCR())
    with pytest.raises(FileNotFoundError):
        router.extract_path(tmp_path / "missing.pdf")


def test_excel_attachment_round_trip(tmp_path):
    pd = pytest.importorskip("pandas")
    pytest.importorskip("openpyxl")
    path = tmp_path / "rfq.xlsx"
    pd.DataFrame(
        [["Item Code", "Description", "Qty", "UOM"], ["12345", "Hydraulic filter", "4", "EA"]]
    ).to_excel(path, header=False, index=False)

    document = DocumentExtractor(ocr_engine=_FixtureOCR()).extract_path(path)

    assert document.source_type is SourceType.EXCEL
    assert document.tables[0][1] == ("12345", "Hydraulic filter", "4", "EA")


def test_word_attachment_paragraphs_and_tables(tmp_path):
    docx = pytest.importorskip("docx")
    path = tmp_path / "rfq.docx"
    source = docx.Document()
    source.add_paragraph("Please quote the items below")
    table = source.add_table(rows=2, cols=3)
    for cell, value in zip(table.rows[0].cells, ("Qty", "UOM", "Description")):
        cell.text = value
    for cell, value in zip(table.rows[1].cells, ("2", "EA", "Hydraulic pump")):
        cell.text = value
    source.save(str(path))

    document = DocumentExtractor(ocr_engine=_FixtureOCR()).extract_path(path)

    assert document.source_type is SourceType.WORD
    assert "Please quote the items below" in [row.raw for row in document.rows]
    assert document.tables[0] == (("Qty", "UOM", "Description"), ("2", "EA", "Hydraulic pump"))
