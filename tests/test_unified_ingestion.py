import json
import os
import sys
from email.message import EmailMessage

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.brand_dictionary import BrandDictionary  # noqa: E402
from services.email_message import EmailAttachment, IncomingEmail, parse_email_bytes  # noqa: E402
from services.ocr_pipeline import OCREngine, OCRResult  # noqa: E402
from services.parse_log import ParseLogService  # noqa: E402
from services.unified_ingestion import (  # noqa: E402
    UnifiedIngestionService,
    extract_nameplate_item,
    extract_rfq_number,
)
from utils.procurement_schema import PriceRequestItem  # noqa: E402

BODY = (
    "Hello,\n"
    "Please send your best price for the items below.\n"
    "Line Qty UOM Description\n"
    "1 10 EA Bearing housing\n"
    "2 5 SET Seal kit assembly\n"
    "3 2 EA Grease nipple\n"
    "Best regards"
)
NAMEPLATE_TEXT = "CATERPILLAR\nP/N: 1R-0750\nMODEL: 320D\nS/N: ABC12345"


class _FixtureOCR(OCREngine):
    def __init__(self, text: str = "") -> None:
        super().__init__()
        self.text = text

    def image_to_text(self, content: bytes) -> OCRResult:
        return OCRResult(text=self.text, method="fixture" if self.text else None, pages=(1,))


class _BrokenPdfExtractor:
    def extract(self, content, filename, content_type=None, *, kind=None):
        raise ValueError("broken xref")


@pytest.fixture
def brands(tmp_path):
    path = tmp_path / "brands.json"
    path.write_text(
        json.dumps({"categories": [{"name": "Heavy equipment", "brands": ["SKF", "CATERPILLAR"]}]}),
        encoding="utf-8",
    )
    return BrandDictionary(path)


@pytest.fixture
def log_service(tmp_path):
    return ParseLogService(tmp_path / "logs")


def _service(brands, log_service, **kwargs):
    kwargs.setdefault("ocr_engine", _FixtureOCR(NAMEPLATE_TEXT))
    return UnifiedIngestionService(brands=brands, parse_log_service=log_service, **kwargs)


def test_email_body_items_with_subject_brand(brands, log_service):
    email = IncomingEmail(
        subject="RFQ PR000123 - SKF bearings",
        body_text=BODY,
        attachments=[
            EmailAttachment(filename="winmail.dat", content=b"\x00\x01", content_type="application/ms-tnef"),
            EmailAttachment(filename="notes.txt", content=b"call me", content_type="text/plain"),
        ],
    )

    result = _service(brands, log_service).process_email(email, "req-1")

    assert [item.description for item in result.items] == [
        "Bearing housing",
        "Seal kit assembly",
        "Grease nipple",
    ]
    assert {item.brand for item in result.items} == {"SKF"}
    assert result.rfq_number == "000123"
    assert not result.needs_verification
    assert result.warnings == [
        "Unsupported attachment skipped: winmail.dat",
        "Unsupported attachment skipped: notes.txt",
    ]
    assert result.log_path == log_service.output_dir / "req-1.parse-log.json"
    assert log_service.load_log("req-1").line_count == 3
    payload = result.to_json()
    assert payload["request_id"] == "req-1"
    assert payload["items"][0]["quantity"] == 10


def test_failing_attachment_is_isolated(brands, log_service):
    email = IncomingEmail(
        subject="Demande de prix",
        body_text=BODY,
        attachments=[EmailAttachment(filename="quote.pdf", content=b"%PDF-1.4", content_type="application/pdf")],
    )
    service = _service(brands, log_service, persist_logs=False)
    service.document_extractor.pdf_extractor = _BrokenPdfExtractor()

    result = service.process_email(email, "req-2")

    assert len(result.items) == 3
    assert result.parse_log.errors == ["PDF quote.pdf: broken xref"]
    assert result.needs_verification
    assert result.log_path is None
    assert not log_service.log_path("req-2").exists()


def test_corrupt_word_attachment_is_recorded_as_error(brands, log_service):
    pytest.importorskip("docx")
    email = IncomingEmail(
        subject="RFQ PR000123",
        body_text=BODY,
        attachments=[EmailAttachment(filename="bad.docx", content=b"garbage")],
    )

    result = _service(brands, log_service, persist_logs=False).process_email(email, "req-4")

    assert len(result.items) == 3
    assert len(result.parse_log.errors) == 1
    assert result.parse_log.errors[0].startswith("WORD bad.docx: Unreadable Word document")
    assert result.needs_verification


def test_corrupt_spreadsheet_document_is_recorded_as_error(brands, log_service):
    pytest.importorskip("pandas")
    pytest.importorskip("openpyxl")

    result = _service(brands, log_service, persist_logs=False).process_document(b"PK\x03\x04garbage", "x.xlsx")

    assert result.items == []
    assert result.parse_log.errors[0].startswith("EXCEL x.xlsx: Unreadable spreadsheet")
    assert result.needs_verification


def test_subject_brand_replaces_fuzzy_false_positive(tmp_path, log_service):
    path = tmp_path / "volvo.json"
    path.write_text(
        json.dumps({"categories": [{"name": "Mixed", "brands": ["VOLVO", "FIRETROL"]}]}),
        encoding="utf-8",
    )
    body = BODY.replace("Bearing housing", "Element FILTRE huile")
    email = IncomingEmail(subject="Demande de prix VOLVO", body_text=body)

    result = _service(BrandDictionary(path), log_service, persist_logs=False).process_email(email, "req-5")

    assert result.items[0].description == "Element FILTRE huile"
    assert {item.brand for item in result.items} == {"VOLVO"}


def test_process_document_plain_text(brands, log_service):
    content = (
        "Qty  UOM  Description\n"
        "2  EA  Hydraulic pump\n"
        "4  PCS  Seal kit assembly\n"
        "1  SET  Gasket kit large\n"
    ).encode("utf-8")

    result = _service(brands, log_service).process_document(content, "list.txt", request_id="doc-1")

    assert [item.quantity for item in result.items] == [2, 4, 1]
    assert result.parse_log.detected_input_types == ["email_text"]
    assert result.parse_log.extraction_paths == ["email_text:text"]
    assert result.parse_log.extraction_method == "header-based"
    assert result.warnings == []


def test_brand_in_attachment_name_fills_items(brands, log_service):
    content = (
        "Qty  UOM  Description\n"
        "2  EA  Hydraulic pump\n"
        "4  PCS  Seal kit assembly\n"
        "1  SET  Gasket kit large\n"
    ).encode("utf-8")

    result = _service(brands, log_service, persist_logs=False).process_document(content, "SKF_list.txt")

    assert [item.brand for item in result.items] == ["SKF", "SKF", "SKF"]


def test_nameplate_photo_becomes_review_item(brands, log_service):
    content = b"\xff\xd8\xff" + b"\x00" * 60000

    result = _service(brands, log_service).process_document(content, "nameplate.jpg", request_id="img-1")

    (item,) = result.items
    assert item.description == "Spare part (see image: nameplate.jpg)"
    assert item.supplier_code == "1R-0750"
    assert item.model == "320D"
    assert item.serial_number == "ABC12345"
    assert item.brand == "CATERPILLAR"
    assert item.needs_manual_review
    assert result.needs_verification
    assert result.parse_log.ocr_used
    assert result.parse_log.extraction_paths == ["image:ocr", "nameplate"]


def test_small_image_attachment_is_filtered(brands, log_service):
    result = _service(brands, log_service).process_document(b"\xff\xd8\xff" + b"\x00" * 100, "photo.jpg")

    assert result.items == []
    assert result.needs_verification
    assert result.parse_log.filtered_images[0]["name"] == "photo.jpg"


def test_fallback_parser_used_when_no_items(brands, log_service):
    calls = []

    def fallback(document):
        calls.append(document.source_name)
        return [PriceRequestItem(description="Gearbox overhaul kit", quantity=1)]

    email = IncomingEmail(subject="Request", body_text="Could you quote a gearbox overhaul kit?")
    result = _service(brands, log_service, fallback_parser=fallback).process_email(email, "req-3")

    assert calls == ["email_body"]
    assert [item.description for item in result.items] == ["Gearbox overhaul kit"]
    assert "fallback_parser" in result.parse_log.extraction_paths


@pytest.mark.parametrize(
    "texts,expected",
    [
        (("Purchase Requisition No: 4500123",), "4500123"),
        (("RE: RFQ-2024-0042 bearings",), "2024-0042"),
        (("Devis N° DV2024017",), "DV2024017"),
        (("Hello", "see ABC-12345 attached"), "ABC-12345"),
        (("Ref: xy",), None),
        ((None, ""), None),
    ],
)
def test_extract_rfq_number(texts, expected):
    assert extract_rfq_number(*texts) == expected


def test_extract_nameplate_item_needs_an_identifier():
    assert extract_nameplate_item("just some words", "x.jpg") is None
    item = extract_nameplate_item("TYPE: KSB-ETN100", "pump.jpg")
    assert item.model == "KSB-ETN100"
    assert item.is_estimated


def test_parse_email_bytes_reads_body_and_attachments():
    message = EmailMessage()
    message["Subject"] = "RFQ PR000777"
    message["From"] = "buyer@example.com"
    message["Message-ID"] = "<abc@example.com>"
    message.set_content("2 x Roulement SKF 6205")
    message.add_attachment(b"%PDF-1.4", maintype="application", subtype="pdf", filename="quote.pdf")

    email = parse_email_bytes(message.as_bytes())

    assert email.subject == "RFQ PR000777"
    assert email.body_text == "2 x Roulement SKF 6205"
    assert email.message_id == "abc@example.com"
    assert [attachment.filename for attachment in email.attachments] == ["quote.pdf"]
    assert email.attachments[0].content == b"%PDF-1.4"
