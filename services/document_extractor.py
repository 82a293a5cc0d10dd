"""Route procurement attachments to the extractor for their format.

The router only decides *which* extractor handles a file; every extractor
returns a :class:`NormalizedDocument` (or ``None`` when nothing could be
recovered) so the downstream header detection and item extraction never
see format specific structures.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from services.excel_extractor import ExcelExtractor
from services.header_detector import text_rows
from services.ocr_pipeline import OCREngine
from services.pdf_extractor import PdfExtractor
from services.word_extractor import WordExtractor
from utils.procurement_schema import NormalizedDocument, SourceType

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    PDF = "pdf"
    EXCEL = "excel"
    WORD = "word"
    IMAGE = "image"
    TEXT = "text"
    OTHER = "other"


EXTENSION_KINDS = {
    ".pdf": DocumentKind.PDF,
    ".xlsx": DocumentKind.EXCEL,
    ".xlsm": DocumentKind.EXCEL,
    ".xls": DocumentKind.EXCEL,
    ".csv": DocumentKind.EXCEL,
    ".docx": DocumentKind.WORD,
    ".doc": DocumentKind.WORD,
    ".png": DocumentKind.IMAGE,
    ".jpg": DocumentKind.IMAGE,
    ".jpeg": DocumentKind.IMAGE,
    ".gif": DocumentKind.IMAGE,
    ".bmp": DocumentKind.IMAGE,
    ".tif": DocumentKind.IMAGE,
    ".tiff": DocumentKind.IMAGE,
    ".webp": DocumentKind.IMAGE,
    ".txt": DocumentKind.TEXT,
}

CONTENT_TYPE_KINDS = (
    ("application/pdf", DocumentKind.PDF),
    ("spreadsheet", DocumentKind.EXCEL),
    ("ms-excel", DocumentKind.EXCEL),
    ("text/csv", DocumentKind.EXCEL),
    ("wordprocessing", DocumentKind.WORD),
    ("msword", DocumentKind.WORD),
    ("image/", DocumentKind.IMAGE),
    ("text/plain", DocumentKind.TEXT),
)

_IMAGE_MAGIC = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",
    b"GIF87a",
    b"GIF89a",
    b"BM",
    b"II*\x00",
    b"MM\x00*",
)


def detect_document_kind(
    filename: str,
    content_type: Optional[str] = None,
    content: Optional[bytes] = None,
) -> DocumentKind:
    """Classify a file by extension, then MIME type, then magic bytes."""

    kind = EXTENSION_KINDS.get(Path(filename or "").suffix.lower())
    if kind is not None:
        return kind
    lowered = (content_type or "").lower()
    for marker, candidate in CONTENT_TYPE_KINDS:
        if marker in lowered:
            return candidate
    head = (content or b"")[:16]
    if head.startswith(b"%PDF"):
        return DocumentKind.PDF
    if any(head.startswith(magic) for magic in _IMAGE_MAGIC):
        return DocumentKind.IMAGE
    if head.startswith(b"PK"):
        # Office Open XML containers cannot be told apart without unzipping.
        return DocumentKind.EXCEL if b"xl/" in (content or b"")[:4096] else DocumentKind.WORD
    return DocumentKind.OTHER


class DocumentExtractor:
    """Turn attachment bytes into a :class:`NormalizedDocument`."""

    def __init__(
        self,
        *,
        ocr_engine: Optional[OCREngine] = None,
        pdf_extractor: Optional[PdfExtractor] = None,
        excel_extractor: Optional[ExcelExtractor] = None,
        word_extractor: Optional[WordExtractor] = None,
    ) -> None:
        self.ocr_engine = ocr_engine or OCREngine()
        self.pdf_extractor = pdf_extractor or PdfExtractor(ocr_engine=self.ocr_engine)
        self.excel_extractor = excel_extractor or ExcelExtractor()
        self.word_extractor = word_extractor or WordExtractor()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(
        self,
        content: bytes,
        filename: str,
        content_type: Optional[str] = None,
        *,
        kind: Optional[DocumentKind] = None,
    ) -> Optional[NormalizedDocument]:
        """Route ``content`` to its reader.

        ``None`` means nothing usable was found.  A file no reader can open
        raises :class:`~utils.procurement_schema.DocumentReadError`.
        """

        kind = kind or detect_document_kind(filename, content_type, content)
        logger.debug("document_route kind=%s source=%s", kind.value, filename)
        if kind is DocumentKind.PDF:
            return self.pdf_extractor.extract(content, filename)
        if kind is DocumentKind.EXCEL:
            return self.excel_extractor.extract(content, filename)
        if kind is DocumentKind.WORD:
            return self.word_extractor.extract(content, filename)
        if kind is DocumentKind.IMAGE:
            return self._extract_image(content, filename)
        if kind is DocumentKind.TEXT:
            return self._extract_text(content, filename)
        logger.warning("Unsupported document format: %s (%s)", filename, content_type)
        return None

    def extract_path(self, source: Path | str) -> Optional[NormalizedDocument]:
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Document not found at {path}")
        return self.extract(path.read_bytes(), path.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _extract_image(self, content: bytes, filename: str) -> Optional[NormalizedDocument]:
        result = self.ocr_engine.image_to_text(content)
        if not result.text.strip():
            logger.warning("OCR recovered no text from image %s", filename)
            return None
        logger.info("image_ocr source=%s chars=%d", filename, result.char_count)
        return NormalizedDocument(
            source_type=SourceType.IMAGE,
            source_name=filename,
            raw_text=result.text,
            rows=tuple(row for row in text_rows(result.text) if row.raw),
            page_count=1,
            ocr_used_pages=(1,),
            ocr_method=result.method or "ocr",
            needs_verification=True,
            warnings=tuple(result.warnings),
        )

    @staticmethod
    def _extract_text(content: bytes, filename: str) -> Optional[NormalizedDocument]:
        text = (content or b"").decode("utf-8", errors="replace")
        if not text.strip():
            return None
        return NormalizedDocument(
            source_type=SourceType.EMAIL_TEXT,
            source_name=filename,
            raw_text=text,
            rows=tuple(row for row in text_rows(text) if row.raw),
        )


__all__ = ["DocumentExtractor", "DocumentKind", "detect_document_kind"]
