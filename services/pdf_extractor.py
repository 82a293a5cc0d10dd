"""PDF attachments to :class:`NormalizedDocument`.

Extraction degrades through three readers, each only tried when the previous
one recovered fewer than ``min_text_chars`` characters:

1. pdfplumber: positioned words (with font size), tables and text;
2. PyMuPDF plain text;
3. Tesseract OCR of the rendered pages.  OCR text is accepted above
   ``min_ocr_chars`` characters and always flags ``needs_verification``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Tuple

from config.settings import settings
from services.ocr_pipeline import OCREngine
from utils.layout import tokens_to_rows
from utils.procurement_schema import (
    DocumentReadError,
    NormalizedDocument,
    SourceType,
    Table,
    TextToken,
    table_from_rows,
)

try:  # pragma: no cover - optional dependency
    import pdfplumber  # type: ignore
except Exception:  # pragma: no cover - pdfplumber is optional
    pdfplumber = None  # type: ignore

try:  # pragma: no cover - optional dependency
    import fitz  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - PyMuPDF is optional
    fitz = None  # type: ignore

logger = logging.getLogger(__name__)

_READERS = ("pdfplumber", "pymupdf")


@dataclass(frozen=True)
class PdfExtractorConfig:
    min_text_chars: int = 50
    min_ocr_chars: int = 20
    y_tolerance: float = 5.0

    @classmethod
    def from_settings(cls) -> "PdfExtractorConfig":
        return cls(
            min_text_chars=settings.pdf_min_text_chars,
            min_ocr_chars=settings.ocr_min_text_chars,
            y_tolerance=settings.position_y_tolerance,
        )


@dataclass
class _PlumberOutput:
    text: str = ""
    tokens: List[TextToken] = field(default_factory=list)
    tables: List[Table] = field(default_factory=list)
    page_count: int = 0


class PdfExtractor:
    def __init__(
        self,
        config: Optional[PdfExtractorConfig] = None,
        ocr_engine: Optional[OCREngine] = None,
    ) -> None:
        self.config = config or PdfExtractorConfig.from_settings()
        self.ocr_engine = ocr_engine or OCREngine()

    def extract(self, content: bytes, filename: str) -> Optional[NormalizedDocument]:
        warnings: List[str] = []
        plumber = self._read_with_pdfplumber(content, warnings)
        text = plumber.text
        page_count = plumber.page_count
        decision = "pdfplumber"

        if len(text.strip()) < self.config.min_text_chars:
            fallback_text, fallback_pages = self._read_with_pymupdf(content, warnings)
            page_count = page_count or fallback_pages
            if len(fallback_text.strip()) > len(text.strip()):
                text = fallback_text
                decision = "pymupdf"

        if _unreadable(warnings):
            raise DocumentReadError("No PDF reader could open the file")

        ocr_pages: Tuple[int, ...] = ()
        ocr_method: Optional[str] = None
        if len(text.strip()) < self.config.min_text_chars:
            result = self.ocr_engine.pdf_to_text(content)
            warnings.extend(result.warnings)
            if result.char_count >= self.config.min_ocr_chars:
                text = result.text
                ocr_pages = result.pages
                ocr_method = result.method or "ocr"
                decision = "ocr"
            else:
                warnings.append("ocr_insufficient_text")

        logger.info(
            "pdf_route decision=%s source=%s pages=%d chars=%d",
            decision,
            filename,
            page_count,
            len(text.strip()),
        )

        tokens = tuple(plumber.tokens) if decision == "pdfplumber" else ()
        rows = tuple(tokens_to_rows(tokens, y_tolerance=self.config.y_tolerance)) if tokens else ()
        tables = tuple(plumber.tables)
        if not (text.strip() or tokens or tables):
            logger.warning("No text recovered from PDF %s", filename)
            return None
        return NormalizedDocument(
            source_type=SourceType.PDF,
            source_name=filename,
            raw_text=text,
            tokens=tokens,
            rows=rows,
            tables=tables,
            page_count=page_count,
            ocr_used_pages=ocr_pages,
            ocr_method=ocr_method,
            needs_verification=ocr_method is not None,
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    @staticmethod
    def _read_with_pdfplumber(content: bytes, warnings: List[str]) -> _PlumberOutput:
        output = _PlumberOutput()
        if pdfplumber is None:
            warnings.append("pdfplumber_unavailable")
            return output
        try:
            with pdfplumber.open(BytesIO(content)) as pdf:
                output.page_count = len(pdf.pages)
                fragments: List[str] = []
                for number, page in enumerate(pdf.pages, start=1):
                    fragments.append(page.extract_text() or "")
                    for word in page.extract_words(extra_attrs=["size", "fontname"]) or []:
                        output.tokens.append(
                            TextToken(
                                text=str(word.get("text", "")),
                                x=float(word["x0"]),
                                y=float(word["top"]),
                                width=float(word["x1"]) - float(word["x0"]),
                                height=float(word["bottom"]) - float(word["top"]),
                                page=number,
                                font_size=word.get("size"),
                                font_name=word.get("fontname"),
                            )
                        )
                    for table in page.extract_tables() or []:
                        frozen = table_from_rows(table)
                        if len(frozen) >= 2:
                            output.tables.append(frozen)
                output.text = "\n".join(fragment for fragment in fragments if fragment)
        except Exception:
            logger.warning("pdfplumber failed to parse PDF", exc_info=True)
            warnings.append("pdfplumber_failed")
            return _PlumberOutput(page_count=output.page_count)
        return output

    @staticmethod
    def _read_with_pymupdf(content: bytes, warnings: List[str]) -> Tuple[str, int]:
        if fitz is None:
            warnings.append("pymupdf_unavailable")
            return "", 0
        try:
            document = fitz.open(stream=content, filetype="pdf")
        except Exception:
            logger.warning("PyMuPDF failed to open PDF", exc_info=True)
            warnings.append("pymupdf_failed")
            return "", 0
        try:
            text = "\n".join(page.get_text("text") or "" for page in document)
            return text, document.page_count
        finally:
            document.close()


def _unreadable(warnings: List[str]) -> bool:
    failed = [reader for reader in _READERS if f"{reader}_failed" in warnings]
    missing = [reader for reader in _READERS if f"{reader}_unavailable" in warnings]
    return bool(failed) and len(failed) + len(missing) == len(_READERS)


__all__ = ["PdfExtractor", "PdfExtractorConfig"]
