"""Tesseract OCR for scanned PDFs and images.

Every Tesseract call carries an explicit timeout.  A timeout, a missing
engine or an undecodable input degrades to an empty :class:`OCRResult`
instead of aborting the document being processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Tuple

from config.settings import settings

try:  # pragma: no cover - optional dependency
    import pytesseract  # type: ignore
    from PIL import Image  # type: ignore
except Exception:  # pragma: no cover - pytesseract is optional
    pytesseract = None  # type: ignore
    Image = None  # type: ignore

try:  # pragma: no cover - optional dependency
    import fitz  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - PyMuPDF is optional
    fitz = None  # type: ignore

try:  # pragma: no cover - optional dependency
    import pdfplumber  # type: ignore
except Exception:  # pragma: no cover - pdfplumber is optional
    pdfplumber = None  # type: ignore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OCRConfig:
    languages: str = "fra+eng"
    dpi: int = 300
    timeout_seconds: int = 60
    max_pages: int = 20
    tesseract_config: str = "--psm 6"
    tesseract_cmd: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "OCRConfig":
        return cls(
            languages=settings.ocr_languages,
            dpi=settings.ocr_dpi,
            timeout_seconds=settings.ocr_timeout_seconds,
            max_pages=settings.ocr_max_pages,
            tesseract_config=settings.ocr_tesseract_config,
            tesseract_cmd=settings.tesseract_cmd,
        )


@dataclass
class OCRResult:
    text: str = ""
    method: Optional[str] = None
    pages: Tuple[int, ...] = ()
    warnings: List[str] = field(default_factory=list)

    @property
    def char_count(self) -> int:
        return len(self.text.strip())


class OCREngine:
    """Thin wrapper around pytesseract with page rendering for PDFs."""

    method = "tesseract"

    def __init__(self, config: Optional[OCRConfig] = None) -> None:
        self.config = config or OCRConfig.from_settings()
        if pytesseract is not None and self.config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.config.tesseract_cmd

    @property
    def available(self) -> bool:
        return pytesseract is not None and Image is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def image_to_text(self, content: bytes) -> OCRResult:
        if not self.available:
            logger.warning("pytesseract not installed; cannot OCR image")
            return OCRResult(warnings=["ocr_unavailable"])
        try:
            image = Image.open(BytesIO(content))
            image.load()
        except Exception:
            logger.warning("Provided bytes are not a valid image", exc_info=True)
            return OCRResult(warnings=["image_decode_failed"])
        text = self._run_tesseract(self._prepare(image))
        warnings = [] if text.strip() else ["ocr_empty"]
        return OCRResult(text=text, method=self.method if text.strip() else None, pages=(1,), warnings=warnings)

    def pdf_to_text(self, content: bytes, pages: Optional[List[int]] = None) -> OCRResult:
        """OCR the given 1-based ``pages`` of a PDF (all pages up to ``max_pages`` by default)."""

        if not self.available:
            logger.warning("pytesseract not installed; cannot OCR PDF pages")
            return OCRResult(warnings=["ocr_unavailable"])
        texts: List[str] = []
        done: List[int] = []
        warnings: List[str] = []
        for page_number, image in self._render_pages(content, pages):
            if image is None:
                warnings.append(f"render_failed:{page_number}")
                continue
            text = self._run_tesseract(self._prepare(image))
            logger.info("ocr_page page=%d chars=%d", page_number, len(text.strip()))
            if text.strip():
                texts.append(text.strip())
                done.append(page_number)
            else:
                warnings.append(f"ocr_empty:{page_number}")
        joined = "\n".join(texts)
        return OCRResult(
            text=joined,
            method=self.method if joined else None,
            pages=tuple(done),
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _run_tesseract(self, image) -> str:
        try:
            return pytesseract.image_to_string(
                image,
                lang=self.config.languages,
                config=self.config.tesseract_config,
                timeout=self.config.timeout_seconds,
            ) or ""
        except RuntimeError:
            logger.warning("Tesseract timed out after %ss", self.config.timeout_seconds)
            return ""
        except Exception:
            logger.warning("pytesseract OCR failed", exc_info=True)
            return ""

    @staticmethod
    def _prepare(image):
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        return image

    def _render_pages(self, content: bytes, pages: Optional[List[int]]):
        zoom = self.config.dpi / 72.0
        if fitz is not None:
            try:
                document = fitz.open(stream=content, filetype="pdf")
            except Exception:
                logger.warning("PyMuPDF failed to open PDF for OCR", exc_info=True)
                document = None
            if document is not None:
                try:
                    for number in self._page_numbers(document.page_count, pages):
                        try:
                            page = document.load_page(number - 1)
                            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                            mode = "RGB" if pix.n < 4 else "RGBA"
                            yield number, Image.frombytes(mode, [pix.width, pix.height], pix.samples)
                        except Exception:
                            logger.debug("Failed to render page %d", number, exc_info=True)
                            yield number, None
                finally:
                    document.close()
                return
        if pdfplumber is not None:
            try:
                with pdfplumber.open(BytesIO(content)) as pdf:
                    for number in self._page_numbers(len(pdf.pages), pages):
                        try:
                            rendered = pdf.pages[number - 1].to_image(resolution=self.config.dpi).original
                            yield number, rendered
                        except Exception:
                            logger.debug("Failed to render page %d", number, exc_info=True)
                            yield number, None
            except Exception:
                logger.warning("pdfplumber failed to open PDF for OCR", exc_info=True)
            return
        logger.warning("No PDF renderer installed; cannot OCR PDF pages")

    def _page_numbers(self, page_count: int, pages: Optional[List[int]]) -> List[int]:
        numbers = pages or list(range(1, page_count + 1))
        return [number for number in numbers if 1 <= number <= page_count][: self.config.max_pages]


__all__ = ["OCRConfig", "OCREngine", "OCRResult"]
