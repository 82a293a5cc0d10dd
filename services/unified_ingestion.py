"""End-to-end ingestion of an RFQ e-mail (or a single document).

The service runs every source through the same pipeline::

    source bytes -> NormalizedDocument -> TableParser -> PriceRequestItem[]

in a fixed order: e-mail body, accepted inline images, then attachments
grouped as PDF, Excel, Word and images.  Each source is isolated: a failure
is recorded in the parse log and the remaining sources are still processed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from services.brand_dictionary import BrandDictionary
from services.document_extractor import DocumentExtractor, DocumentKind, detect_document_kind
from services.email_body_extractor import EmailBodyExtractor
from services.email_message import EmailAttachment, EmailClassification, IncomingEmail
from services.image_filter import ImageFilter, ImageMetadata
from services.ocr_pipeline import OCREngine
from services.parse_log import ParseLog, ParseLogBuilder, ParseLogService
from services.post_processor import deduplicate_items
from services.table_parser import TableParser
from utils.procurement_schema import NormalizedDocument, PriceRequestItem, SourceType

logger = logging.getLogger(__name__)

FallbackParser = Callable[[NormalizedDocument], Sequence[PriceRequestItem]]

RFQ_NUMBER_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"Purchase\s+Requisitions?\s+No[:.\s]*(\d+)", re.IGNORECASE),
    re.compile(r"\bPR[\s\-_]*(\d{6,})", re.IGNORECASE),
    re.compile(
        r"(?:R[ée]f[ée]rence|Reference|Quotation|Quote|Demande|Devis|RFQ|RFP|REF|N°|No\.)"
        r"\s*[:\-#]?\s*([A-Z0-9][\w\-/]+)",
        re.IGNORECASE,
    ),
    re.compile(r"\b([A-Z]{2,4}[\-/]?\d{4,}[\-/]?\d{0,4})\b"),
)

NAMEPLATE_PART_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"P/N\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/.]{2,})", re.IGNORECASE),
    re.compile(r"PART\s*(?:NO|NUMBER|#)?\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/.]{2,})", re.IGNORECASE),
    re.compile(r"\bREF\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/.]{2,})", re.IGNORECASE),
)
NAMEPLATE_MODEL_PATTERN = re.compile(r"\b(?:MODEL|MOD[EÈ]LE|TYPE)\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/.]{1,})", re.IGNORECASE)
NAMEPLATE_SERIAL_PATTERN = re.compile(
    r"\b(?:S/N|SERIAL\s*(?:NO|NUMBER|#)?|N°\s*S[ÉE]RIE)\s*[:.]?\s*([A-Z0-9][A-Z0-9\-/.]{2,})",
    re.IGNORECASE,
)

# Fuzzy matches on common words ("FILTRE", "PREFILTRE") rather than real brands.
FALSE_POSITIVE_BRANDS = frozenset({"FIRETROL", "CONTRINEX", "PENTAIR"})

ATTACHMENT_ORDER = (DocumentKind.PDF, DocumentKind.EXCEL, DocumentKind.WORD, DocumentKind.IMAGE)
SOURCE_TYPES = {
    DocumentKind.PDF: SourceType.PDF,
    DocumentKind.EXCEL: SourceType.EXCEL,
    DocumentKind.WORD: SourceType.WORD,
    DocumentKind.IMAGE: SourceType.IMAGE,
    DocumentKind.TEXT: SourceType.EMAIL_TEXT,
}


def extract_rfq_number(*texts: Optional[str]) -> Optional[str]:
    """First RFQ/requisition identifier found in ``texts`` (searched in order)."""

    for text in texts:
        if not text:
            continue
        for pattern in RFQ_NUMBER_PATTERNS:
            for match in pattern.finditer(text):
                candidate = match.group(1).strip().rstrip("-/.")
                if len(candidate) >= 4 and any(char.isdigit() for char in candidate):
                    return candidate
    return None


def extract_nameplate_item(
    text: str, filename: str, brands: Optional[BrandDictionary] = None
) -> Optional[PriceRequestItem]:
    """Build a placeholder item from the OCR text of an equipment nameplate photo."""

    if not text or not text.strip():
        return None
    part_number = None
    for pattern in NAMEPLATE_PART_PATTERNS:
        match = pattern.search(text)
        if match:
            part_number = match.group(1).strip(".-/")
            break
    model_match = NAMEPLATE_MODEL_PATTERN.search(text)
    serial_match = NAMEPLATE_SERIAL_PATTERN.search(text)
    brand = brands.find_brand(text) if brands is not None else None
    model = model_match.group(1).strip(".-/") if model_match else None
    serial = serial_match.group(1).strip(".-/") if serial_match else None
    if not (part_number or model or serial or brand):
        return None
    return PriceRequestItem(
        description=f"Spare part (see image: {filename})",
        quantity=1,
        supplier_code=part_number,
        model=model,
        serial_number=serial,
        brand=brand,
        notes=f"OCR from image: {filename}",
        needs_manual_review=True,
        is_estimated=True,
    )


@dataclass
class IngestionResult:
    items: List[PriceRequestItem]
    parse_log: ParseLog
    rfq_number: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    needs_verification: bool = False
    log_path: Optional[Path] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "request_id": self.parse_log.request_id,
            "rfq_number": self.rfq_number,
            "needs_verification": self.needs_verification,
            "items": [item.to_json() for item in self.items],
            "warnings": list(self.warnings),
        }


@dataclass
class _RequestState:
    """Per-request accumulator shared by the source handlers."""

    builder: ParseLogBuilder
    items: List[PriceRequestItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    texts: List[str] = field(default_factory=list)
    needs_verification: bool = False

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.builder.add_warning(message)

    def fail(self, message: str) -> None:
        self.warnings.append(message)
        self.builder.add_warning(message)
        self.builder.add_error(message)


class UnifiedIngestionService:
    def __init__(
        self,
        *,
        brands: Optional[BrandDictionary] = None,
        ocr_engine: Optional[OCREngine] = None,
        table_parser: Optional[TableParser] = None,
        document_extractor: Optional[DocumentExtractor] = None,
        body_extractor: Optional[EmailBodyExtractor] = None,
        image_filter: Optional[ImageFilter] = None,
        parse_log_service: Optional[ParseLogService] = None,
        fallback_parser: Optional[FallbackParser] = None,
        persist_logs: bool = True,
    ) -> None:
        self.brands = brands or BrandDictionary()
        self.ocr_engine = ocr_engine or OCREngine()
        self.table_parser = table_parser or TableParser(brands=self.brands)
        self.document_extractor = document_extractor or DocumentExtractor(ocr_engine=self.ocr_engine)
        self.body_extractor = body_extractor or EmailBodyExtractor()
        self.image_filter = image_filter or ImageFilter()
        self.parse_log_service = parse_log_service or ParseLogService()
        self.fallback_parser = fallback_parser
        self.persist_logs = persist_logs

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def process_email(
        self,
        email: IncomingEmail,
        request_id: str,
        *,
        classification: Optional[EmailClassification] = None,
    ) -> IngestionResult:
        builder = self.parse_log_service.create_builder(request_id)
        state = _RequestState(builder=builder)
        builder.set_classification(classification)
        self._refresh_brands()

        try:
            subject_brand = self.brands.find_brand(email.subject or "", fuzzy=False)
            if subject_brand:
                logger.debug("subject_brand brand=%s", subject_brand)

            consumed = self._process_body(email, state)
            attachments = [
                attachment for attachment in email.attachments if attachment.filename not in consumed
            ]
            self._process_attachments(attachments, state)

            if subject_brand:
                for item in state.items:
                    if not item.brand or item.brand.upper() in FALSE_POSITIVE_BRANDS:
                        item.brand = subject_brand

            rfq_number = extract_rfq_number(email.subject, email.body_text, *state.texts)
            return self._finish(state, rfq_number)
        except Exception as exc:
            logger.exception("Ingestion of request %s failed", request_id)
            return self._failed(state, exc)

    def process_document(
        self,
        content: bytes,
        filename: str,
        *,
        request_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> IngestionResult:
        """Run the pipeline over a single file outside of an e-mail."""

        request_id = request_id or _document_request_id(filename)
        builder = self.parse_log_service.create_builder(request_id)
        state = _RequestState(builder=builder)
        self._refresh_brands()
        try:
            attachment = EmailAttachment(
                filename=filename,
                content=content,
                content_type=content_type,
                size=len(content or b""),
            )
            self._process_attachments([attachment], state, allow_text=True)
            return self._finish(state, extract_rfq_number(*state.texts))
        except Exception as exc:
            logger.exception("Ingestion of document %s failed", filename)
            return self._failed(state, exc)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def _process_body(self, email: IncomingEmail, state: _RequestState) -> set:
        """Parse the body and its inline images; return the attachment names consumed."""

        consumed: set = set()
        try:
            body = self.body_extractor.extract(email)
        except Exception as exc:
            logger.warning("E-mail body extraction failed", exc_info=True)
            state.fail(f"Email body: {exc}")
            return consumed

        if body.document is not None:
            state.builder.add_source(body.document.source_type, "email_body", "text/html" if body.is_html else "text/plain")
            self._parse(body.document, state)

        consumed.update(image.filename for image in body.inline_images)
        accepted, filtered = self.image_filter.filter_images(body.inline_images)
        state.builder.add_filtered_images(filtered)
        state.builder.add_processed_images(image.filename for image in accepted)
        for image in accepted:
            self._guarded(state, f"Inline image {image.filename}", self._process_image, image)
        return consumed

    def _process_attachments(
        self,
        attachments: Sequence[EmailAttachment],
        state: _RequestState,
        *,
        allow_text: bool = False,
    ) -> None:
        # Plain text files are only parsed when submitted directly.
        kinds = ATTACHMENT_ORDER + ((DocumentKind.TEXT,) if allow_text else ())
        groups: Dict[DocumentKind, List[EmailAttachment]] = {kind: [] for kind in kinds}
        for attachment in attachments:
            kind = detect_document_kind(attachment.filename, attachment.content_type, attachment.content)
            if kind in groups:
                groups[kind].append(attachment)
            else:
                state.warn(f"Unsupported attachment skipped: {attachment.filename}")

        for kind in (DocumentKind.PDF, DocumentKind.EXCEL, DocumentKind.WORD, DocumentKind.TEXT):
            for attachment in groups.get(kind, ()):
                state.builder.add_source(
                    SOURCE_TYPES[kind], attachment.filename, attachment.content_type, attachment.byte_size
                )
                self._guarded(
                    state,
                    f"{kind.value.upper()} {attachment.filename}",
                    self._process_file,
                    attachment,
                    kind,
                )

        images = [
            ImageMetadata(
                filename=attachment.filename,
                content=attachment.content,
                size=attachment.byte_size,
                content_type=attachment.content_type,
                is_inline=attachment.is_inline,
                cid=attachment.content_id,
            )
            for attachment in groups[DocumentKind.IMAGE]
        ]
        accepted, filtered = self.image_filter.filter_images(images)
        state.builder.add_filtered_images(filtered)
        state.builder.add_processed_images(image.filename for image in accepted)
        for image in accepted:
            state.builder.add_source(SourceType.IMAGE, image.filename, image.content_type, image.byte_size)
            self._guarded(state, f"Image {image.filename}", self._process_image, image)

    def _process_file(self, state: _RequestState, attachment: EmailAttachment, kind: DocumentKind) -> None:
        document = self.document_extractor.extract(
            attachment.content, attachment.filename, attachment.content_type, kind=kind
        )
        if document is None:
            state.warn(f"No content extracted from {attachment.filename}")
            return
        items = self._parse(document, state)
        filename_brand = self.brands.find_brand_in_filename(attachment.filename)
        if filename_brand:
            for item in items:
                if not item.brand:
                    item.brand = filename_brand

    def _process_image(self, state: _RequestState, image: ImageMetadata) -> None:
        document = self.document_extractor.extract(
            image.content or b"", image.filename, image.content_type, kind=DocumentKind.IMAGE
        )
        if document is None:
            state.warn(f"No text recognised in image {image.filename}")
            return
        items = self._parse(document, state)
        if items:
            return
        item = extract_nameplate_item(document.raw_text, image.filename, self.brands)
        if item is not None:
            state.items.append(item)
            state.builder.add_extraction_path("nameplate")
            state.needs_verification = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _parse(self, document: NormalizedDocument, state: _RequestState) -> List[PriceRequestItem]:
        result = self.table_parser.parse_document(document)
        state.builder.apply_extraction_result(result, document.source_name)
        state.builder.add_extraction_path(_extraction_path(document))
        for warning in document.warnings:
            state.builder.add_warning(f"{document.source_name}: {warning}")
        if document.ocr_used:
            state.builder.set_ocr_used(document.ocr_used_pages, document.ocr_method)
        if document.raw_text:
            state.texts.append(document.raw_text)
        if document.needs_verification or result.needs_verification:
            state.needs_verification = True

        items = list(result.items)
        if not items and self.fallback_parser is not None:
            try:
                items = list(self.fallback_parser(document))
            except Exception as exc:
                logger.warning("Fallback parser failed for %s", document.source_name, exc_info=True)
                state.warn(f"Fallback parser failed for {document.source_name}: {exc}")
                items = []
            if items:
                state.builder.add_extraction_path("fallback_parser")
                logger.info("fallback_parser source=%s items=%d", document.source_name, len(items))
        state.items.extend(items)
        return items

    def _guarded(self, state: _RequestState, label: str, handler, *args) -> None:
        try:
            handler(state, *args)
        except Exception as exc:
            logger.warning("Failed to process %s", label, exc_info=True)
            state.fail(f"{label}: {exc}")

    def _refresh_brands(self) -> None:
        try:
            if self.brands.reload_if_changed():
                logger.info("Brand dictionary reloaded from %s", self.brands.path)
        except Exception:
            logger.warning("Brand dictionary reload check failed", exc_info=True)

    def _finish(self, state: _RequestState, rfq_number: Optional[str]) -> IngestionResult:
        items, _ = deduplicate_items(state.items)
        needs_verification = not items or state.needs_verification or state.builder.has_errors
        state.builder.set_line_count(len(items))
        state.builder.set_rfq_number(rfq_number)
        state.builder.set_needs_verification(needs_verification)
        parse_log = state.builder.build()
        log_path = self.parse_log_service.save_log(parse_log) if self.persist_logs else None
        logger.info(
            "ingestion_done request=%s items=%d rfq=%s needs_verification=%s",
            parse_log.request_id,
            len(items),
            rfq_number,
            needs_verification,
        )
        return IngestionResult(
            items=items,
            parse_log=parse_log,
            rfq_number=rfq_number,
            warnings=list(state.warnings),
            needs_verification=needs_verification,
            log_path=log_path,
        )

    def _failed(self, state: _RequestState, exc: Exception) -> IngestionResult:
        builder = state.builder
        try:
            builder.add_error(str(exc))
            builder.set_needs_verification(True)
            parse_log = builder.build()
        except RuntimeError:
            parse_log = ParseLogBuilder(builder.request_id).add_error(str(exc)).set_needs_verification(True).build()
        log_path = self.parse_log_service.save_log(parse_log) if self.persist_logs else None
        return IngestionResult(
            items=[],
            parse_log=parse_log,
            warnings=[str(exc)],
            needs_verification=True,
            log_path=log_path,
        )


def _extraction_path(document: NormalizedDocument) -> str:
    if document.ocr_used:
        method = "ocr"
    elif document.has_positions:
        method = "layout"
    elif document.tables and not document.rows:
        method = "tables"
    else:
        method = "text"
    return f"{document.source_type.value}:{method}"


def _document_request_id(filename: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9]+", "-", Path(filename).stem).strip("-")
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{stem or 'document'}-{timestamp}"


__all__ = [
    "IngestionResult",
    "UnifiedIngestionService",
    "extract_nameplate_item",
    "extract_rfq_number",
]
