"""Audit trail of one ingestion request.

:class:`ParseLogBuilder` accumulates what happened while a request was
processed (sources, header detection per document, filtered images, OCR,
warnings and errors) and freezes it into a :class:`ParseLog`.
:class:`ParseLogService` persists logs as ``<output_dir>/<request_id>.parse-log.json``
and renders a human readable summary.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config.settings import settings
from services.email_message import EmailClassification
from services.table_parser import TableExtractionResult
from utils.procurement_schema import ColumnType, FilteredImage, HeaderDetection, SourceType

logger = logging.getLogger(__name__)

INPUT_TYPES = {
    SourceType.EMAIL_TEXT: "email_text",
    SourceType.EMAIL_HTML: "email_html",
    SourceType.PDF: "pdf",
    SourceType.EXCEL: "xlsx",
    SourceType.WORD: "docx",
    SourceType.IMAGE: "image",
}
SUMMARY_LIST_LIMIT = 5


class SourceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    mime: Optional[str] = None
    size: Optional[int] = None


class DocumentLogEntry(BaseModel):
    """Header detection and extraction figures for one parsed document."""

    model_config = ConfigDict(frozen=True)

    source_name: str
    header_detected: bool = False
    header_score: float = 0.0
    header_line_index: Optional[int] = None
    header_origin: Optional[str] = None
    header_rejection_reason: Optional[str] = None
    header_is_form_metadata: bool = False
    detected_columns: List[str] = Field(default_factory=list)
    extraction_method: str = ""
    strategy: Optional[str] = None
    line_count: int = 0
    fallback_triggered: bool = False
    fallback_reason: Optional[str] = None
    items_before_fallback: Optional[int] = None
    merged_continuation_lines: int = 0
    duplicates_removed: int = 0
    discarded: int = 0
    noise_lines: int = 0
    repeated_header_lines: List[int] = Field(default_factory=list)
    spec_lines: int = 0
    spec_line_patterns: List[str] = Field(default_factory=list)
    tables_with_own_header: int = 0
    zone: Optional[Dict[str, Any]] = None
    confidence: Optional[Dict[str, Any]] = None


class ParseLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    timestamp: datetime
    sources: List[SourceRecord] = Field(default_factory=list)
    detected_input_types: List[str] = Field(default_factory=list)
    header_detected: bool = False
    header_score: float = 0.0
    header_line_index: Optional[int] = None
    header_rejection_reason: Optional[str] = None
    header_is_form_metadata: bool = False
    detected_columns: List[str] = Field(default_factory=list)
    documents: List[DocumentLogEntry] = Field(default_factory=list)
    ocr_used: bool = False
    ocr_used_pages: List[int] = Field(default_factory=list)
    ocr_method: Optional[str] = None
    filtered_images: List[Dict[str, Any]] = Field(default_factory=list)
    processed_images: List[str] = Field(default_factory=list)
    line_count: int = 0
    extraction_method: str = ""
    merged_continuation_lines: int = 0
    extraction_paths: List[str] = Field(default_factory=list)
    layout_stats: Optional[Dict[str, Any]] = None
    unknown_brand_candidates: List[str] = Field(default_factory=list)
    classification: Optional[Dict[str, Any]] = None
    rfq_number: Optional[str] = None
    needs_verification: bool = False
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    processing_time_ms: int = 0


class ParseLogBuilder:
    """Mutable accumulator; ``build()`` seals it."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._started = time.monotonic()
        self._built = False
        self._sources: List[SourceRecord] = []
        self._input_types: List[str] = []
        self._header: Optional[HeaderDetection] = None
        self._documents: List[DocumentLogEntry] = []
        self._filtered_images: List[Dict[str, Any]] = []
        self._processed_images: List[str] = []
        self._ocr_pages: List[int] = []
        self._ocr_method: Optional[str] = None
        self._warnings: List[str] = []
        self._errors: List[str] = []
        self._line_count = 0
        self._extraction_method = ""
        self._merged_continuations = 0
        self._extraction_paths: List[str] = []
        self._layout_stats: Optional[Dict[str, Any]] = None
        self._unknown_brands: List[str] = []
        self._classification: Optional[Dict[str, Any]] = None
        self._rfq_number: Optional[str] = None
        self._needs_verification = False

    @property
    def has_errors(self) -> bool:
        return bool(self._errors)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------
    def add_source(
        self,
        source_type: SourceType | str,
        name: str,
        mime: Optional[str] = None,
        size: Optional[int] = None,
    ) -> "ParseLogBuilder":
        self._check_open()
        kind = SourceType(source_type) if not isinstance(source_type, SourceType) else source_type
        self._sources.append(SourceRecord(type=kind.value, name=name, mime=mime, size=size))
        input_type = INPUT_TYPES[kind]
        if input_type not in self._input_types:
            self._input_types.append(input_type)
        return self

    def set_header_detection(self, detection: HeaderDetection) -> "ParseLogBuilder":
        self._check_open()
        self._header = detection
        return self

    def add_filtered_images(self, images: Iterable[FilteredImage]) -> "ParseLogBuilder":
        self._check_open()
        self._filtered_images.extend(image.to_json() for image in images)
        return self

    def add_processed_images(self, names: Iterable[str]) -> "ParseLogBuilder":
        self._check_open()
        self._processed_images.extend(names)
        return self

    def set_ocr_used(self, pages: Iterable[int], method: Optional[str]) -> "ParseLogBuilder":
        self._check_open()
        for page in pages:
            if page not in self._ocr_pages:
                self._ocr_pages.append(page)
        self._ocr_method = method or self._ocr_method
        return self

    def add_warning(self, warning: str) -> "ParseLogBuilder":
        self._check_open()
        self._warnings.append(warning)
        return self

    def add_error(self, error: str) -> "ParseLogBuilder":
        self._check_open()
        self._errors.append(error)
        return self

    def set_line_count(self, count: int) -> "ParseLogBuilder":
        self._check_open()
        self._line_count = count
        return self

    def set_extraction_method(self, method: str) -> "ParseLogBuilder":
        self._check_open()
        self._extraction_method = method
        return self

    def apply_extraction_result(
        self, result: TableExtractionResult, source_name: str
    ) -> "ParseLogBuilder":
        """Record one document's parse and fold it into the request totals."""

        self._check_open()
        header = result.header
        outcome = result.outcome
        self._documents.append(
            DocumentLogEntry(
                source_name=source_name,
                header_detected=header.found,
                header_score=round(header.score, 2),
                header_line_index=header.line_index if header.found else None,
                header_origin=header.origin.value if header.origin else None,
                header_rejection_reason=header.rejection_reason,
                header_is_form_metadata=header.is_form_metadata,
                detected_columns=_column_names(header),
                extraction_method=result.extraction_method,
                strategy=outcome.strategy.value,
                line_count=len(result.items),
                fallback_triggered=result.fallback_triggered,
                fallback_reason=result.fallback_reason,
                items_before_fallback=result.items_before_fallback,
                merged_continuation_lines=result.merged_continuations,
                duplicates_removed=result.duplicates_removed,
                discarded=result.discarded,
                noise_lines=outcome.noise_lines,
                repeated_header_lines=list(outcome.repeated_header_lines),
                spec_lines=outcome.spec_lines,
                spec_line_patterns=sorted(set(outcome.spec_line_patterns)),
                tables_with_own_header=outcome.tables_with_own_header,
                zone=result.zone.to_json() if result.zone else None,
                confidence=result.confidence.to_json(),
            )
        )
        # The first document with a header represents the request.
        if self._header is None or (header.found and not self._header.found):
            self._header = header
        self._line_count += len(result.items)
        self._merged_continuations += result.merged_continuations
        if not self._extraction_method or self._extraction_method == "heuristic":
            self._extraction_method = result.extraction_method
        self._warnings.extend(f"{source_name}: {warning}" for warning in result.warnings)
        if result.layout_stats is not None:
            self._layout_stats = result.layout_stats
        self.add_unknown_brand_candidates(result.unknown_brand_candidates)
        return self

    def set_merged_continuation_lines(self, count: int) -> "ParseLogBuilder":
        self._check_open()
        self._merged_continuations = count
        return self

    def add_extraction_path(self, path: str) -> "ParseLogBuilder":
        self._check_open()
        if path not in self._extraction_paths:
            self._extraction_paths.append(path)
        return self

    def set_layout_stats(self, stats: Dict[str, Any]) -> "ParseLogBuilder":
        self._check_open()
        self._layout_stats = dict(stats)
        return self

    def add_unknown_brand_candidates(self, brands: Iterable[str]) -> "ParseLogBuilder":
        self._check_open()
        for brand in brands:
            if brand not in self._unknown_brands:
                self._unknown_brands.append(brand)
        return self

    def set_classification(self, classification: Optional[EmailClassification]) -> "ParseLogBuilder":
        self._check_open()
        self._classification = classification.to_json() if classification else None
        return self

    def set_rfq_number(self, rfq_number: Optional[str]) -> "ParseLogBuilder":
        self._check_open()
        self._rfq_number = rfq_number
        return self

    def set_needs_verification(self, value: bool) -> "ParseLogBuilder":
        self._check_open()
        self._needs_verification = bool(value)
        return self

    def build(self) -> ParseLog:
        self._check_open()
        self._built = True
        header = self._header
        return ParseLog(
            request_id=self.request_id,
            timestamp=datetime.now(timezone.utc),
            sources=list(self._sources),
            detected_input_types=list(self._input_types),
            header_detected=bool(header and header.found),
            header_score=round(header.score, 2) if header else 0.0,
            header_line_index=header.line_index if header and header.found else None,
            header_rejection_reason=header.rejection_reason if header else None,
            header_is_form_metadata=bool(header and header.is_form_metadata),
            detected_columns=_column_names(header) if header else [],
            documents=list(self._documents),
            ocr_used=bool(self._ocr_pages) or self._ocr_method is not None,
            ocr_used_pages=sorted(self._ocr_pages),
            ocr_method=self._ocr_method,
            filtered_images=list(self._filtered_images),
            processed_images=list(self._processed_images),
            line_count=self._line_count,
            extraction_method=self._extraction_method,
            merged_continuation_lines=self._merged_continuations,
            extraction_paths=list(self._extraction_paths),
            layout_stats=self._layout_stats,
            unknown_brand_candidates=list(self._unknown_brands),
            classification=self._classification,
            rfq_number=self._rfq_number,
            needs_verification=self._needs_verification,
            warnings=list(self._warnings),
            errors=list(self._errors),
            processing_time_ms=int((time.monotonic() - self._started) * 1000),
        )

    def _check_open(self) -> None:
        if self._built:
            raise RuntimeError(f"parse log {self.request_id!r} has already been built")


def _column_names(header: HeaderDetection) -> List[str]:
    return [
        column.column_type.value
        for column in header.columns
        if column.column_type is not ColumnType.UNKNOWN
    ]


class ParseLogService:
    def __init__(self, output_dir: Optional[Path | str] = None) -> None:
        self.output_dir = Path(output_dir or settings.output_dir)

    def create_builder(self, request_id: str) -> ParseLogBuilder:
        return ParseLogBuilder(request_id)

    def log_path(self, request_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", request_id).strip("._") or "request"
        return self.output_dir / f"{safe}.parse-log.json"

    def save_log(self, log: ParseLog) -> Optional[Path]:
        path = self.log_path(log.request_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(log.model_dump_json(indent=2), encoding="utf-8")
        except OSError:
            logger.exception("Failed to save parse log %s", path)
            return None
        logger.info("Parse log saved: %s", path)
        return path

    def load_log(self, request_id: str) -> Optional[ParseLog]:
        path = self.log_path(request_id)
        if not path.exists():
            return None
        try:
            return ParseLog.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            logger.exception("Failed to load parse log %s", path)
            return None

    @staticmethod
    def generate_summary(log: ParseLog) -> str:
        lines: List[str] = [
            "=== Parse Log Summary ===",
            f"Request ID: {log.request_id}",
            f"Timestamp: {log.timestamp.isoformat()}",
            f"Processing Time: {log.processing_time_ms}ms",
        ]
        if log.rfq_number:
            lines.append(f"RFQ Number: {log.rfq_number}")
        if log.classification:
            lines.append(
                f"Classification: {log.classification.get('label')} ({log.classification.get('score')})"
            )

        lines += ["", f"Sources: {len(log.sources)}"]
        lines += [f"  - {source.type}: {source.name}" for source in log.sources]
        lines += [
            "",
            f"Input Types: {', '.join(log.detected_input_types)}",
            f"Extraction Method: {log.extraction_method or 'none'}",
        ]
        if log.extraction_paths:
            lines.append(f"Extraction Paths: {', '.join(log.extraction_paths)}")

        lines += [
            "",
            "Images:",
            f"  Processed: {len(log.processed_images)}",
            f"  Filtered: {len(log.filtered_images)}",
        ]
        for image in log.filtered_images[:SUMMARY_LIST_LIMIT]:
            lines.append(f"    - {image.get('name')}: {image.get('reason')}")
        if len(log.filtered_images) > SUMMARY_LIST_LIMIT:
            lines.append(f"    ... and {len(log.filtered_images) - SUMMARY_LIST_LIMIT} more")

        if log.ocr_used:
            pages = ", ".join(str(page) for page in log.ocr_used_pages) or "n/a"
            lines += ["", f"OCR Used: Yes ({log.ocr_method or 'ocr'}, pages: {pages})"]
        else:
            lines += ["", "OCR Used: No"]

        lines += [
            "",
            f"Header Detection: {'Yes' if log.header_detected else 'No'} (score: {log.header_score:.2f})",
        ]
        if log.header_rejection_reason:
            lines.append(f"  Rejection Reason: {log.header_rejection_reason}")
        for entry in log.documents:
            status = f"line {entry.header_line_index}" if entry.header_detected else "not found"
            lines.append(f"  - {entry.source_name}: {status} (score: {entry.header_score:.2f})")
            if entry.detected_columns:
                lines.append(f"    Columns: {', '.join(entry.detected_columns)}")
            if entry.header_rejection_reason:
                lines.append(f"    Rejection Reason: {entry.header_rejection_reason}")

        lines += ["", "Extraction:", f"  Lines Extracted: {log.line_count}"]
        if log.merged_continuation_lines:
            lines.append(f"  Merged Continuation Lines: {log.merged_continuation_lines}")
        for entry in log.documents:
            lines.append(
                f"  - {entry.source_name}: {entry.line_count} items via {entry.extraction_method}"
                f" ({entry.strategy})"
            )
            if entry.fallback_triggered:
                lines.append(f"    Fallback: {entry.fallback_reason}")
            if entry.zone:
                lines.append(
                    f"    Zone: {entry.zone.get('detection_method')} "
                    f"lines {entry.zone.get('items_zone_start_line')}-{entry.zone.get('items_zone_end_line')}"
                )
            if entry.confidence:
                lines.append(
                    "    Confidence min/max/avg: {min}/{max}/{average}".format(
                        min=entry.confidence.get("min"),
                        max=entry.confidence.get("max"),
                        average=entry.confidence.get("average"),
                    )
                )
        if log.layout_stats:
            lines.append(
                "  Layout: {total_pages} pages, {total_tokens} tokens, {total_rows} rows".format(**{
                    key: log.layout_stats.get(key, 0) for key in ("total_pages", "total_tokens", "total_rows")
                })
            )
        if log.unknown_brand_candidates:
            lines.append(f"  Unknown Brand Candidates: {', '.join(log.unknown_brand_candidates[:SUMMARY_LIST_LIMIT])}")
        lines.append(f"  Needs Verification: {'Yes' if log.needs_verification else 'No'}")

        lines += ["", f"Warnings: {len(log.warnings)}"]
        lines += [f"  - {warning}" for warning in log.warnings[:SUMMARY_LIST_LIMIT]]
        lines += [f"Errors: {len(log.errors)}"]
        lines += [f"  - {error}" for error in log.errors[:SUMMARY_LIST_LIMIT]]
        return "\n".join(lines)


__all__ = [
    "DocumentLogEntry",
    "ParseLog",
    "ParseLogBuilder",
    "ParseLogService",
    "SourceRecord",
]
