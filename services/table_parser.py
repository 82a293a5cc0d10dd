"""Document level parse: header detection, item extraction and post-processing.

``TableParser.parse_document`` is the single entry point used by the
ingestion orchestrator for every :class:`NormalizedDocument`.  When a header
is found but yields fewer than ``min_items_for_header_success`` drafts the
document is re-extracted heuristically (as if no header had been found) and
the heuristic drafts are kept when there are more of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config.settings import settings
from services.brand_dictionary import BrandDictionary
from services.header_detector import HeaderDetector, ItemsZone, text_rows
from services.item_extractor import ExtractionOutcome, ExtractionStrategy, ItemExtractor, select_strategy
from services.post_processor import ConfidenceStats, PostProcessor
from utils.layout import group_tokens_into_lines, median_gap
from utils.procurement_schema import (
    HeaderDetection,
    NormalizedDocument,
    ParsedRow,
    PriceRequestItem,
)

logger = logging.getLogger(__name__)

HEADER_BASED = "header-based"
HEURISTIC = "heuristic"
FALLBACK = "fallback"


@dataclass
class TableExtractionResult:
    items: List[PriceRequestItem]
    header: HeaderDetection
    extraction_method: str
    outcome: ExtractionOutcome
    confidence: ConfidenceStats
    zone: Optional[ItemsZone] = None
    warnings: List[str] = field(default_factory=list)
    fallback_triggered: bool = False
    fallback_reason: Optional[str] = None
    items_before_fallback: Optional[int] = None
    merged_continuations: int = 0
    duplicates_removed: int = 0
    discarded: int = 0
    unknown_brand_candidates: List[str] = field(default_factory=list)
    layout_stats: Optional[Dict[str, Any]] = None

    @property
    def needs_verification(self) -> bool:
        return self.confidence.needs_verification

    def to_json(self) -> Dict[str, Any]:
        return {
            "items": [item.to_json() for item in self.items],
            "header": self.header.to_json(),
            "extraction_method": self.extraction_method,
            "extraction": self.outcome.to_json(),
            "confidence": self.confidence.to_json(),
            "zone": self.zone.to_json() if self.zone else None,
            "warnings": list(self.warnings),
            "fallback_triggered": self.fallback_triggered,
            "fallback_reason": self.fallback_reason,
            "items_before_fallback": self.items_before_fallback,
            "merged_continuations": self.merged_continuations,
            "duplicates_removed": self.duplicates_removed,
            "discarded": self.discarded,
            "unknown_brand_candidates": list(self.unknown_brand_candidates),
            "layout_stats": self.layout_stats,
        }


class TableParser:
    def __init__(
        self,
        *,
        header_detector: Optional[HeaderDetector] = None,
        item_extractor: Optional[ItemExtractor] = None,
        post_processor: Optional[PostProcessor] = None,
        brands: Optional[BrandDictionary] = None,
        min_items_for_header_success: Optional[int] = None,
    ) -> None:
        self.header_detector = header_detector or HeaderDetector()
        self.item_extractor = item_extractor or ItemExtractor(header_detector=self.header_detector)
        self.post_processor = post_processor or PostProcessor(brands=brands)
        self.min_items_for_header_success = (
            settings.min_items_for_header_success
            if min_items_for_header_success is None
            else min_items_for_header_success
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def parse_document(self, document: NormalizedDocument) -> TableExtractionResult:
        warnings: List[str] = []
        header = self.header_detector.detect(document)
        if header.found:
            logger.debug(
                "header_found source=%s line=%d score=%.1f columns=%s",
                document.source_name,
                header.line_index,
                header.score,
                ",".join(column.column_type.value for column in header.columns),
            )
        elif header.rejection_reason:
            warnings.append(f"Header rejected: {header.rejection_reason}")
        else:
            warnings.append("No header row detected - using heuristic parsing")
            logger.info("header_missing source=%s", document.source_name)

        strategy = select_strategy(document, header)
        zone_rows = self._zone_rows(document, strategy)
        zone = self.header_detector.detect_zone(zone_rows, header) if zone_rows else None
        stop_at = self._stop_at(zone, strategy)

        outcome = self.item_extractor.extract(document, header, stop_at=stop_at)
        method = HEADER_BASED if header.found else HEURISTIC
        fallback_reason: Optional[str] = None
        items_before: Optional[int] = None

        if header.found and len(outcome.items) < self.min_items_for_header_success:
            items_before = len(outcome.items)
            fallback_reason = (
                f"Header-based parsing yielded only {items_before} items "
                f"(< {self.min_items_for_header_success})"
            )
            logger.warning("%s - triggering fallback for %s", fallback_reason, document.source_name)
            warnings.append(fallback_reason)
            no_header = HeaderDetection.not_found(
                f"Original header at line {header.line_index} rejected due to insufficient items"
            )
            same_rows = select_strategy(document, no_header) is strategy
            retry = self.item_extractor.extract(
                document, no_header, stop_at=stop_at if same_rows else None
            )
            if len(retry.items) > len(outcome.items):
                outcome = retry
            method = FALLBACK

        post = self.post_processor.process(outcome.items)
        if post.confidence.needs_verification and post.items:
            warnings.append(
                f"Low confidence extraction: {post.confidence.low_count}/{len(post.items)} items below threshold"
            )

        logger.info(
            "table_parse source=%s method=%s strategy=%s raw_items=%d items=%d",
            document.source_name,
            method,
            outcome.strategy.value,
            len(outcome.items),
            len(post.items),
        )
        return TableExtractionResult(
            items=post.items,
            header=header,
            extraction_method=method,
            outcome=outcome,
            confidence=post.confidence,
            zone=zone,
            warnings=warnings,
            fallback_triggered=fallback_reason is not None,
            fallback_reason=fallback_reason,
            items_before_fallback=items_before,
            merged_continuations=post.merged_continuations,
            duplicates_removed=post.duplicates_removed,
            discarded=post.discarded,
            unknown_brand_candidates=post.unknown_brand_candidates,
            layout_stats=self.layout_stats(document),
        )

    def layout_stats(self, document: NormalizedDocument) -> Optional[Dict[str, Any]]:
        """Token layout figures for documents with positioned words."""

        if not document.has_positions:
            return None
        y_tolerance = self.item_extractor.config.y_tolerance
        lines = group_tokens_into_lines(document.tokens, y_tolerance)
        rows = document.rows
        cells = sum(len(row.cells) for row in rows)
        return {
            "total_pages": document.page_count or len({token.page for token in document.tokens}),
            "total_tokens": len(document.tokens),
            "total_rows": len(rows),
            "avg_cells_per_row": round(cells / len(rows), 2) if rows else 0.0,
            "median_gap_x": round(median_gap(lines), 2),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _zone_rows(document: NormalizedDocument, strategy: ExtractionStrategy) -> Sequence[ParsedRow]:
        if strategy is ExtractionStrategy.RAW_TEXT or not document.rows:
            return text_rows(document.raw_text) if document.raw_text.strip() else ()
        return document.rows

    @staticmethod
    def _stop_at(zone: Optional[ItemsZone], strategy: ExtractionStrategy) -> Optional[int]:
        # Only a keyword end bounds extraction; repeated headers are skipped line by line.
        if zone is None or zone.end_reason != "keyword" or strategy is ExtractionStrategy.TABLES:
            return None
        return zone.end_line + 1


__all__ = ["TableExtractionResult", "TableParser"]
