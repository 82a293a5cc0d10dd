"""Locate the header row of a line-item table and the boundaries of the items zone.

Candidate rows are scored by classifying every cell against the column
vocabulary (:mod:`services.fuzzy_matcher`), summing ``weight x match score``
over the distinct column types and adding structural bonuses.  A candidate is
only accepted when it clears the minimum score *and* looks like an item table
(a description column, or a quantity column plus at least one other type).
Form metadata rows such as ``Fleet Number / Activity code / GL Code / WO``
are rejected before any scoring happens.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config.settings import settings
from services.column_dictionary import weight_of
from services.fuzzy_matcher import FuzzyMatcher, normalize_label
from utils.procurement_schema import (
    ColumnType,
    DetectedColumn,
    HeaderDetection,
    HeaderOrigin,
    NormalizedDocument,
    ParsedRow,
    Table,
)
from utils.text_normalizer import normalize_text, split_cells
from utils.units import QTY_UNIT_PREFIX_RE

logger = logging.getLogger(__name__)

FORM_METADATA_KEYWORDS: Tuple[str, ...] = (
    "fleet number",
    "activity code",
    "gl code",
    "work order",
    "cost center",
    "cost centre",
    "requestor",
    "requester",
    "recommended supplier",
    "preferred supplier",
    "approver",
    "hod name",
    "buyer",
    "purchase requisition",
    "requisition no",
    "creation date",
    "required date",
    "delivery date",
    "sub activity",
    "budget code",
    "project code",
    "department",
)

ITEMS_ZONE_START_KEYWORDS: Tuple[str, ...] = (
    "line", "qty", "quantity", "uom", "unit of measure", "item code", "item no",
    "part number", "part no", "p/n", "item description", "description",
    "nomenclature", "price", "unit price", "extension", "amount",
    "ligne", "quantité", "qté", "unité", "référence", "désignation",
    "prix unitaire", "montant",
)

ITEMS_ZONE_END_KEYWORDS: Tuple[str, ...] = (
    "terms and conditions", "terms & conditions", "general terms",
    "delivery terms", "payment terms", "validity", "notes:", "note:",
    "remarks:", "important:", "signature", "authorized by", "approved by",
    "bank details", "account details", "total amount", "grand total",
    "sub total",
    "conditions générales", "conditions de livraison",
    "conditions de paiement", "validité", "remarques:", "approuvé par",
    "montant total", "total général",
)

MIN_ZONE_START_KEYWORDS = 3
REAPPEARANCE_RATIO = 0.6

_WORD_SPLIT = re.compile(r"\s+")


@dataclass(frozen=True)
class HeaderDetectorConfig:
    fuzzy_threshold: float = 0.75
    min_header_score: float = 8.0
    strong_header_score: float = 15.0
    max_search_lines: int = 40
    bonus_line_qty: float = 3.0
    bonus_qty_uom: float = 2.0
    bonus_description: float = 2.0
    bonus_code: float = 1.0
    min_form_metadata_hits: int = 2
    max_split_words: int = 12
    min_split_coverage: float = 0.5

    @classmethod
    def from_settings(cls) -> "HeaderDetectorConfig":
        return cls(
            fuzzy_threshold=settings.fuzzy_match_threshold,
            min_header_score=settings.min_header_score,
            strong_header_score=settings.strong_header_score,
            max_search_lines=settings.max_header_search_lines,
            bonus_line_qty=settings.header_bonus_line_qty,
            bonus_qty_uom=settings.header_bonus_qty_uom,
            bonus_description=settings.header_bonus_description,
            bonus_code=settings.header_bonus_code,
            min_form_metadata_hits=settings.min_form_metadata_hits,
        )


@dataclass(frozen=True)
class ItemsZone:
    start_line: int
    end_line: int
    detection_method: str
    end_reason: str = "end-of-document"

    @property
    def line_count(self) -> int:
        return max(0, self.end_line - self.start_line + 1)

    def contains(self, index: int) -> bool:
        return self.start_line <= index <= self.end_line

    def to_json(self) -> Dict[str, Any]:
        return {
            "items_zone_start_line": self.start_line,
            "items_zone_end_line": self.end_line,
            "detection_method": self.detection_method,
            "end_reason": self.end_reason,
            "zone_line_count": self.line_count,
        }


def header_tokens(header_text: str) -> List[str]:
    return [token for token in normalize_label(header_text).split() if len(token) >= 3]


def text_rows(raw_text: str) -> List[ParsedRow]:
    """Split raw text into naive rows, one per line."""

    rows: List[ParsedRow] = []
    source = (raw_text or "").replace("\r\n", "\n").replace("\r", "\n")
    for index, line in enumerate(source.split("\n")):
        # Cells are split before whitespace runs are collapsed.
        cells = tuple(normalize_text(cell) for cell in split_cells(line))
        rows.append(ParsedRow(raw=normalize_text(line).strip(), cells=cells, line_number=index))
    return rows


class HeaderDetector:
    """Score candidate rows and pick the header of the items table."""

    def __init__(
        self,
        config: Optional[HeaderDetectorConfig] = None,
        matcher: Optional[FuzzyMatcher] = None,
    ) -> None:
        self.config = config or HeaderDetectorConfig.from_settings()
        self.matcher = matcher or FuzzyMatcher(threshold=self.config.fuzzy_threshold)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def detect(self, document: NormalizedDocument) -> HeaderDetection:
        """Return the header of ``document`` or a not-found sentinel.

        Rows are searched first, then each 2-D table, then the raw text split
        into lines.  The first representation that yields a valid header wins.
        """

        rejected: Optional[HeaderDetection] = None

        if document.rows:
            detection = self.detect_in_rows(document.rows, origin=HeaderOrigin.ROWS)
            if detection.found:
                return detection
            rejected = rejected or self._as_rejection(detection)

        for table_index, table in enumerate(document.tables):
            detection = self.detect_in_table(table, table_index=table_index)
            if detection.found:
                return detection
            rejected = rejected or self._as_rejection(detection)

        if document.raw_text.strip():
            detection = self.detect_in_rows(
                text_rows(document.raw_text), origin=HeaderOrigin.RAW_TEXT
            )
            if detection.found:
                return detection
            rejected = rejected or self._as_rejection(detection)

        if rejected is not None:
            return HeaderDetection.not_found(
                rejected.rejection_reason, is_form_metadata=rejected.is_form_metadata
            )
        return HeaderDetection.not_found()

    def detect_in_rows(
        self, rows: Sequence[ParsedRow], origin: HeaderOrigin = HeaderOrigin.ROWS
    ) -> HeaderDetection:
        limit = min(len(rows), self.config.max_search_lines)
        cache: Dict[int, HeaderDetection] = {}
        best: Optional[HeaderDetection] = None
        first_rejection: Optional[HeaderDetection] = None

        def evaluate(index: int) -> HeaderDetection:
            if index not in cache:
                cache[index] = self._evaluate_row(rows[index], index, origin)
            return cache[index]

        index = 0
        while index < limit:
            row = rows[index]
            if not row.raw.strip():
                index += 1
                continue

            single = evaluate(index)
            if single.found:
                if best is None or single.score > best.score:
                    best = single
            elif first_rejection is None and single.rejection_reason:
                first_rejection = single

            if best is not None and best.score >= self.config.strong_header_score:
                break

            next_index = index + 1
            if next_index < len(rows) and rows[next_index].raw.strip():
                combined = self._evaluate_combined(row, rows[next_index], index, origin)
                following = evaluate(next_index)
                to_beat = max(
                    best.score if best is not None else 0.0,
                    single.score,
                    following.score,
                )
                if combined.found and combined.score > to_beat:
                    logger.debug(
                        "header_two_line line=%d score=%.1f beat=%.1f",
                        index,
                        combined.score,
                        to_beat,
                    )
                    best = combined
                    if best.score >= self.config.strong_header_score:
                        break
                    index += 2
                    continue
            index += 1

        if best is not None:
            logger.debug(
                "header_found origin=%s line=%d score=%.1f columns=%s",
                origin.value,
                best.line_index,
                best.score,
                ",".join(column.column_type.value for column in best.columns),
            )
            return best
        if first_rejection is not None:
            return first_rejection
        return HeaderDetection.not_found()

    def detect_in_table(self, table: Table, table_index: int = 0) -> HeaderDetection:
        limit = min(len(table), self.config.max_search_lines)
        best: Optional[HeaderDetection] = None
        first_rejection: Optional[HeaderDetection] = None
        for row_index in range(limit):
            cells = list(table[row_index])
            if sum(1 for cell in cells if cell and cell.strip()) < 2:
                continue
            raw = " | ".join(cell for cell in cells if cell and cell.strip())
            if self.is_form_metadata(raw):
                if first_rejection is None:
                    first_rejection = self._form_metadata_rejection(raw, row_index, HeaderOrigin.TABLES)
                continue
            detection = self.score_cells(
                cells,
                row_index,
                raw_text=raw,
                origin=HeaderOrigin.TABLES,
                table_index=table_index,
            )
            if detection.found:
                if best is None or detection.score > best.score:
                    best = detection
                if best.score >= self.config.strong_header_score:
                    break
            elif first_rejection is None and detection.rejection_reason:
                first_rejection = detection
        if best is not None:
            return best
        if first_rejection is not None:
            return first_rejection
        return HeaderDetection.not_found()

    def score_cells(
        self,
        cells: Sequence[str],
        line_index: int,
        *,
        spans: Optional[Sequence[Tuple[float, float]]] = None,
        raw_text: Optional[str] = None,
        origin: Optional[HeaderOrigin] = None,
        table_index: Optional[int] = None,
        spans_two_lines: bool = False,
    ) -> HeaderDetection:
        """Score one candidate row given its cells.

        The returned detection always carries the computed score; ``found`` is
        only set when the candidate passes the validity gate.
        """

        text = raw_text if raw_text is not None else " ".join(cell for cell in cells if cell)
        matched: List[DetectedColumn] = []
        for column_index, cell in enumerate(cells):
            if not cell:
                continue
            column_type, score = self.matcher.classify(cell)
            if column_type is ColumnType.UNKNOWN:
                continue
            x_range = None
            if spans is not None and column_index < len(spans):
                x_range = tuple(spans[column_index])
            matched.append(
                DetectedColumn(
                    column_type=column_type,
                    header_text=cell.strip(),
                    score=score,
                    x_range=x_range,
                    column_index=column_index,
                )
            )

        columns = self._deduplicate_columns(matched)
        score = self._weighted_score(columns)
        reason = self._validate(columns, score)
        return HeaderDetection(
            found=reason is None,
            score=score,
            line_index=line_index,
            columns=tuple(columns),
            raw_header_text=text.strip(),
            rejection_reason=reason,
            origin=origin,
            table_index=table_index,
            spans_two_lines=spans_two_lines,
        )

    def is_form_metadata(self, text: str) -> bool:
        lowered = text.lower().replace("\r", " ").replace("\n", " ")
        hits = 0
        for keyword in FORM_METADATA_KEYWORDS:
            if keyword in lowered:
                hits += 1
                if hits >= self.config.min_form_metadata_hits:
                    return True
        return False

    def detect_zone(
        self, rows: Sequence[ParsedRow], header: Optional[HeaderDetection] = None
    ) -> ItemsZone:
        """Determine where the items zone starts and ends in ``rows``."""

        total = len(rows)
        if total == 0:
            return ItemsZone(0, -1, "full-document")

        start = 0
        method = "full-document"
        header_in_rows = (
            header is not None
            and header.found
            and header.origin in (HeaderOrigin.ROWS, HeaderOrigin.RAW_TEXT)
            and header.line_index >= 0
        )
        if header_in_rows:
            start = header.line_index + (2 if header.spans_two_lines else 1)
            method = "header-based"
        else:
            keyword_start = self._keyword_zone_start(rows)
            if keyword_start is not None:
                start = keyword_start
                method = "keyword-based"
            else:
                anchor = self._first_quantity_anchor(rows)
                if anchor is not None:
                    start = anchor
                    method = "heuristic"

        end = total - 1
        end_reason = "end-of-document"
        tokens = header_tokens(header.raw_header_text) if header_in_rows else []
        if tokens:
            for index in range(start, total):
                if self.is_header_reappearance(rows[index].raw, tokens):
                    end = index - 1
                    end_reason = "repeated-header"
                    break

        keyword_end = self.find_zone_end_keyword(rows, start)
        if keyword_end is not None and keyword_end - 1 < end:
            end = keyword_end - 1
            end_reason = "keyword"

        return ItemsZone(start, end, method, end_reason)

    def find_zone_end_keyword(self, rows: Sequence[ParsedRow], start: int) -> Optional[int]:
        """Index of the first end-of-items keyword line, searched from the second half."""

        search_from = max(start, len(rows) // 2)
        for index in range(search_from, len(rows)):
            lowered = rows[index].raw.lower()
            for keyword in ITEMS_ZONE_END_KEYWORDS:
                if keyword in lowered:
                    logger.debug("zone_end line=%d keyword=%r", index, keyword)
                    return index
        return None

    @staticmethod
    def is_header_reappearance(line_text: str, tokens: Sequence[str]) -> bool:
        """True when at least 60 % of the header tokens reappear in ``line_text``."""

        if not tokens:
            return False
        line_tokens = [token for token in normalize_label(line_text).split() if len(token) >= 2]
        if not line_tokens:
            return False
        hits = 0
        for token in tokens:
            if any(candidate == token or token in candidate for candidate in line_tokens):
                hits += 1
        return hits / len(tokens) >= REAPPEARANCE_RATIO

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _evaluate_row(self, row: ParsedRow, index: int, origin: HeaderOrigin) -> HeaderDetection:
        if self.is_form_metadata(row.raw):
            return self._form_metadata_rejection(row.raw, index, origin)

        spans: Optional[Sequence[Tuple[float, float]]] = None
        if len(row.cells) >= 2:
            cells: Sequence[str] = row.cells
            if len(row.spans) == len(row.cells):
                spans = row.spans
        else:
            cells = split_cells(row.raw)
        if len(cells) < 2:
            words = self._word_cells(row.raw)
            if words is None:
                return HeaderDetection(
                    found=False,
                    score=0.0,
                    line_index=index,
                    raw_header_text=row.raw.strip(),
                    rejection_reason="Fewer than two header cells",
                    origin=origin,
                )
            cells = words
        return self.score_cells(cells, index, spans=spans, raw_text=row.raw, origin=origin)

    def _evaluate_combined(
        self, first: ParsedRow, second: ParsedRow, index: int, origin: HeaderOrigin
    ) -> HeaderDetection:
        text = f"{first.raw.strip()}  {second.raw.strip()}"
        if self.is_form_metadata(text):
            return self._form_metadata_rejection(text, index, origin)
        first_cells = first.cells if len(first.cells) >= 2 else tuple(split_cells(first.raw))
        second_cells = second.cells if len(second.cells) >= 2 else tuple(split_cells(second.raw))
        if len(first_cells) >= 2 or len(second_cells) >= 2:
            cells: Sequence[str] = tuple(first_cells) + tuple(second_cells)
        else:
            words = self._word_cells(text)
            if words is None:
                return HeaderDetection(
                    found=False, score=0.0, line_index=index, origin=origin
                )
            cells = words
        return self.score_cells(
            cells, index, raw_text=text, origin=origin, spans_two_lines=True
        )

    def _word_cells(self, text: str) -> Optional[List[str]]:
        words = [word for word in _WORD_SPLIT.split(text.strip()) if word]
        if len(words) < 2 or len(words) > self.config.max_split_words:
            return None
        classified = sum(
            1 for word in words if self.matcher.classify(word)[0] is not ColumnType.UNKNOWN
        )
        if classified / len(words) < self.config.min_split_coverage:
            return None
        return words

    @staticmethod
    def _deduplicate_columns(columns: Sequence[DetectedColumn]) -> List[DetectedColumn]:
        best: Dict[ColumnType, DetectedColumn] = {}
        for column in columns:
            current = best.get(column.column_type)
            if current is None or column.score > current.score:
                best[column.column_type] = column
        return sorted(best.values(), key=lambda column: column.column_index or 0)

    def _weighted_score(self, columns: Sequence[DetectedColumn]) -> float:
        types = {column.column_type for column in columns}
        score = sum(weight_of(column.column_type) * column.score for column in columns)
        if ColumnType.LINE_NO in types and ColumnType.QTY in types:
            score += self.config.bonus_line_qty
        if ColumnType.QTY in types and ColumnType.UOM in types:
            score += self.config.bonus_qty_uom
        if ColumnType.DESCRIPTION in types and (
            ColumnType.LINE_NO in types or ColumnType.QTY in types
        ):
            score += self.config.bonus_description
        if ColumnType.ITEM_CODE in types or ColumnType.PART_NUMBER in types:
            score += self.config.bonus_code
        return score

    def _validate(self, columns: Sequence[DetectedColumn], score: float) -> Optional[str]:
        if not columns:
            return "No columns detected"
        types = {column.column_type for column in columns}
        has_description = ColumnType.DESCRIPTION in types
        has_quantity = ColumnType.QTY in types
        if not has_description and not (has_quantity and len(types) >= 2):
            return "Missing description column (or quantity with another column)"
        if score < self.config.min_header_score:
            return f"Score {score:.1f} below minimum {self.config.min_header_score:.1f}"
        return None

    @staticmethod
    def _form_metadata_rejection(text: str, index: int, origin: HeaderOrigin) -> HeaderDetection:
        return HeaderDetection(
            found=False,
            score=0.0,
            line_index=index,
            raw_header_text=text.strip(),
            rejection_reason="Line is form metadata (not item table header)",
            is_form_metadata=True,
            origin=origin,
        )

    @staticmethod
    def _as_rejection(detection: HeaderDetection) -> Optional[HeaderDetection]:
        if detection.rejection_reason:
            return detection
        return None

    def _keyword_zone_start(self, rows: Sequence[ParsedRow]) -> Optional[int]:
        for index in range(min(len(rows), self.config.max_search_lines)):
            lowered = rows[index].raw.lower()
            hits = sum(1 for keyword in ITEMS_ZONE_START_KEYWORDS if keyword in lowered)
            if hits >= MIN_ZONE_START_KEYWORDS:
                return index + 1
        return None

    @staticmethod
    def _first_quantity_anchor(rows: Sequence[ParsedRow]) -> Optional[int]:
        for index, row in enumerate(rows):
            if QTY_UNIT_PREFIX_RE.match(row.raw):
                return index
        return None


__all__ = [
    "FORM_METADATA_KEYWORDS",
    "HeaderDetector",
    "HeaderDetectorConfig",
    "ITEMS_ZONE_END_KEYWORDS",
    "ITEMS_ZONE_START_KEYWORDS",
    "ItemsZone",
    "header_tokens",
    "text_rows",
]
