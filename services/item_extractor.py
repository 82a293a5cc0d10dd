"""Turn rows, tables or positioned tokens into draft :class:`PriceRequestItem` objects.

Three strategies exist and :func:`select_strategy` picks one from what the
:class:`~utils.procurement_schema.NormalizedDocument` carries:

``positions``
    PDF/OCR tokens grouped into lines by their y coordinate.  When the header
    columns carry x-ranges every token is assigned to the nearest column,
    otherwise the reconstructed line text is parsed like a text row.
``tables``
    2-D tables (Excel sheets, Word tables); cells are mapped by column index.
``rows`` / ``raw_text``
    Text lines.  Detected columns are used when the row has enough cells,
    otherwise the ordered :data:`LINE_PATTERNS` table and a cell heuristic
    take over.

Lines matching :data:`NOISE_PATTERNS` are discarded before any parsing.
Continuation lines are emitted as quantity-1 drafts without codes; the
post-processor decides whether to merge them into their predecessor.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence, Set, Tuple

from config.settings import settings
from services.header_detector import HeaderDetector, header_tokens, text_rows
from utils.layout import group_tokens_into_lines, line_text
from utils.procurement_schema import (
    DEFAULT_UNIT,
    MAX_QUANTITY,
    ColumnType,
    DetectedColumn,
    HeaderDetection,
    HeaderOrigin,
    NormalizedDocument,
    ParsedRow,
    PriceRequestItem,
    Table,
    TextToken,
)
from utils.text_normalizer import split_cells
from utils.units import UNIT_PATTERN, is_unit_token, normalize_unit

logger = logging.getLogger(__name__)


class ExtractionStrategy(str, Enum):
    POSITIONS = "positions"
    TABLES = "tables"
    ROWS = "rows"
    RAW_TEXT = "raw_text"


@dataclass(frozen=True)
class ItemExtractorConfig:
    min_description_chars: int = 3
    max_quantity: float = MAX_QUANTITY
    y_tolerance: float = 5.0

    @classmethod
    def from_settings(cls) -> "ItemExtractorConfig":
        return cls(
            min_description_chars=settings.min_description_chars,
            max_quantity=settings.max_quantity,
            y_tolerance=settings.position_y_tolerance,
        )


# ----------------------------------------------------------------------
# Pattern tables
# ----------------------------------------------------------------------
_QTY = r"(?P<qty>\d+(?:[.,]\d+)?)"
_UNIT = rf"(?P<unit>{UNIT_PATTERN})\.?"
_CODE = r"(?P<code>\d{5,8}|(?=\S*\d)[A-Za-z0-9][\w\-/.]{3,})"
_REF = r"(?P<ref>(?=\S*\d)(?=\S*[A-Za-z])[A-Za-z0-9][\w\-/.]{2,})"
_DESCRIPTION = r"(?P<description>\S.*?)"


@dataclass(frozen=True)
class LinePattern:
    name: str
    regex: Pattern[str]


LINE_PATTERNS: Tuple[LinePattern, ...] = (
    LinePattern(
        "line_qty_unit_code_description",
        re.compile(
            rf"^(?P<line>\d{{1,3}})\s+{_QTY}\s+{_UNIT}\s+{_CODE}\s+(?:{_REF}\s+)?{_DESCRIPTION}\s*$",
            re.IGNORECASE,
        ),
    ),
    LinePattern(
        "line_qty_unit_description",
        re.compile(
            rf"^(?P<line>\d{{1,3}})\s+{_QTY}\s+{_UNIT}\s+{_DESCRIPTION}\s*$",
            re.IGNORECASE,
        ),
    ),
    LinePattern(
        "qty_unit_description",
        re.compile(rf"^{_QTY}\s+{_UNIT}\s+{_DESCRIPTION}\s*$", re.IGNORECASE),
    ),
    LinePattern(
        "qty_x_description",
        re.compile(rf"^{_QTY}\s*[x×]\s+{_DESCRIPTION}\s*$", re.IGNORECASE),
    ),
    LinePattern(
        "code_description_qty",
        re.compile(
            rf"^{_CODE}\s+[-–:]\s+{_DESCRIPTION}\s+{_QTY}(?:\s+{_UNIT})?\s*$",
            re.IGNORECASE,
        ),
    ),
    LinePattern(
        "numbered_description",
        re.compile(
            r"^(?:(?P<line>\d{1,3})[.)]\s+"
            r"|(?P<line_dotted>\d{1,3}\.\d{1,2})\s+"
            r"|(?:item|line|ligne)\s*#?\s*(?P<line_word>\d+)\s*[:.\-]?\s*"
            r"|#\s*(?P<line_hash>\d{1,3})\s+)"
            + _DESCRIPTION
            + r"\s*$",
            re.IGNORECASE,
        ),
    ),
)

STRONG_LINE_ID_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"^\s*\d{1,3}[.)]\s"),
    re.compile(r"^\s*\d{1,3}\.\d{1,2}\s"),
    re.compile(r"^\s*(?:item|line|ligne)\s*#?\s*\d+", re.IGNORECASE),
    re.compile(r"^\s*#\s*\d{1,3}\s"),
)

NOISE_PATTERNS: Tuple[Pattern[str], ...] = (
    # e-mail headers
    re.compile(r"^(?:from|to|cc|bcc|subject|sent|date|de|à|objet|envoyé|re|fwd|tr)\s*:", re.IGNORECASE),
    # day-of-week send lines and time stamps
    re.compile(
        r"^(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
        r"lundi|mardi|mercredi|jeudi|vendredi|samedi|dimanche)\b.*\d{4}",
        re.IGNORECASE,
    ),
    re.compile(r"^\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?$", re.IGNORECASE),
    # legal and registration boilerplate
    re.compile(r"\b(?:capital\s+social|rccm|rc\s*:|nif|siret|siren|n°\s*cc)\b", re.IGNORECASE),
    re.compile(r"\btel/fax\s*:", re.IGNORECASE),
    # totals
    re.compile(
        r"^(?:total|grand\s+total|sous-total|sub\s*total|net\s+total)(?:\s+(?:ht|ttc))?\s*:?"
        r"\s*[\d\s.,]*(?:usd|eur|xof|fcfa|cfa|\$|€)?\s*$",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:total\s+in\s+equivalent|total\s+cost|net\s+total)\b", re.IGNORECASE),
    # page markers and separators
    re.compile(r"^(?:page\s+\d+\s*(?:of|/|sur)\s*\d+|-{3,}|\*{3,}|={3,}|_{3,})$", re.IGNORECASE),
    # salutations and mobile signatures
    re.compile(
        r"^(?:cordialement|best\s+regards|regards|kind\s+regards|sincères\s+salutations|"
        r"bien\s+à\s+vous|bonjour|bonsoir|hello|dear|merci)\b",
        re.IGNORECASE,
    ),
    re.compile(r"^(?:sent\s+from|envoyé\s+depuis|envoyé\s+de\s+mon)", re.IGNORECASE),
    # purchase requisition labels
    re.compile(r"^(?:purchase\s+requisitions?\s+no|requisition\s+no|pr\s+number)\s*:?", re.IGNORECASE),
    re.compile(r"^(?:creation\s+date|required\s+date|delivery\s+date)\s*[():]", re.IGNORECASE),
    re.compile(r"^(?:general\s+description|additional\s+description|item\s+description)\s*:", re.IGNORECASE),
    re.compile(r"^(?:requestor|requester|hod\s+name|buyer|approver)\s*:?\s*$", re.IGNORECASE),
    re.compile(r"^(?:activity\s+code|gl\s+code|cost\s+cent(?:er|re)|sub\s+activity)\s*:?\s*$", re.IGNORECASE),
    # label-only lines
    re.compile(r"^[A-Za-zÀ-ÿ][A-Za-zÀ-ÿ\s'/]*:\s*$"),
    # standalone dates
    re.compile(r"^\d{1,2}[-/](?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[-/]\d{2,4}$", re.IGNORECASE),
    re.compile(r"^\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}$"),
    # e-mail addresses
    re.compile(r"^[\w.\-]+@[\w.\-]+\.\w+$"),
    re.compile(r"\b[\w.\-]+@[\w.\-]+\.(?:com|org|net|ci|fr|io)\b", re.IGNORECASE),
    # phone numbers
    re.compile(r"^[*+]?\d{3}[\s.\-]?\d{2}[\s.\-]?\d{2}[\s.\-]?\d{2}[\s.\-]?\d{2}$"),
    re.compile(r"^\+?\d{1,4}[\s.\-]?\d{2,3}[\s.\-]?\d{2,3}[\s.\-]?\d{2,3}[\s.\-]?\d{2,3}$"),
    re.compile(r"^(?:tel|tél|phone|fax|mobile|cell|gsm)\s*[:.]?\s*[+\d]", re.IGNORECASE),
    # URLs
    re.compile(r"^(?:https?://|www\.)", re.IGNORECASE),
    re.compile(r"\bwww\.\w+\.\w+", re.IGNORECASE),
    # postal addresses
    re.compile(r"\b\d+,?\s+(?:avenue|rue|boulevard|street|road|place)\b", re.IGNORECASE),
    re.compile(r"\bBP\s+\d+\b"),
    # numeric-only lines
    re.compile(r"^[\d\s.,\-/()\[\]]+$"),
)

TABLE_HEADER_WORDS: Tuple[str, ...] = (
    "line", "qty", "quantity", "uom", "item", "code", "description", "stock",
    "unit", "designation", "désignation", "quantité", "qté", "qte", "ref",
    "référence", "reference", "part", "price", "prix",
)
_TABLE_HEADER_RE = re.compile(
    r"(?<!\w)(?:" + "|".join(re.escape(word) for word in TABLE_HEADER_WORDS) + r")(?!\w)",
    re.IGNORECASE,
)

SPEC_NORM_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(?:IP[0-9]{2}[A-Z]?|IPX[0-9])\b", re.IGNORECASE),
    re.compile(r"\b(?:IEC|IEEE|ASTM|DIN|ISO|EN|AISI|ANSI|BS|NF)\s*[-:]?\s*\d+", re.IGNORECASE),
    re.compile(r"\b\d+\s*(?:VAC|VDC|V\s*AC|V\s*DC|V)\b", re.IGNORECASE),
    re.compile(r"\b\d+\s*(?:Hz|kHz|MHz)\b", re.IGNORECASE),
    re.compile(r"\b\d+(?:[.,]\d+)?\s*(?:kW|MW|HP|kVA|A|mA)\b"),
    re.compile(r"\b\d+\s*(?:°C|°F|deg\s*C|deg\s*F)", re.IGNORECASE),
    re.compile(r"\b\d+(?:[.,]\d+)?\s*mm\b", re.IGNORECASE),
    re.compile(r"\b\d+(?:[.,]\d+)?\s*kg\b", re.IGNORECASE),
    re.compile(r"\b\d+(?:[.,]\d+)?\s*(?:bar|psi|kPa|MPa)\b", re.IGNORECASE),
    re.compile(r"\b(?:SS|AISI)\s*\d{3}", re.IGNORECASE),
    re.compile(r"\b(?:Grade|Class)\s+[A-Z0-9]+", re.IGNORECASE),
)
KEY_VALUE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z\s]{2,25}:\s*\S.*")
_KEY_VALUE_EXCLUDED_KEYS = {"line", "item", "qty", "quantity", "uom", "description"}

_QTY_CELL = re.compile(r"^\d{1,4}(?:[.,]\d+)?$")
_INTERNAL_CODE = re.compile(r"^\d{5,8}$")
_REFERENCE_CELL = re.compile(r"^[A-Za-z0-9][\w\-/.]{3,24}$")
_NUMERIC_ONLY = re.compile(r"^[\d\s.,\-/()\[\]%]+$")
_WHITESPACE = re.compile(r"\s+")
_LETTER = re.compile(r"[A-Za-zÀ-ÿ]")


# ----------------------------------------------------------------------
# Line level helpers
# ----------------------------------------------------------------------
def is_noise_line(line: str) -> bool:
    """True for lines that can never describe an article."""

    stripped = (line or "").strip()
    if len(stripped) < 3:
        return True
    for pattern in NOISE_PATTERNS:
        if pattern.search(stripped):
            return True
    return _looks_like_table_header(stripped)


def _looks_like_table_header(line: str) -> bool:
    if any(char.isdigit() for char in line):
        return False
    hits = len(_TABLE_HEADER_RE.findall(line))
    if hits < 2:
        return False
    words = [word for word in _WHITESPACE.split(line) if word]
    return hits * 2 >= len(words)


def spec_line_patterns(line: str) -> List[str]:
    """Return the technical markers found in ``line`` (``key:value``, norms, ratings)."""

    stripped = (line or "").strip()
    found: List[str] = []
    if KEY_VALUE_PATTERN.match(stripped):
        key = stripped.split(":", 1)[0].strip().lower()
        if key not in _KEY_VALUE_EXCLUDED_KEYS:
            found.append("key:value")
    for pattern in SPEC_NORM_PATTERNS:
        match = pattern.search(stripped)
        if match:
            found.append(match.group(0))
    return found


def is_spec_line(line: str) -> bool:
    return bool(spec_line_patterns(line))


def has_strong_line_identifier(line: str) -> bool:
    return any(pattern.match(line or "") for pattern in STRONG_LINE_ID_PATTERNS)


def parse_quantity(value: Any, max_quantity: float = MAX_QUANTITY) -> Optional[float]:
    """Parse ``value`` as a quantity; ``None`` when absent, invalid or out of ``(0, max]``."""

    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        text = re.sub(r"\s+", "", str(value))
        if not text:
            return None
        text = text.replace(",", ".")
        match = re.match(r"^\d+(?:\.\d+)?$", text)
        if not match:
            return None
        number = float(text)
    if number <= 0 or number > max_quantity:
        return None
    return number


def match_line_pattern(line: str) -> Optional[Tuple[str, Dict[str, str]]]:
    stripped = (line or "").strip()
    for pattern in LINE_PATTERNS:
        match = pattern.regex.match(stripped)
        if match:
            groups = {key: value for key, value in match.groupdict().items() if value}
            return pattern.name, groups
    return None


def _clean(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _parse_line_number(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = re.match(r"^\s*(\d{1,6})", str(value))
    if not match:
        return None
    return int(match.group(1))


def _parse_price(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    cleaned = re.sub(r"[^\d.,]", "", str(value))
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "") if cleaned.rfind(".") > cleaned.rfind(",") else cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def select_strategy(document: NormalizedDocument, header: HeaderDetection) -> ExtractionStrategy:
    """Pick the extraction strategy from the populated variant of ``document``."""

    if header.found:
        if header.origin is HeaderOrigin.TABLES:
            return ExtractionStrategy.TABLES
        if header.origin is HeaderOrigin.RAW_TEXT:
            return ExtractionStrategy.RAW_TEXT
        if document.has_positions:
            return ExtractionStrategy.POSITIONS
        return ExtractionStrategy.ROWS
    if document.has_positions:
        return ExtractionStrategy.POSITIONS
    if document.tables:
        return ExtractionStrategy.TABLES
    if document.rows:
        return ExtractionStrategy.ROWS
    return ExtractionStrategy.RAW_TEXT


@dataclass
class ExtractionOutcome:
    items: List[PriceRequestItem]
    strategy: ExtractionStrategy
    noise_lines: int = 0
    continuation_candidates: int = 0
    repeated_header_lines: List[int] = field(default_factory=list)
    spec_lines: int = 0
    spec_line_patterns: List[str] = field(default_factory=list)
    tables_with_own_header: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "item_count": len(self.items),
            "noise_lines": self.noise_lines,
            "continuation_candidates": self.continuation_candidates,
            "repeated_headers_ignored": len(self.repeated_header_lines),
            "repeated_header_lines": list(self.repeated_header_lines),
            "spec_lines": self.spec_lines,
            "spec_line_patterns": sorted(set(self.spec_line_patterns)),
            "tables_with_own_header": self.tables_with_own_header,
        }


class ItemExtractor:
    """Build draft line items from a normalised document and its header."""

    def __init__(
        self,
        config: Optional[ItemExtractorConfig] = None,
        header_detector: Optional[HeaderDetector] = None,
    ) -> None:
        self.config = config or ItemExtractorConfig.from_settings()
        self.header_detector = header_detector or HeaderDetector()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(
        self,
        document: NormalizedDocument,
        header: HeaderDetection,
        *,
        stop_at: Optional[int] = None,
    ) -> ExtractionOutcome:
        """Extract items from ``document``.

        ``stop_at`` is the first row index (exclusive bound) that belongs to
        the trailing terms/conditions section; rows from there on are ignored.
        """

        strategy = select_strategy(document, header)
        outcome = ExtractionOutcome(items=[], strategy=strategy)
        if strategy is ExtractionStrategy.TABLES:
            self._extract_tables(document.tables, header, outcome)
        elif strategy is ExtractionStrategy.POSITIONS:
            self._extract_positions(document.tokens, header, outcome, stop_at)
        elif strategy is ExtractionStrategy.ROWS:
            self._extract_rows(document.rows, header, outcome, stop_at)
        else:
            self._extract_rows(text_rows(document.raw_text), header, outcome, stop_at)
        logger.debug(
            "item_extraction source=%s strategy=%s items=%d noise=%d repeated_headers=%d",
            document.source_name,
            strategy.value,
            len(outcome.items),
            outcome.noise_lines,
            len(outcome.repeated_header_lines),
        )
        return outcome

    def map_cells(
        self,
        cells: Sequence[str],
        columns: Sequence[DetectedColumn],
        line_index: int,
    ) -> Optional[PriceRequestItem]:
        """Build an item from ``cells`` using the header columns' indices."""

        values: Dict[ColumnType, str] = {}
        used: Set[int] = set()
        for column in columns:
            if column.column_index is None or column.column_index >= len(cells):
                continue
            value = _clean(cells[column.column_index])
            if not value:
                continue
            values[column.column_type] = value
            if column.column_type is not ColumnType.DESCRIPTION:
                used.add(column.column_index)
        return self._item_from_values(values, cells, used, line_index)

    def heuristic_item(self, cells: Sequence[str], line_index: int) -> Optional[PriceRequestItem]:
        """Guess the meaning of each cell when no header is available."""

        working = [_clean(cell) for cell in cells]
        non_empty = [index for index, cell in enumerate(working) if cell]
        if len(non_empty) < 2:
            return None

        quantity: Optional[float] = None
        unit: Optional[str] = None
        internal_code: Optional[str] = None
        reference: Optional[str] = None
        line_number: Optional[int] = None
        used: Set[int] = set()

        if (
            len(non_empty) >= 3
            and _QTY_CELL.match(working[non_empty[0]])
            and _QTY_CELL.match(working[non_empty[1]])
        ):
            line_number = _parse_line_number(working[non_empty[0]])
            used.add(non_empty[0])

        for index in non_empty:
            if index in used:
                continue
            cell = working[index]
            if quantity is None and _QTY_CELL.match(cell):
                parsed = parse_quantity(cell, self.config.max_quantity)
                if parsed is not None:
                    quantity = parsed
                    used.add(index)
                    continue
            if unit is None and is_unit_token(cell):
                unit = normalize_unit(cell)
                used.add(index)
                continue
            if internal_code is None and _INTERNAL_CODE.match(cell) and not cell.startswith("1500"):
                internal_code = cell
                used.add(index)
                continue
            if (
                reference is None
                and _REFERENCE_CELL.match(cell)
                and any(char.isdigit() for char in cell)
                and not cell.isdigit()
            ):
                reference = cell.upper()
                used.add(index)
                continue

        description = self._longest_text_cell(working, used)
        if description is None:
            return None
        return self._build_item(
            description=description,
            quantity=quantity,
            unit=unit,
            internal_code=internal_code,
            supplier_code=reference,
            original_line=line_number if line_number is not None else line_index,
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------
    def _extract_rows(
        self,
        rows: Sequence[ParsedRow],
        header: HeaderDetection,
        outcome: ExtractionOutcome,
        stop_at: Optional[int],
    ) -> None:
        columns = header.columns if header.found else ()
        start = self._start_index(header)
        tokens = header_tokens(header.raw_header_text) if header.found else []
        end = len(rows) if stop_at is None else min(stop_at, len(rows))
        for index in range(start, end):
            row = rows[index]
            cells = row.cells if len(row.cells) >= 2 else tuple(split_cells(row.raw))
            item = self._item_from_line(row.raw, cells, columns, index, tokens, outcome)
            if item is not None:
                outcome.items.append(item)

    def _extract_positions(
        self,
        tokens: Sequence[TextToken],
        header: HeaderDetection,
        outcome: ExtractionOutcome,
        stop_at: Optional[int],
    ) -> None:
        lines = group_tokens_into_lines(tokens, self.config.y_tolerance)
        columns = header.columns if header.found else ()
        positioned = [column for column in columns if column.x_range is not None]
        start = self._start_index(header)
        head_tokens = header_tokens(header.raw_header_text) if header.found else []
        end = len(lines) if stop_at is None else min(stop_at, len(lines))
        for index in range(start, end):
            line = lines[index]
            raw = line_text(line)
            if positioned:
                if not raw.strip():
                    continue
                if is_noise_line(raw):
                    outcome.noise_lines += 1
                    continue
                if head_tokens and HeaderDetector.is_header_reappearance(raw, head_tokens):
                    outcome.repeated_header_lines.append(index)
                    continue
                item = self._item_from_tokens(line, positioned, index)
                if item is None:
                    item = self._item_from_line(raw, tuple(split_cells(raw)), (), index, [], outcome)
                if item is not None:
                    outcome.items.append(item)
                continue
            item = self._item_from_line(raw, tuple(split_cells(raw)), columns, index, head_tokens, outcome)
            if item is not None:
                outcome.items.append(item)

    def _extract_tables(
        self,
        tables: Sequence[Table],
        header: HeaderDetection,
        outcome: ExtractionOutcome,
    ) -> None:
        for table_index, table in enumerate(tables):
            if header.found and header.origin is HeaderOrigin.TABLES and header.table_index == table_index:
                table_header = header
            else:
                table_header = self.header_detector.detect_in_table(table, table_index=table_index)
                if table_header.found:
                    outcome.tables_with_own_header += 1
            start = table_header.line_index + 1 if table_header.found else 0
            for row_index in range(start, len(table)):
                cells = table[row_index]
                text = " ".join(cell for cell in cells if cell)
                if not text.strip():
                    continue
                if is_noise_line(text):
                    outcome.noise_lines += 1
                    continue
                item = None
                if table_header.found:
                    item = self.map_cells(cells, table_header.columns, row_index)
                if item is None:
                    item = self.heuristic_item(cells, row_index)
                if item is not None:
                    outcome.items.append(item)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _start_index(header: HeaderDetection) -> int:
        if not header.found or header.origin is HeaderOrigin.TABLES:
            return 0
        return header.line_index + (2 if header.spans_two_lines else 1)

    def _item_from_line(
        self,
        raw: str,
        cells: Sequence[str],
        columns: Sequence[DetectedColumn],
        index: int,
        head_tokens: Sequence[str],
        outcome: ExtractionOutcome,
    ) -> Optional[PriceRequestItem]:
        if not raw or not raw.strip():
            return None
        if is_noise_line(raw):
            outcome.noise_lines += 1
            return None
        if head_tokens and HeaderDetector.is_header_reappearance(raw, head_tokens):
            outcome.repeated_header_lines.append(index)
            return None

        if columns and len(cells) >= len(columns):
            item = self.map_cells(cells, columns, index)
            if item is not None:
                return item

        matched = match_line_pattern(raw)
        if matched is not None:
            item = self._item_from_pattern(matched[0], matched[1], index)
            if item is not None:
                return item

        has_previous = bool(outcome.items)
        patterns = spec_line_patterns(raw)
        if patterns and not has_strong_line_identifier(raw):
            outcome.spec_lines += 1
            outcome.spec_line_patterns.extend(patterns)
            if has_previous:
                return self._continuation_item(raw, index, outcome)
            return None

        item = self.heuristic_item(cells, index)
        if item is not None:
            return item
        if columns and len(cells) >= 2:
            item = self.map_cells(cells, columns, index)
            if item is not None:
                return item
        if has_previous and _LETTER.search(raw):
            return self._continuation_item(raw, index, outcome)
        return None

    def _item_from_pattern(
        self, name: str, groups: Dict[str, str], index: int
    ) -> Optional[PriceRequestItem]:
        line_number = None
        for key in ("line", "line_dotted", "line_word", "line_hash"):
            if key in groups:
                line_number = _parse_line_number(groups[key])
                break
        code = groups.get("code")
        internal_code = None
        supplier_code = groups.get("ref")
        if code:
            if _INTERNAL_CODE.match(code):
                internal_code = code
            elif supplier_code is None:
                supplier_code = code
            else:
                internal_code = code
        logger.debug("line_pattern name=%s line=%d", name, index)
        return self._build_item(
            description=groups.get("description", ""),
            quantity=parse_quantity(groups.get("qty"), self.config.max_quantity),
            unit=normalize_unit(groups["unit"]) if groups.get("unit") else None,
            internal_code=internal_code,
            supplier_code=supplier_code.upper() if supplier_code else None,
            original_line=line_number if line_number is not None else index,
        )

    def _item_from_tokens(
        self,
        line: Sequence[TextToken],
        columns: Sequence[DetectedColumn],
        index: int,
    ) -> Optional[PriceRequestItem]:
        assigned: Dict[ColumnType, List[str]] = {}
        for token in line:
            column = min(columns, key=lambda col: _distance_to_range(token.x_center, col.x_range))
            assigned.setdefault(column.column_type, []).append(token.text.strip())
        values = {column_type: _clean(" ".join(parts)) for column_type, parts in assigned.items()}
        cells = [values[column.column_type] for column in columns if column.column_type in values]
        used = {
            position
            for position, column in enumerate(column for column in columns if column.column_type in values)
            if column.column_type is not ColumnType.DESCRIPTION
        }
        return self._item_from_values(values, cells, used, index)

    def _item_from_values(
        self,
        values: Dict[ColumnType, str],
        cells: Sequence[str],
        used: Set[int],
        line_index: int,
    ) -> Optional[PriceRequestItem]:
        description = values.get(ColumnType.DESCRIPTION)
        if not description or not _LETTER.search(description):
            description = self._longest_text_cell([_clean(cell) for cell in cells], used)
        if not description:
            return None

        notes_parts = [
            values[column_type]
            for column_type in (ColumnType.SPECIFICATION, ColumnType.REMARK)
            if values.get(column_type)
        ]
        internal_code = values.get(ColumnType.ITEM_CODE)
        supplier_code = values.get(ColumnType.PART_NUMBER)
        line_number = _parse_line_number(values.get(ColumnType.LINE_NO))
        unit_value = values.get(ColumnType.UOM)
        return self._build_item(
            description=description,
            quantity=parse_quantity(values.get(ColumnType.QTY), self.config.max_quantity),
            unit=normalize_unit(unit_value) if unit_value else None,
            internal_code=internal_code,
            supplier_code=supplier_code,
            brand=values.get(ColumnType.BRAND),
            model=values.get(ColumnType.MODEL),
            notes=" | ".join(notes_parts) if notes_parts else None,
            serial_number=values.get(ColumnType.SERIAL),
            unit_price=_parse_price(values.get(ColumnType.UNIT_PRICE)),
            currency=(values.get(ColumnType.CURRENCY) or "").upper() or None,
            original_line=line_number if line_number is not None else line_index,
        )

    def _continuation_item(
        self, raw: str, index: int, outcome: ExtractionOutcome
    ) -> Optional[PriceRequestItem]:
        text = _clean(raw)
        if len(text) < self.config.min_description_chars:
            return None
        outcome.continuation_candidates += 1
        return PriceRequestItem(
            description=text,
            quantity=1.0,
            unit=DEFAULT_UNIT,
            original_line=index,
            is_estimated=True,
        )

    def _longest_text_cell(self, cells: Sequence[str], used: Set[int]) -> Optional[str]:
        best: Optional[str] = None
        for index, cell in enumerate(cells):
            if index in used or not cell:
                continue
            if _NUMERIC_ONLY.match(cell) or not _LETTER.search(cell):
                continue
            if len(cell) < self.config.min_description_chars:
                continue
            if best is None or len(cell) > len(best):
                best = cell
        return best

    def _build_item(
        self,
        *,
        description: str,
        quantity: Optional[float],
        unit: Optional[str],
        internal_code: Optional[str] = None,
        supplier_code: Optional[str] = None,
        brand: Optional[str] = None,
        model: Optional[str] = None,
        notes: Optional[str] = None,
        serial_number: Optional[str] = None,
        unit_price: Optional[float] = None,
        currency: Optional[str] = None,
        original_line: Optional[int] = None,
    ) -> Optional[PriceRequestItem]:
        cleaned = _clean(description)
        if len(cleaned) < self.config.min_description_chars or not _LETTER.search(cleaned):
            return None
        return PriceRequestItem(
            description=cleaned,
            quantity=quantity if quantity is not None else 1.0,
            unit=unit or DEFAULT_UNIT,
            internal_code=internal_code or None,
            supplier_code=supplier_code or None,
            reference=supplier_code or internal_code or None,
            brand=brand or None,
            model=model or None,
            notes=notes or None,
            original_line=original_line,
            serial_number=serial_number or None,
            unit_price=unit_price,
            currency=currency,
            is_estimated=quantity is None,
        )


def _distance_to_range(x: float, x_range: Optional[Tuple[float, float]]) -> float:
    if x_range is None:
        return float("inf")
    start, end = x_range
    if start <= x <= end:
        return 0.0
    return min(abs(x - start), abs(x - end))


__all__ = [
    "ExtractionOutcome",
    "ExtractionStrategy",
    "ItemExtractor",
    "ItemExtractorConfig",
    "LINE_PATTERNS",
    "LinePattern",
    "NOISE_PATTERNS",
    "SPEC_NORM_PATTERNS",
    "has_strong_line_identifier",
    "is_noise_line",
    "is_spec_line",
    "match_line_pattern",
    "normalize_unit",
    "parse_quantity",
    "select_strategy",
    "spec_line_patterns",
]
