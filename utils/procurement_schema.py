"""Shared data model for the RFQ ingestion pipeline.

Every source extractor (e-mail body, Word, Excel, PDF/OCR, images) emits a
:class:`NormalizedDocument`.  Header detection produces a
:class:`HeaderDetection` made of :class:`DetectedColumn` entries and the item
extractor turns rows into :class:`PriceRequestItem` drafts which the
post-processor cleans, merges and enriches.

The immutable structures are frozen dataclasses.  ``PriceRequestItem`` is a
pydantic model because it is mutated by the post-processor and must keep its
invariants (non-empty description, bounded positive quantity) on every
assignment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_UNIT = "pcs"
MAX_QUANTITY = 100000.0


class DocumentReadError(RuntimeError):
    """An attachment could not be opened by any available reader."""


class SourceType(str, Enum):
    EMAIL_TEXT = "email_text"
    EMAIL_HTML = "email_html"
    PDF = "pdf"
    EXCEL = "excel"
    WORD = "word"
    IMAGE = "image"


class ColumnType(str, Enum):
    LINE_NO = "line_no"
    QTY = "qty"
    UOM = "uom"
    ITEM_CODE = "item_code"
    PART_NUMBER = "part_number"
    BRAND = "brand"
    MODEL = "model"
    DESCRIPTION = "description"
    SPECIFICATION = "specification"
    REMARK = "remark"
    SERIAL = "serial"
    ASSET = "asset"
    DRAWING = "drawing"
    UNIT_PRICE = "unit_price"
    TOTAL_PRICE = "total_price"
    CURRENCY = "currency"
    DELIVERY_DATE = "delivery_date"
    DELIVERY_LOC = "delivery_loc"
    UNKNOWN = "unknown"


class FilterReason(str, Enum):
    LIKELY_SIGNATURE = "likely_signature"
    TINY_ICON = "tiny_icon"
    TRACKING_PIXEL = "tracking_pixel"
    LOGO = "logo"
    SOCIAL_ICON = "social_icon"
    BANNER = "banner"
    ASPECT_RATIO = "aspect_ratio"
    LOW_OCR_VALUE = "low_ocr_value"
    FOOTER_POSITION = "footer_position"
    CID_PATTERN = "cid_pattern"
    HEX_ID_PATTERN = "hex_id_pattern"


class HeaderOrigin(str, Enum):
    ROWS = "rows"
    TABLES = "tables"
    RAW_TEXT = "raw_text"


Table = Tuple[Tuple[str, ...], ...]


@dataclass(frozen=True)
class TextToken:
    """A positioned word recovered from a PDF page or an OCR pass."""

    text: str
    x: float
    y: float
    width: float
    height: float
    page: int = 1
    font_size: Optional[float] = None
    font_name: Optional[str] = None

    @property
    def x_end(self) -> float:
        return self.x + self.width

    @property
    def x_center(self) -> float:
        return self.x + self.width / 2.0


@dataclass(frozen=True)
class ParsedRow:
    raw: str
    cells: Tuple[str, ...] = ()
    line_number: int = 0
    is_continuation: bool = False
    spans: Tuple[Tuple[float, float], ...] = ()
    page: Optional[int] = None


@dataclass(frozen=True)
class NormalizedDocument:
    """Common intermediate representation produced once per source."""

    source_type: SourceType
    source_name: str
    raw_text: str = ""
    tokens: Tuple[TextToken, ...] = ()
    rows: Tuple[ParsedRow, ...] = ()
    tables: Tuple[Table, ...] = ()
    page_count: int = 0
    ocr_used_pages: Tuple[int, ...] = ()
    ocr_method: Optional[str] = None
    needs_verification: bool = False
    warnings: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not (self.tokens or self.rows or self.tables or self.raw_text.strip()):
            raise ValueError(
                f"NormalizedDocument for {self.source_name!r} has no tokens, rows, tables or text"
            )

    @property
    def has_positions(self) -> bool:
        return bool(self.tokens)

    @property
    def ocr_used(self) -> bool:
        return bool(self.ocr_used_pages) or self.ocr_method is not None


@dataclass(frozen=True)
class DetectedColumn:
    column_type: ColumnType
    header_text: str
    score: float
    x_range: Optional[Tuple[float, float]] = None
    column_index: Optional[int] = None

    def __post_init__(self) -> None:
        if self.column_type is ColumnType.UNKNOWN and self.score != 0:
            raise ValueError("unknown columns must carry a score of 0")
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"column score out of range: {self.score}")


@dataclass(frozen=True)
class HeaderDetection:
    found: bool
    score: float
    line_index: int
    columns: Tuple[DetectedColumn, ...] = ()
    raw_header_text: str = ""
    rejection_reason: Optional[str] = None
    is_form_metadata: bool = False
    origin: Optional[HeaderOrigin] = None
    table_index: Optional[int] = None
    spans_two_lines: bool = False

    @classmethod
    def not_found(cls, rejection_reason: Optional[str] = None, *, is_form_metadata: bool = False) -> "HeaderDetection":
        return cls(
            found=False,
            score=0.0,
            line_index=-1,
            rejection_reason=rejection_reason,
            is_form_metadata=is_form_metadata,
        )

    @property
    def column_types(self) -> FrozenSet[ColumnType]:
        return frozenset(column.column_type for column in self.columns)

    def column_for(self, column_type: ColumnType) -> Optional[DetectedColumn]:
        for column in self.columns:
            if column.column_type is column_type:
                return column
        return None

    @property
    def has_positions(self) -> bool:
        return any(column.x_range is not None for column in self.columns)

    def to_json(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "score": round(self.score, 2),
            "line_index": self.line_index,
            "columns": [column.column_type.value for column in self.columns],
            "raw_header_text": self.raw_header_text,
            "rejection_reason": self.rejection_reason,
            "is_form_metadata": self.is_form_metadata,
            "origin": self.origin.value if self.origin else None,
            "spans_two_lines": self.spans_two_lines,
        }


class PriceRequestItem(BaseModel):
    """One requested article recovered from a procurement document."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    description: str = Field(..., min_length=1)
    quantity: float = Field(1.0, gt=0, le=MAX_QUANTITY)
    unit: str = DEFAULT_UNIT
    internal_code: Optional[str] = Field(None, alias='internalCode')
    supplier_code: Optional[str] = Field(None, alias='supplierCode')
    reference: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    notes: Optional[str] = None
    original_line: Optional[int] = Field(None, alias='originalLine')
    serial_number: Optional[str] = Field(None, alias='serialNumber')
    unit_price: Optional[float] = Field(None, alias='unitPrice')
    currency: Optional[str] = None
    needs_manual_review: Optional[bool] = Field(None, alias='needsManualReview')
    is_estimated: Optional[bool] = Field(None, alias='isEstimated')

    @property
    def has_code(self) -> bool:
        return bool(self.internal_code or self.supplier_code or self.reference)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class FilteredImage:
    name: str
    reason: FilterReason
    width: Optional[int] = None
    height: Optional[int] = None
    ratio: Optional[float] = None
    size: Optional[int] = None
    ocr_text: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "reason": self.reason.value}
        for key in ("width", "height", "ratio", "size", "ocr_text"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


def table_from_rows(rows: List[List[Any]]) -> Table:
    """Freeze a list-of-lists table, stringifying and trimming every cell."""

    frozen: List[Tuple[str, ...]] = []
    for row in rows or []:
        cells = tuple("" if cell is None else str(cell).strip() for cell in row)
        frozen.append(cells)
    return tuple(frozen)


__all__ = [
    "ColumnType",
    "DEFAULT_UNIT",
    "DetectedColumn",
    "DocumentReadError",
    "FilterReason",
    "FilteredImage",
    "HeaderDetection",
    "HeaderOrigin",
    "MAX_QUANTITY",
    "NormalizedDocument",
    "ParsedRow",
    "PriceRequestItem",
    "SourceType",
    "Table",
    "TextToken",
    "table_from_rows",
]
