"""Clean, merge, deduplicate, enrich and score draft line items.

Passes run in a fixed order: description cleanup, continuation merge,
deduplication, enrichment (brand, model, supplier code), confidence.  The
input list is never mutated; every pass works on copies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from config.settings import settings
from services.brand_dictionary import BrandDictionary
from services.item_extractor import has_strong_line_identifier
from utils.procurement_schema import DEFAULT_UNIT, PriceRequestItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostProcessorConfig:
    min_description_chars: int = 3
    continuation_max_chars: int = 100
    low_confidence_threshold: int = 50
    review_confidence_threshold: int = 40
    max_low_confidence_ratio: float = 0.5

    @classmethod
    def from_settings(cls) -> "PostProcessorConfig":
        return cls(
            min_description_chars=settings.min_description_chars,
            continuation_max_chars=settings.continuation_max_chars,
            low_confidence_threshold=settings.confidence_low_threshold,
            review_confidence_threshold=settings.confidence_review_threshold,
            max_low_confidence_ratio=settings.max_low_confidence_ratio,
        )


_CURRENCY = r"(?:USD|EUR|XOF|FCFA|CFA|GBP)"
DESCRIPTION_CLEANUP: Tuple[Tuple[Pattern[str], str], ...] = (
    # GL codes glued to a model token ("ABC1231500123456 ..."), then standalone
    (re.compile(r"([A-Z]+\d+)1500\d{4,}.*$"), r"\1"),
    (re.compile(r"\s*\b1500\d{4,}\b.*$"), ""),
    # trailing amounts with a currency
    (re.compile(rf"\s+\d[\d\s]*(?:[.,]\d{{1,2}})?\s*(?:{_CURRENCY}|€|\$)\s*$", re.IGNORECASE), ""),
    (re.compile(r"\s+[$€]\s*\d[\d\s,.]*$"), ""),
    (re.compile(r"\s+0\s+0\s*$"), ""),
    (re.compile(rf"\b{_CURRENCY}\b", re.IGNORECASE), ""),
)
_LEADING_PUNCTUATION = re.compile(r"^[\s\-–:;,.|*•]+")
_TRAILING_PUNCTUATION = re.compile(r"[\s|*•]+$")
_WHITESPACE = re.compile(r"\s+")

CONTINUATION_MARKS = (",", ";", ":", "-")
NEW_ITEM_SHAPES: Tuple[Pattern[str], ...] = (
    re.compile(r"^(?=\S*\d)[A-Za-z0-9]+[-/][A-Za-z0-9\-/]+\s"),
    re.compile(r"^\d{5,8}\s"),
    re.compile(r"^\d+(?:[.,]\d+)?\s*[x×]\s", re.IGNORECASE),
)

MODEL_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b([A-Z]{1,4}\d{2,}[A-Z0-9]*)\b"),
    re.compile(r"\b(\d+-[A-Z0-9]+)\b"),
    re.compile(r"\b([A-Z]+-\d+[A-Z0-9]*)\b"),
    re.compile(r"\b(\d+(?:/\d+)+)\b"),
)
SUPPLIER_CODE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b([A-Z]{2,}-[A-Z0-9\-]+)\b", re.IGNORECASE),
    re.compile(r"\b(\d{3,}[-/][A-Z0-9]+)\b", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2,}\d{4,}[A-Z0-9]*)\b", re.IGNORECASE),
)
NON_CODE_TOKENS = frozenset({"USD", "EUR", "XOF", "PCS", "UNIT", "UNITS", "TOTAL"})


@dataclass(frozen=True)
class ConfidenceStats:
    min: int
    max: int
    average: float
    low_count: int
    needs_verification: bool
    scores: Tuple[int, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        return {
            "min": self.min,
            "max": self.max,
            "average": round(self.average, 1),
            "low_count": self.low_count,
            "needs_verification": self.needs_verification,
        }


@dataclass
class PostProcessResult:
    items: List[PriceRequestItem]
    confidence: ConfidenceStats
    merged_continuations: int = 0
    duplicates_removed: int = 0
    discarded: int = 0
    unknown_brand_candidates: List[str] = field(default_factory=list)


def _copy(item: PriceRequestItem) -> PriceRequestItem:
    return item.model_copy(deep=True)


def deduplicate_items(items: Sequence[PriceRequestItem]) -> Tuple[List[PriceRequestItem], int]:
    """Collapse items sharing ``(description.lower(), quantity)``.

    The first occurrence is kept; optional fields it lacks are filled from
    later duplicates.  Returns the stable list and the number removed.
    """

    kept: List[PriceRequestItem] = []
    index: Dict[Tuple[str, float], PriceRequestItem] = {}
    removed = 0
    for item in items:
        key = (_WHITESPACE.sub(" ", item.description).strip().lower(), float(item.quantity))
        first = index.get(key)
        if first is None:
            index[key] = item
            kept.append(item)
            continue
        removed += 1
        for name in PriceRequestItem.model_fields:
            if name in {"description", "quantity"}:
                continue
            if getattr(first, name) is None and getattr(item, name) is not None:
                setattr(first, name, getattr(item, name))
        if first.unit == DEFAULT_UNIT and item.unit != DEFAULT_UNIT:
            first.unit = item.unit
    return kept, removed


class PostProcessor:
    """Run the post-extraction passes over one document's items."""

    def __init__(
        self,
        config: Optional[PostProcessorConfig] = None,
        brands: Optional[BrandDictionary] = None,
    ) -> None:
        self.config = config or PostProcessorConfig.from_settings()
        self.brands = brands or BrandDictionary()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def process(self, items: Sequence[PriceRequestItem]) -> PostProcessResult:
        cleaned: List[PriceRequestItem] = []
        discarded = 0
        for item in items:
            description = self.clean_description(item.description)
            if len(description) < self.config.min_description_chars:
                discarded += 1
                continue
            copy = _copy(item)
            copy.description = description
            cleaned.append(copy)

        merged, merge_count = self.merge_continuations(cleaned)
        unique, removed = deduplicate_items(merged)
        candidates: List[str] = []
        for item in unique:
            for candidate in self.enrich(item):
                if candidate not in candidates:
                    candidates.append(candidate)
        stats = self.confidence_stats(unique)
        logger.debug(
            "post_process items_in=%d items_out=%d merged=%d duplicates=%d discarded=%d",
            len(items),
            len(unique),
            merge_count,
            removed,
            discarded,
        )
        return PostProcessResult(
            items=unique,
            confidence=stats,
            merged_continuations=merge_count,
            duplicates_removed=removed,
            discarded=discarded,
            unknown_brand_candidates=candidates,
        )

    @staticmethod
    def clean_description(description: Optional[str]) -> str:
        text = _WHITESPACE.sub(" ", description or "").strip()
        for pattern, replacement in DESCRIPTION_CLEANUP:
            text = pattern.sub(replacement, text)
        text = _LEADING_PUNCTUATION.sub("", text)
        text = _TRAILING_PUNCTUATION.sub("", text)
        return _WHITESPACE.sub(" ", text).strip()

    def is_continuation(self, item: PriceRequestItem, previous: PriceRequestItem) -> bool:
        if item.quantity != 1 or item.has_code:
            return False
        # A quantity read from the line marks the start of an item.
        if item.is_estimated is False:
            return False
        if item.unit != DEFAULT_UNIT:
            return False
        description = item.description.strip()
        if not description:
            return False
        if description[0].islower():
            return True
        if previous.description.rstrip().endswith(CONTINUATION_MARKS):
            return True
        return (
            len(description) < self.config.continuation_max_chars
            and not self._looks_like_new_item(description)
        )

    def merge_continuations(
        self, items: Sequence[PriceRequestItem]
    ) -> Tuple[List[PriceRequestItem], int]:
        result: List[PriceRequestItem] = []
        merged = 0
        for item in items:
            if result and self.is_continuation(item, result[-1]):
                target = result[-1]
                target.description = f"{target.description} {item.description}".strip()
                if item.notes:
                    target.notes = f"{target.notes} | {item.notes}" if target.notes else item.notes
                merged += 1
                continue
            result.append(item)
        return result, merged

    def enrich(self, item: PriceRequestItem) -> List[str]:
        """Fill brand, model and supplier code from the description.

        Returns unknown brand candidates seen when no known brand matched.
        """

        candidates: List[str] = []
        if not item.brand:
            brand = self.brands.find_brand(item.description)
            if brand:
                item.brand = brand
            else:
                candidates = self.brands.unknown_brand_candidates(item.description)
        if not item.model:
            model = extract_model(item.description)
            if model:
                item.model = model
        if not item.supplier_code and not item.reference:
            code = extract_supplier_code(item.description)
            if code:
                item.supplier_code = code
                item.reference = code
        return candidates

    def item_confidence(self, item: PriceRequestItem) -> int:
        score = 50
        if item.quantity > 0 and not item.is_estimated:
            score += 25
        else:
            score -= 20
        if item.unit and item.unit != DEFAULT_UNIT:
            score += 15
        if item.internal_code:
            score += 20
        if item.supplier_code:
            score += 20
        if not item.has_code:
            score -= 10
        if item.original_line is not None:
            score += 10
        description = item.description or ""
        if description:
            score += 15
        if len(description) > 30:
            score += 10
        elif len(description) < 10:
            score -= 15
        return max(0, min(100, score))

    def confidence_stats(self, items: Sequence[PriceRequestItem]) -> ConfidenceStats:
        if not items:
            return ConfidenceStats(min=0, max=0, average=0.0, low_count=0, needs_verification=True)
        scores = tuple(self.item_confidence(item) for item in items)
        low = sum(1 for score in scores if score < self.config.low_confidence_threshold)
        lowest = min(scores)
        needs_verification = (
            low / len(scores) > self.config.max_low_confidence_ratio
            or lowest < self.config.review_confidence_threshold
        )
        return ConfidenceStats(
            min=lowest,
            max=max(scores),
            average=sum(scores) / len(scores),
            low_count=low,
            needs_verification=needs_verification,
            scores=scores,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _looks_like_new_item(description: str) -> bool:
        if has_strong_line_identifier(description):
            return True
        return any(pattern.match(description) for pattern in NEW_ITEM_SHAPES)


def extract_model(description: str) -> Optional[str]:
    for pattern in MODEL_PATTERNS:
        match = pattern.search(description or "")
        if not match:
            continue
        value = match.group(1)
        if value.isdigit() or len(value) < 4:
            continue
        return value
    return None


def extract_supplier_code(description: str) -> Optional[str]:
    for pattern in SUPPLIER_CODE_PATTERNS:
        match = pattern.search(description or "")
        if not match:
            continue
        code = match.group(1).upper()
        if len(code) < 5 or code in NON_CODE_TOKENS:
            continue
        return code
    return None


__all__ = [
    "ConfidenceStats",
    "DESCRIPTION_CLEANUP",
    "MODEL_PATTERNS",
    "PostProcessResult",
    "PostProcessor",
    "PostProcessorConfig",
    "SUPPLIER_CODE_PATTERNS",
    "deduplicate_items",
    "extract_model",
    "extract_supplier_code",
]
