"""Token-level similarity used to map header cells onto column types."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

from services.column_dictionary import build_vocabulary
from utils.procurement_schema import ColumnType

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.75
# Score given to an abbreviation ("qty" for "quantity").
ABBREVIATION_SCORE = 0.8
MIN_LABEL_CHARS = 2

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_label(text: str) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""

    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(text).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _NON_ALNUM.sub("", stripped)
    return _WHITESPACE.sub(" ", stripped).strip()


def _is_abbreviation(short: str, long: str) -> bool:
    if len(short) < 2 or short[0] != long[0]:
        return False
    position = 0
    for char in short:
        position = long.find(char, position)
        if position < 0:
            return False
        position += 1
    return True


def _jaccard(left: str, right: str) -> float:
    left_chars = set(left)
    right_chars = set(right)
    union = left_chars | right_chars
    if not union:
        return 0.0
    return len(left_chars & right_chars) / len(union)


def fuzzy_match(candidate: str, keyword: str) -> float:
    """Return a 0..1 similarity between a header cell and a dictionary keyword.

    Exact match scores 1.0, containment scores the length ratio, an ordered
    abbreviation sharing the first letter scores :data:`ABBREVIATION_SCORE`
    and anything else falls back to character-set Jaccard similarity.
    """

    left = normalize_label(candidate)
    right = normalize_label(keyword)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    shorter, longer = (left, right) if len(left) <= len(right) else (right, left)
    if shorter in longer:
        return len(shorter) / len(longer)
    jaccard = _jaccard(left, right)
    if _is_abbreviation(shorter, longer):
        return max(ABBREVIATION_SCORE, jaccard)
    return jaccard


@dataclass(frozen=True)
class ColumnMatch:
    column_type: ColumnType
    score: float
    keyword: str


class FuzzyMatcher:
    """Classify header cells against the column vocabulary."""

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        vocabulary: Optional[Mapping[ColumnType, Sequence[str]]] = None,
    ) -> None:
        self.threshold = threshold
        source = vocabulary if vocabulary is not None else build_vocabulary()
        self._keywords: Dict[ColumnType, Tuple[str, ...]] = {}
        # Keep enum order so ties resolve to the earliest declared type.
        for column_type in ColumnType:
            if column_type is ColumnType.UNKNOWN or column_type not in source:
                continue
            normalised = tuple(
                dict.fromkeys(
                    normalize_label(keyword)
                    for keyword in source[column_type]
                    if normalize_label(keyword)
                )
            )
            if normalised:
                self._keywords[column_type] = normalised

    def best_match(self, cell: str) -> Optional[ColumnMatch]:
        """Return the single highest scoring column type for ``cell`` regardless of threshold."""

        label = normalize_label(cell)
        if len(label) < MIN_LABEL_CHARS:
            return None
        best: Optional[ColumnMatch] = None
        for column_type, keywords in self._keywords.items():
            for keyword in keywords:
                score = fuzzy_match(label, keyword)
                if best is None or score > best.score:
                    best = ColumnMatch(column_type, score, keyword)
                    if score >= 1.0:
                        break
            if best is not None and best.score >= 1.0:
                break
        return best

    def classify(self, cell: str) -> Tuple[ColumnType, float]:
        """Return ``(type, score)``; below the threshold the cell is ``unknown`` with score 0."""

        match = self.best_match(cell)
        if match is None or match.score < self.threshold:
            return ColumnType.UNKNOWN, 0.0
        logger.debug("column_match cell=%r type=%s score=%.2f", cell, match.column_type.value, match.score)
        return match.column_type, match.score


__all__ = [
    "ABBREVIATION_SCORE",
    "ColumnMatch",
    "DEFAULT_THRESHOLD",
    "FuzzyMatcher",
    "fuzzy_match",
    "normalize_label",
]
