"""Known-brand lookup backed by a hot-reloadable JSON reference file.

Readers always work on an immutable :class:`BrandSnapshot`.  A reload builds
a new snapshot and publishes it with a single reference assignment under a
lock, so a lookup running concurrently with a reload sees either the old or
the new brand list, never a mix of both.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from config.settings import settings
from utils.reference_loader import file_mtime, load_json_document

logger = logging.getLogger(__name__)

FALLBACK_BRANDS: Tuple[str, ...] = (
    "CATERPILLAR", "CAT", "KOMATSU", "HITACHI", "VOLVO", "LIEBHERR", "SANDVIK",
    "SKF", "FAG", "NSK", "NTN", "TIMKEN", "SIEMENS", "ABB", "SCHNEIDER",
    "PARKER", "REXROTH", "BOSCH", "FESTO", "EATON", "CUMMINS", "PERKINS",
    "DONALDSON", "MANN", "FLEETGUARD", "GATES", "FLUKE", "MICHELIN",
    "BRIDGESTONE",
)

BRAND_SYNONYMS: Dict[str, str] = {
    "CAT": "CATERPILLAR",
    "MB": "MERCEDES-BENZ",
    "JD": "JOHN DEERE",
}

# Generic part and material words that look like brands when written in capitals.
GENERIC_WORDS = frozenset(
    {
        "RELAY", "VALVE", "PUMP", "MOTOR", "SEAL", "BEARING", "FILTER", "SHAFT",
        "GEAR", "COVER", "PLATE", "BOLT", "SCREW", "WIRE", "CABLE", "HOSE",
        "TUBE", "PIPE", "RING", "BUSH", "DISC", "THERMAL", "OVERLOAD",
        "HYDRAULIC", "PNEUMATIC", "ELECTRIC", "STEEL", "RUBBER", "PLASTIC",
        "BRASS", "COPPER", "IRON", "EACH", "UNIT", "PIECE", "PACK", "SET", "KIT",
        "ASSY",
    }
)
_UPPER_WORD = re.compile(r"\b([A-Z]{4,15})\b")
_FUZZY_WORD_SPLIT = re.compile(r"[\s\-_/]+")
FUZZY_BRAND_THRESHOLD = 0.85


def brand_similarity(first: str, second: str) -> float:
    """Loose similarity in ``[0, 1]`` used for misspelled brand names.

    Base score is the share of the shorter string's characters found in the
    longer one.  Shared leading characters (up to four) and containment add
    bonuses.
    """

    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    longer, shorter = (first, second) if len(first) > len(second) else (second, first)
    overlap = sum(1 for char in shorter if char in longer) / len(longer)
    prefix = 0
    for left, right in zip(first[:4], second[:4]):
        if left != right:
            break
        prefix += 1
    substring = 0.2 if shorter in longer else 0.0
    return min(1.0, overlap + prefix * 0.05 + substring)


def _brand_pattern(brand: str, boundary: str) -> Pattern[str]:
    body = re.escape(brand).replace(r"\ ", r"\s+")
    return re.compile(rf"(?<!{boundary}){body}(?!{boundary})", re.IGNORECASE)


@dataclass(frozen=True)
class BrandSnapshot:
    brands: Tuple[str, ...]
    mtime: Optional[float] = None
    source: str = "fallback"
    _patterns: Tuple[Tuple[str, Pattern[str]], ...] = field(default=(), repr=False, compare=False)

    @classmethod
    def build(
        cls,
        brands: Iterable[str],
        *,
        mtime: Optional[float],
        source: str,
    ) -> "BrandSnapshot":
        unique = {str(brand).upper().strip() for brand in brands if str(brand).strip()}
        ordered = tuple(sorted(unique, key=lambda brand: (-len(brand), brand)))
        patterns = tuple((brand, _brand_pattern(brand, "[A-Za-z0-9]")) for brand in ordered)
        return cls(
            brands=ordered,
            mtime=mtime,
            source=source,
            _patterns=patterns,
        )

    def __contains__(self, brand: object) -> bool:
        return isinstance(brand, str) and brand.upper().strip() in self.brands

    def find(self, text: str, *, fuzzy: bool = True) -> Optional[str]:
        """Known brand named in ``text``, synonyms applied.

        Brands are tried longest first and must sit on word boundaries, so
        ``MANN+HUMMEL`` wins over ``MANN`` wherever each appears.  When no
        brand matches exactly and ``fuzzy`` is set, words of four or more
        characters are compared with brands of five or more.
        """

        if not text:
            return None
        for brand, pattern in self._patterns:
            if pattern.search(text):
                return BRAND_SYNONYMS.get(brand, brand)
        if not fuzzy:
            return None
        words = [word for word in _FUZZY_WORD_SPLIT.split(text.upper()) if len(word) >= 4]
        for word in words:
            for brand in self.brands:
                if len(brand) < 5:
                    continue
                score = brand_similarity(word, brand)
                if score >= FUZZY_BRAND_THRESHOLD:
                    logger.debug("fuzzy_brand word=%s brand=%s score=%.2f", word, brand, score)
                    return BRAND_SYNONYMS.get(brand, brand)
        return None

    def find_in_filename(self, filename: str) -> Optional[str]:
        """Longest known brand in ``filename``; digits may touch the brand."""

        if not filename:
            return None
        for brand in self.brands:
            if _brand_pattern(brand, "[A-Za-z]").search(filename):
                return BRAND_SYNONYMS.get(brand, brand)
        return None


def _brands_from_payload(payload: Dict) -> List[str]:
    brands: List[str] = []
    for category in payload.get("categories") or []:
        if not isinstance(category, dict):
            continue
        for brand in category.get("brands") or []:
            if isinstance(brand, str):
                brands.append(brand)
    return brands


class BrandDictionary:
    """Injectable brand lookup with modification-time based reloads."""

    def __init__(self, path: Optional[Path | str] = None) -> None:
        self.path = Path(path or settings.brands_file_path)
        self._lock = threading.Lock()
        self._snapshot: Optional[BrandSnapshot] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def snapshot(self) -> BrandSnapshot:
        current = self._snapshot
        if current is None:
            current = self.reload()
        return current

    def reload(self) -> BrandSnapshot:
        loaded = load_json_document(self.path)
        brands = _brands_from_payload(loaded.payload)
        if brands:
            snapshot = BrandSnapshot.build(brands, mtime=loaded.mtime, source="file")
            logger.info("brand_dictionary loaded=%d path=%s", len(snapshot.brands), self.path)
        else:
            if loaded.exists:
                logger.warning("Brand file %s holds no brands; using fallback list", self.path)
            snapshot = BrandSnapshot.build(FALLBACK_BRANDS, mtime=loaded.mtime, source="fallback")
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def reload_if_changed(self) -> bool:
        """Reload when the file's mtime differs from the published snapshot's."""

        current = self._snapshot
        mtime = file_mtime(self.path)
        if current is not None and mtime == current.mtime:
            return False
        if current is not None and mtime is None and current.source == "fallback":
            return False
        self.reload()
        return True

    def find_brand(self, text: str, *, fuzzy: bool = True) -> Optional[str]:
        return self.snapshot().find(text, fuzzy=fuzzy)

    def find_brand_in_filename(self, filename: str) -> Optional[str]:
        return self.snapshot().find_in_filename(filename)

    def unknown_brand_candidates(self, text: str) -> List[str]:
        """All-caps words that could be brands missing from the dictionary."""

        if not text:
            return []
        snapshot = self.snapshot()
        candidates: List[str] = []
        for match in _UPPER_WORD.finditer(text):
            word = match.group(1)
            if word in GENERIC_WORDS or word in snapshot or word in candidates:
                continue
            candidates.append(word)
        return candidates


__all__ = [
    "BRAND_SYNONYMS",
    "BrandDictionary",
    "BrandSnapshot",
    "FALLBACK_BRANDS",
    "FUZZY_BRAND_THRESHOLD",
    "GENERIC_WORDS",
    "brand_similarity",
]
