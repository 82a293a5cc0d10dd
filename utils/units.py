"""Unit-of-measure vocabulary shared by the header detector and item extractor."""

from __future__ import annotations

import re
from typing import Dict, Optional

from utils.procurement_schema import DEFAULT_UNIT

UNIT_ALIASES: Dict[str, str] = {
    "EA": "EA",
    "EACH": "EA",
    "PC": "PCS",
    "PCS": "PCS",
    "PCE": "PCS",
    "PCES": "PCS",
    "PIECE": "PCS",
    "PIECES": "PCS",
    "UNIT": "UNIT",
    "UNITS": "UNIT",
    "U": "UNIT",
    "UN": "UNIT",
    "UNITE": "UNIT",
    "UNITES": "UNIT",
    "SET": "SET",
    "SETS": "SET",
    "JEU": "SET",
    "JEUX": "SET",
    "KG": "KG",
    "G": "G",
    "T": "T",
    "TON": "T",
    "M": "M",
    "MTR": "M",
    "METRE": "M",
    "METER": "M",
    "MM": "MM",
    "L": "L",
    "LTR": "L",
    "LITRE": "L",
    "LITER": "L",
    "ROLL": "ROLL",
    "ROLLS": "ROLL",
    "BOX": "BOX",
    "BOXES": "BOX",
    "PAIR": "PAIR",
    "PAIRS": "PAIR",
    "LOT": "LOT",
    "LOTS": "LOT",
    "PACK": "PACK",
    "PACKS": "PACK",
    "DRUM": "DRUM",
    "DRUMS": "DRUM",
    "BAG": "BAG",
    "BAGS": "BAG",
}

# Single letters are ambiguous inside free text, so the in-line pattern only
# accepts them when they are followed by whitespace.
_UNIT_ALTERNATION = "|".join(
    re.escape(alias) for alias in sorted(UNIT_ALIASES, key=len, reverse=True)
)
UNIT_PATTERN = rf"(?:{_UNIT_ALTERNATION})"
UNIT_TOKEN_RE = re.compile(rf"^{UNIT_PATTERN}\.?$", re.IGNORECASE)
QTY_UNIT_PREFIX_RE = re.compile(
    rf"^\s*(?:\d{{1,3}}\s+)?(\d+(?:[.,]\d+)?)\s+({UNIT_PATTERN})(?=\s)",
    re.IGNORECASE,
)

_UNKNOWN_UNIT_RE = re.compile(r"^[A-Z][A-Z0-9/]{0,9}$")


def is_unit_token(token: Optional[str]) -> bool:
    if not token:
        return False
    return bool(UNIT_TOKEN_RE.match(token.strip()))


def normalize_unit(token: Optional[str]) -> str:
    """Map a unit token onto its canonical spelling.

    Unknown but plausible tokens are kept upper-cased; anything empty or
    implausible falls back to :data:`DEFAULT_UNIT`.
    """

    if token is None:
        return DEFAULT_UNIT
    cleaned = str(token).strip().upper().rstrip(".")
    cleaned = cleaned.replace("É", "E").replace("È", "E")
    if not cleaned:
        return DEFAULT_UNIT
    if cleaned in UNIT_ALIASES:
        return UNIT_ALIASES[cleaned]
    if _UNKNOWN_UNIT_RE.match(cleaned):
        return cleaned
    return DEFAULT_UNIT


__all__ = [
    "QTY_UNIT_PREFIX_RE",
    "UNIT_ALIASES",
    "UNIT_PATTERN",
    "UNIT_TOKEN_RE",
    "is_unit_token",
    "normalize_unit",
]
