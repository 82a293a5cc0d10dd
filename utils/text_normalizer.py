"""Canonical text clean-up applied before any matching happens."""

from __future__ import annotations

import re
from typing import List

LIGATURES = {
    "ﬀ": "ff",
    "ﬁ": "fi",
    "ﬂ": "fl",
    "ﬃ": "ffi",
    "ﬄ": "ffl",
    "ﬅ": "st",
    "ﬆ": "st",
}

_HORIZONTAL_RUN = re.compile(r"[^\S\n]{2,}")
_TRAILING_SPACE = re.compile(r"[^\S\n]+\n")
_MULTI_SPACE = re.compile(r" {2,}")


def normalize_text(text: str) -> str:
    """Return ``text`` with unified line breaks, expanded ligatures and collapsed spacing.

    Runs of two or more horizontal whitespace characters become a single
    space; line breaks are never touched.  The function is idempotent.
    """

    if not text:
        return ""
    normalised = text.replace("\r\n", "\n").replace("\r", "\n")
    for glyph, replacement in LIGATURES.items():
        if glyph in normalised:
            normalised = normalised.replace(glyph, replacement)
    normalised = _HORIZONTAL_RUN.sub(" ", normalised)
    normalised = _TRAILING_SPACE.sub("\n", normalised)
    return normalised


def split_cells(line: str) -> List[str]:
    """Split a text line into cells using the strongest separator present."""

    if not line or not line.strip():
        return []
    for separator in ("\t", ";", "|"):
        if separator in line:
            cells = [cell.strip() for cell in line.split(separator)]
            return [cell for cell in cells if cell]
    parts = [part.strip() for part in _MULTI_SPACE.split(line.strip())]
    parts = [part for part in parts if part]
    if len(parts) >= 2:
        return parts
    return [line.strip()]


__all__ = ["LIGATURES", "normalize_text", "split_cells"]
