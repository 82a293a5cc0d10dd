"""Helpers that rebuild text lines and cells from positioned tokens."""

from __future__ import annotations

import statistics
from typing import Dict, List, Sequence, Tuple

from utils.procurement_schema import ParsedRow, TextToken


def group_tokens_into_lines(
    tokens: Sequence[TextToken], y_tolerance: float = 5.0
) -> List[List[TextToken]]:
    """Group tokens into visual lines.

    The y coordinate is rounded to a ``y_tolerance`` bucket per page; lines
    come back top-to-bottom (page first) and tokens left-to-right.
    """

    if not tokens:
        return []
    bucket_size = y_tolerance if y_tolerance > 0 else 1.0
    buckets: Dict[Tuple[int, int], List[TextToken]] = {}
    for token in tokens:
        if not token.text.strip():
            continue
        key = (token.page, int(round(token.y / bucket_size)))
        buckets.setdefault(key, []).append(token)
    lines: List[List[TextToken]] = []
    for key in sorted(buckets):
        lines.append(sorted(buckets[key], key=lambda tok: tok.x))
    return lines


def line_text(line: Sequence[TextToken]) -> str:
    return " ".join(token.text.strip() for token in line if token.text.strip())


def median_gap(lines: Sequence[Sequence[TextToken]]) -> float:
    gaps: List[float] = []
    for line in lines:
        for left, right in zip(line, line[1:]):
            gap = right.x - left.x_end
            if gap > 0:
                gaps.append(gap)
    if not gaps:
        return 0.0
    return float(statistics.median(gaps))


def split_line_into_cells(
    line: Sequence[TextToken], min_gap: float
) -> Tuple[Tuple[str, ...], Tuple[Tuple[float, float], ...]]:
    """Split a token line into cells wherever the horizontal gap exceeds ``min_gap``."""

    cells: List[str] = []
    spans: List[Tuple[float, float]] = []
    current: List[TextToken] = []
    for token in line:
        if current and token.x - current[-1].x_end > min_gap:
            cells.append(line_text(current))
            spans.append((current[0].x, current[-1].x_end))
            current = []
        current.append(token)
    if current:
        cells.append(line_text(current))
        spans.append((current[0].x, current[-1].x_end))
    return tuple(cells), tuple(spans)


def tokens_to_rows(
    tokens: Sequence[TextToken],
    *,
    y_tolerance: float = 5.0,
    min_gap_for_cell: float = 10.0,
    gap_multiplier: float = 1.8,
) -> List[ParsedRow]:
    """Reconstruct :class:`ParsedRow` objects (with cell spans) from tokens."""

    lines = group_tokens_into_lines(tokens, y_tolerance)
    gap = max(min_gap_for_cell, median_gap(lines) * gap_multiplier)
    rows: List[ParsedRow] = []
    for index, line in enumerate(lines):
        cells, spans = split_line_into_cells(line, gap)
        rows.append(
            ParsedRow(
                raw=line_text(line),
                cells=cells,
                line_number=index,
                spans=spans,
                page=line[0].page if line else None,
            )
        )
    return rows


__all__ = [
    "group_tokens_into_lines",
    "line_text",
    "median_gap",
    "split_line_into_cells",
    "tokens_to_rows",
]
