"""Word (.docx) attachments to :class:`NormalizedDocument` via python-docx."""

from __future__ import annotations

import logging
from io import BytesIO
from typing import List, Optional

from utils.procurement_schema import (
    DocumentReadError,
    NormalizedDocument,
    ParsedRow,
    SourceType,
    Table,
    table_from_rows,
)
from utils.text_normalizer import normalize_text, split_cells

try:  # pragma: no cover - optional dependency
    import docx  # type: ignore
except Exception:  # pragma: no cover - python-docx is optional
    docx = None  # type: ignore

logger = logging.getLogger(__name__)


class WordExtractor:
    def extract(self, content: bytes, filename: str) -> Optional[NormalizedDocument]:
        if filename.lower().endswith(".doc"):
            logger.warning("Legacy .doc format is not supported: %s", filename)
            return None
        if docx is None:
            logger.warning("python-docx not installed; cannot extract DOCX text")
            return None
        try:
            document = docx.Document(BytesIO(content))
        except Exception as exc:
            logger.warning("Failed extracting DOCX %s", filename, exc_info=True)
            raise DocumentReadError(f"Unreadable Word document: {exc}") from exc

        rows: List[ParsedRow] = []
        lines: List[str] = []
        for paragraph in document.paragraphs:
            original = paragraph.text or ""
            text = normalize_text(original).strip()
            if not text:
                continue
            # A paragraph starting lowercase continues the previous one.
            continuation = bool(rows) and text[0].islower()
            rows.append(
                ParsedRow(
                    raw=text,
                    cells=tuple(normalize_text(cell) for cell in split_cells(original)),
                    line_number=len(rows),
                    is_continuation=continuation,
                )
            )
            lines.append(text)

        tables: List[Table] = []
        for table in document.tables:
            grid = [[cell.text for cell in row.cells] for row in table.rows]
            frozen = table_from_rows(grid)
            if any(any(cell for cell in row) for row in frozen):
                tables.append(frozen)
                lines.extend("\t".join(row) for row in frozen)

        raw_text = "\n".join(lines)
        if not (rows or tables or raw_text.strip()):
            logger.warning("DOCX %s holds no text", filename)
            return None
        logger.info("word_extract source=%s paragraphs=%d tables=%d", filename, len(rows), len(tables))
        return NormalizedDocument(
            source_type=SourceType.WORD,
            source_name=filename,
            raw_text=raw_text,
            rows=tuple(rows),
            tables=tuple(tables),
        )


__all__ = ["WordExtractor"]
