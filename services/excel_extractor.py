"""Spreadsheet attachments (.xlsx, .xls, .csv) to one table per sheet via pandas."""

from __future__ import annotations

import logging
from io import BytesIO
from typing import List, Optional

from utils.procurement_schema import (
    DocumentReadError,
    NormalizedDocument,
    SourceType,
    Table,
    table_from_rows,
)

try:  # pragma: no cover - optional dependency
    import pandas as pd  # type: ignore
except Exception:  # pragma: no cover - pandas is optional
    pd = None  # type: ignore

logger = logging.getLogger(__name__)


def _frame_to_table(frame) -> Table:
    frame = frame.dropna(how="all").dropna(axis=1, how="all")
    frame = frame.fillna("")
    return table_from_rows(frame.astype(str).values.tolist())


class ExcelExtractor:
    def extract(self, content: bytes, filename: str) -> Optional[NormalizedDocument]:
        if pd is None:
            logger.warning("pandas not installed; cannot read spreadsheet %s", filename)
            return None
        try:
            if filename.lower().endswith(".csv"):
                sheets = {"csv": pd.read_csv(BytesIO(content), header=None, dtype=str, sep=None, engine="python")}
            else:
                sheets = pd.read_excel(BytesIO(content), sheet_name=None, header=None, dtype=str)
        except Exception as exc:
            logger.warning("Failed reading spreadsheet %s", filename, exc_info=True)
            raise DocumentReadError(f"Unreadable spreadsheet: {exc}") from exc

        tables: List[Table] = []
        lines: List[str] = []
        for sheet_name, frame in sheets.items():
            table = _frame_to_table(frame)
            if not table:
                logger.debug("Sheet %s of %s is empty", sheet_name, filename)
                continue
            tables.append(table)
            lines.extend("\t".join(cell for cell in row if cell) for row in table)

        raw_text = "\n".join(line for line in lines if line)
        if not tables:
            logger.warning("Spreadsheet %s holds no data", filename)
            return None
        logger.info("excel_extract source=%s sheets=%d", filename, len(tables))
        return NormalizedDocument(
            source_type=SourceType.EXCEL,
            source_name=filename,
            raw_text=raw_text,
            tables=tuple(tables),
        )


__all__ = ["ExcelExtractor"]
