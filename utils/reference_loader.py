"""Utilities for loading shared reference datasets.

The ingestion pipeline relies on structured reference data (the brand
dictionary grouped by equipment category) that should not be hard-coded
inside the parsers.  Datasets are stored under ``resources/reference_data``
as JSON documents; the loader also reports the file modification time so
callers can decide when to reload.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferencePayload:
    path: Path
    payload: Dict[str, Any]
    mtime: Optional[float]

    @property
    def exists(self) -> bool:
        return self.mtime is not None


def file_mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def load_json_document(path: Path | str) -> ReferencePayload:
    """Read a JSON object from ``path`` without caching.

    Missing files and undecodable content are logged and reported as an
    empty payload so callers can fall back to built-in defaults.
    """

    target = Path(path)
    mtime = file_mtime(target)
    if mtime is None:
        logger.warning("Reference file not found at %s", target)
        return ReferencePayload(path=target, payload={}, mtime=None)

    try:
        with target.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except json.JSONDecodeError:
        logger.exception("Reference file %s could not be decoded", target)
        payload = {}
    except OSError:
        logger.warning("Reference file %s could not be read", target, exc_info=True)
        payload = {}

    if not isinstance(payload, dict):
        logger.warning("Reference file %s is not an object; defaulting to empty dict", target)
        payload = {}
    return ReferencePayload(path=target, payload=payload, mtime=mtime)


__all__ = [
    "ReferencePayload",
    "file_mtime",
    "load_json_document",
]
