"""Ingest RFQ e-mails (.eml) or standalone documents and print the extracted items."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.email_message import parse_email_bytes  # noqa: E402
from services.parse_log import ParseLogService  # noqa: E402
from services.unified_ingestion import IngestionResult, UnifiedIngestionService  # noqa: E402

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("paths", nargs="+", type=Path, help="E-mail (.eml) or document files to ingest")
    parser.add_argument("--request-id", help="Request identifier (defaults to the file name)")
    parser.add_argument("--output-dir", type=Path, help="Directory receiving the parse logs")
    parser.add_argument("--summary", action="store_true", help="Print the parse-log summary after the items")
    parser.add_argument("--no-save", action="store_true", help="Do not write parse-log files")
    return parser


def _ingest(service: UnifiedIngestionService, path: Path, request_id: Optional[str]) -> IngestionResult:
    content = path.read_bytes()
    if path.suffix.lower() == ".eml":
        email = parse_email_bytes(content)
        return service.process_email(email, request_id or path.stem)
    return service.process_document(content, path.name, request_id=request_id)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=os.environ.get("PROCWISE_LOG_LEVEL", "INFO"))
    args = build_arg_parser().parse_args(argv)

    log_service = ParseLogService(args.output_dir) if args.output_dir else ParseLogService()
    service = UnifiedIngestionService(parse_log_service=log_service, persist_logs=not args.no_save)

    exit_code = 0
    results: List[dict] = []
    for index, path in enumerate(args.paths):
        if not path.exists():
            logger.error("File not found: %s", path)
            exit_code = 1
            continue
        request_id = args.request_id
        if request_id and len(args.paths) > 1:
            request_id = f"{request_id}-{index + 1}"
        result = _ingest(service, path, request_id)
        results.append({"source": str(path), **result.to_json()})
        if args.summary:
            print(log_service.generate_summary(result.parse_log), file=sys.stderr)

    print(json.dumps(results if len(results) != 1 else results[0], indent=2, ensure_ascii=False))
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
