#!/usr/bin/env python3
"""CLI for the bank statement parser."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from bank_statement_parser import ParseError, parse_statement_pdf, statement_to_json
from pdf_text import EXTRACTORS, ExtractionError
from statement_formats import available_formats


logger = logging.getLogger("parse_cli")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_one(pdf_path: Path, format_name: str, backend: str, layout: Optional[bool]) -> dict:
    """Parse one file into a result entry; failures are reported, not raised."""
    try:
        statement = parse_statement_pdf(pdf_path, format_name, backend=backend, layout=layout)
    except (ParseError, ExtractionError) as exc:
        logger.error("Failed to parse %s: %s", pdf_path, exc)
        return {
            "path": str(pdf_path),
            "ok": False,
            "error": {"kind": exc.kind, "message": str(exc)},
        }
    return {"path": str(pdf_path), "ok": True, "statement": statement_to_json(statement)}


def parse_many(
    paths: List[Path], format_name: str, backend: str, layout: Optional[bool], jobs: int
) -> List[dict]:
    if jobs <= 1 or len(paths) <= 1:
        return [parse_one(path, format_name, backend, layout) for path in paths]

    results: Dict[int, dict] = {}
    with ProcessPoolExecutor(max_workers=jobs) as executor:
        futures = {
            executor.submit(parse_one, path, format_name, backend, layout): idx
            for idx, path in enumerate(paths)
        }
        for fut in as_completed(futures):
            results[futures[fut]] = fut.result()
    return [results[idx] for idx in range(len(paths))]


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Parse bank statement PDFs into validated JSON."
    )
    parser.add_argument("pdf_paths", type=Path, nargs="+", help="Path(s) to statement PDF")
    parser.add_argument(
        "-f", "--format", dest="format_name", required=True, choices=available_formats(),
        help="Statement format to apply",
    )
    parser.add_argument(
        "--backend", default="pypdf", choices=sorted(EXTRACTORS), help="Text extraction backend"
    )
    layout_group = parser.add_mutually_exclusive_group()
    layout_group.add_argument(
        "--layout", dest="layout", action="store_true", default=None,
        help="Force layout-preserving extraction",
    )
    layout_group.add_argument(
        "--no-layout", dest="layout", action="store_false", help="Force plain extraction"
    )
    parser.add_argument("-o", "--output", type=Path, help="Output JSON file path")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument("-j", "--jobs", type=int, default=1, help="Parallel worker processes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    if len(args.pdf_paths) == 1:
        entry = parse_one(args.pdf_paths[0], args.format_name, args.backend, args.layout)
        if not entry["ok"]:
            print(f"ERROR: {entry['error']['message']}", file=sys.stderr)
            return 1
        result = entry["statement"]
        exit_code = 0
    else:
        result = parse_many(args.pdf_paths, args.format_name, args.backend, args.layout, args.jobs)
        exit_code = 0 if all(entry["ok"] for entry in result) else 1

    indent = 2 if args.pretty or args.output else None
    rendered = json.dumps(result, ensure_ascii=False, indent=indent)

    if args.output:
        args.output.write_text(rendered + ("\n" if indent is not None else ""), encoding="utf-8")
    else:
        print(rendered)

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
