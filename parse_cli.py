#!/usr/bin/env python3
"""CLI for the MT940 statement parser."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from mt940_statement_parser import ParseError, parse, statements_to_json

log = logging.getLogger("parse_cli")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Parse an MT940 bank statement file into JSON."
    )
    parser.add_argument("path", type=Path, help="Path to MT940 file (.sta, .mt940, .txt)")
    parser.add_argument("-o", "--output", type=Path, help="Output JSON file path")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument("--encoding", default="latin-1", help="Text encoding of the input file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log parser details to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # Read bytes: text mode would fold the CRLF line dividers into "\n".
    try:
        raw = args.path.read_bytes().decode(args.encoding)
    except (OSError, LookupError, UnicodeDecodeError) as exc:
        print(f"ERROR: cannot read {args.path}: {exc}", file=sys.stderr)
        return 2

    try:
        statements = parse(raw)
    except ParseError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    log.info("Parsed %d statement(s) from %s", len(statements), args.path)
    result = statements_to_json(statements)

    indent = 2 if args.pretty or args.output else None
    rendered = json.dumps(result, ensure_ascii=False, indent=indent)

    if args.output:
        args.output.write_text(rendered + ("\n" if indent is not None else ""), encoding="utf-8")
    else:
        print(rendered)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
