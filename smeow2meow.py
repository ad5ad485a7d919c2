"""Convert a numeric-form (.smeow) program to symbolic-form (.meow) source."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from lexer import MEOW_TOKENS, MeowParseError
from parser import format_symbolic, parse_numeric


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Convert numeric-form Meowlang to symbolic form")
    parser.add_argument("-i", "--input", required=True, help="The input file path")
    parser.add_argument("-l", "--lang", choices=sorted(MEOW_TOKENS), default="en", help="The language of the Meow token")
    args = parser.parse_args(argv)

    try:
        with open(args.input, "r", encoding="utf-8") as handle:
            code = handle.read()
    except OSError as exc:
        print(f"Failed to read {args.input}: {exc}", file=sys.stderr)
        return 1

    try:
        text = format_symbolic(parse_numeric(code, args.input), args.lang)
    except MeowParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    if text:
        print(text)
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
