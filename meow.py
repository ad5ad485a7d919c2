"""Meowlang entry point."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import MeowExtensionError, RuntimeServices, build_default_services, load_runtime_services
from interpreter import Hooks, Interpreter, MeowRuntimeError, RuntimeEvent, TracebackFormatter, report_error
from lexer import MeowParseError
from parser import parse_source


def inspector(event: RuntimeEvent) -> None:
    print(event)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Meowlang interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-inspect", "--inspect", dest="inspect", action="store_true", help="Print every runtime event")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Print a step traceback with Cell List snapshots on failure")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    services: RuntimeServices
    try:
        services = load_runtime_services(args.extensions) if args.extensions else build_default_services()
    except MeowExtensionError as exc:
        print(f"Failed to load extension: {exc}", file=sys.stderr)
        return 1

    try:
        cells = parse_source(source_text, filename)
    except MeowParseError as error:
        report_error("Parser", str(error))
        return 1

    hooks = Hooks(on_step=inspector if args.inspect else None)
    interpreter = Interpreter(cells, hooks=hooks, services=services, verbose=args.verbose)
    try:
        interpreter.run()
    except MeowRuntimeError as error:
        report_error("Interpreter", error.message)
        formatter = TracebackFormatter(interpreter)
        if args.verbose:
            print(formatter.format_text(error, verbose=True), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
