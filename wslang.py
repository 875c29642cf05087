"""WS-Lang entry point."""

from __future__ import annotations
import argparse
import os
import sys
from typing import List, Optional

from analysis import DEFAULT_TRACE_PATH, TraceRecorder
from interpreter import Interpreter, TracebackFormatter, WSRuntimeError
from lexer import WSError, WSParseError
from parser import decode


TRACE_ENV = "WSLANG_ANALYSIS"


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ws-lang", description="Whitespace reference interpreter")
    parser.add_argument("program", help="Path to the source program")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Include stack and heap snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--trace", action="store_true", help=f"Record the execution trace (also enabled by {TRACE_ENV})")
    parser.add_argument("--trace-file", default=DEFAULT_TRACE_PATH, help="Where the execution trace is written")
    parser.add_argument("--profile", action="store_true", help="Print an execution profile to stderr (implies --trace)")
    parser.add_argument("--dump", action="store_true", help="Print the decoded instruction listing and exit")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)

    filename = args.program
    try:
        with open(filename, "rb") as handle:
            source = handle.read()
    except OSError as exc:
        print(f"Failed to read {filename}: {exc}", file=sys.stderr)
        return 1

    try:
        program = decode(source, filename)
    except WSParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1

    if args.dump:
        print(program.dump())
        return 0

    tracing = args.trace or args.profile or bool(os.environ.get(TRACE_ENV))
    recorder = TraceRecorder(program, args.trace_file) if tracing else None
    interpreter = Interpreter(program, verbose=args.verbose, observer=recorder)
    status = 0
    try:
        interpreter.run()
    except WSRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        status = 1
    except WSError as error:
        print(f"Error: {error}", file=sys.stderr)
        status = 1

    if args.profile and recorder is not None:
        print(recorder.profile().format_text(), file=sys.stderr)
    return status


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
