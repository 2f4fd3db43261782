"""Foldr command-line entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import DEFAULT_RECURSION_LIMIT, FoldrRuntimeError, Interpreter, TracebackFormatter
from lexer import FoldrError

VERSION = "1.0.1"

LOGO = "\n".join(
    [
        "",
        "  ███████╗ ██████╗ ██╗     ██████╗ ██████╗ ",
        "  ██╔════╝██╔═══██╗██║     ██╔══██╗██╔══██╗",
        "  █████╗  ██║   ██║██║     ██║  ██║██████╔╝",
        "  ██╔══╝  ██║   ██║██║     ██║  ██║██╔══██╗",
        "  ██║     ╚██████╔╝███████╗██████╔╝██║  ██║",
        "  ╚═╝      ╚═════╝ ╚══════╝╚═════╝ ╚═╝  ╚═╝",
        "",
        f"     Foldr Programming Language v{VERSION}",
        "     Type 'foldr --help' for commands",
        "",
    ]
)

USAGE = "\n".join(
    [
        f"Foldr Programming Language v{VERSION}",
        "",
        "Usage:",
        "  foldr              Show ASCII logo and version",
        "  foldr <file.fld>   Run a Foldr program",
        "  foldr --help       Show this help message",
        "  foldr --version    Show version information",
        "",
        "Options:",
        "  --lenient          Undefined names and bad indexes yield null instead of failing",
        "  --verbose          Print a traceback with environment snapshots on runtime errors",
        "  --traceback-json   Also print the traceback as JSON",
        "  -source            Treat the argument as program text instead of a path",
        "  --recursion-limit N  Python recursion limit used while running (default 10000)",
    ]
)


def _build_parser() -> argparse.ArgumentParser:
    # Help and version text are printed by run_cli so both exit through its return value.
    parser = argparse.ArgumentParser(prog="foldr", add_help=False)
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-h", "--help", dest="show_help", action="store_true")
    parser.add_argument("-v", "--version", dest="show_version", action="store_true")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--lenient", dest="lenient", action="store_true", help="Compatibility mode: silent null results")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--recursion-limit", type=int, default=DEFAULT_RECURSION_LIMIT, help="Host recursion limit while running")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.show_help:
        print(USAGE)
        return 0
    if args.show_version:
        print(f"Foldr v{VERSION}")
        return 0
    if args.program is None:
        if args.source_mode:
            print("Error: -source requires a program string", file=sys.stderr)
            return 1
        print(LOGO)
        return 0

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except (OSError, UnicodeDecodeError):
            print(f"Error: Cannot open file '{filename}'", file=sys.stderr)
            return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        strict=not args.lenient,
        recursion_limit=args.recursion_limit,
    )
    try:
        interpreter.run()
    except FoldrRuntimeError as error:
        sys.stdout.flush()
        print(error.diagnostic(), file=sys.stderr)
        formatter = TracebackFormatter(interpreter)
        if args.verbose:
            print(formatter.format_text(error, verbose=True), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except FoldrError as error:
        sys.stdout.flush()
        print(error.diagnostic(), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
