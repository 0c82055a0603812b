"""whitespace-lang entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from decoder import decode, format_program
from extensions import WSExtensionError, load_runtime_services
from interpreter import ExecutionCancelled, Interpreter, TracebackFormatter, WSRuntimeError
from lexer import WSParseError, describe_tokens, tokenize

EXIT_CANCELLED = 124


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wslang", description="Whitespace reference interpreter")
    parser.add_argument("program", nargs="?", help="Path to the program file")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Include stack snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N", help="Cancel execution after N instructions")
    parser.add_argument("--listing", action="store_true", help="Print the decoded program instead of running it")
    parser.add_argument("--tokens", action="store_true", help="Print the token stream as [Space]/[Tab]/[LF] instead of running it")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension (.py or .wsx); repeatable")
    return parser


def read_program(filename: str) -> str:
    # newline="" keeps a lone CR from turning into a meaningful LF.
    with open(filename, "r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        return handle.read()


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.program is None:
        print(f"usage: {parser.prog} filename")
        return 0

    filename = args.program
    try:
        source_text = read_program(filename)
    except OSError as exc:
        print(f"Failed to read {filename}: {exc}", file=sys.stderr)
        return 1

    if args.tokens or args.listing:
        tokens = tokenize(source_text, filename)
        if args.tokens:
            print(describe_tokens(tokens))
        if args.listing:
            try:
                print(format_program(decode(tokens, filename)))
            except WSParseError as error:
                print(f"ParseError: {error}", file=sys.stderr)
                return 1
        return 0

    try:
        services = load_runtime_services(args.extensions)
    except WSExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        services=services,
        max_steps=args.max_steps,
    )
    try:
        interpreter.run()
    except WSParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except ExecutionCancelled as cancelled:
        sys.stdout.flush()
        print(f"ExecutionCancelled: {cancelled}", file=sys.stderr)
        return EXIT_CANCELLED
    except WSRuntimeError as error:
        sys.stdout.flush()
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        for hook_error in interpreter.hook_errors:
            print(f"ExtensionError: {hook_error.message}", file=sys.stderr)
        return 1
    sys.stdout.flush()
    return 0


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    raise SystemExit(run_cli())
