"""Sigla entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import SiglaExtensionError, load_runtime_services
from interpreter import Interpreter, TracebackFormatter
from lexer import SIGIL, Lexer, dump_tokens
from resolver import REQUIRE_POLICIES, POLICY_SKIP


def _list_plugins(paths: List[str]) -> int:
    try:
        services = load_runtime_services(paths)
    except SiglaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    interpreter = Interpreter(source="", services=services)
    for info in interpreter.plugin_info():
        print(f"{info['name']} {info['version']} by {info['author']}: {', '.join(info['functions'])}")
    registry = interpreter.registry
    for name in registry.names():
        print(f"{SIGIL}{name} ({registry.get(name).origin})")
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sigla script interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-debug", "--debug", dest="debug", action="store_true", help="Emit debug diagnostics and env snapshots")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    parser.add_argument("--tokens", action="store_true", help="Print the token dump of the source and exit")
    parser.add_argument("--check", action="store_true", help="Resolve requires and validate structure without running")
    parser.add_argument("--require-policy", choices=REQUIRE_POLICIES, default=POLICY_SKIP, help="How repeated requires are handled")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the random number generator")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--plugins", action="store_true", help="List loaded extensions and every available directive, then exit")
    args = parser.parse_args(argv)

    if args.plugins:
        return _list_plugins(args.extensions)
    if args.program is None:
        parser.error("the following arguments are required: program")

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    if args.tokens:
        print(dump_tokens(Lexer(source_text, filename).tokenize()))
        return 0

    try:
        services = load_runtime_services(args.extensions)
    except SiglaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        debug=args.debug,
        services=services,
        require_policy=args.require_policy,
        seed=args.seed,
    )
    if args.check:
        return 0 if interpreter.check().success else 1

    result = interpreter.run()
    if not result.success:
        error = interpreter.last_error
        if error is not None:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=args.debug), file=sys.stderr)
            if args.traceback_json:
                print(formatter.to_json(error), file=sys.stderr)
        return 1
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(run_cli())
