"""bfstream entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, Iterable, List, Optional, TextIO

from extensions import BFExtensionError, RuntimeServices, load_runtime_services
from interpreter import BFRuntimeError, Interpreter, TracebackFormatter
from lexer import BFError

PROMPT = "\x1b[38;2;153;221;255mbf>\033[0m "
INPUT_PROMPT = "\x1b[38;2;153;221;255min>\033[0m "


def _byte_reader(stream) -> Callable[[], Optional[int]]:
    def _read() -> Optional[int]:
        data = stream.read(1)
        return data[0] if data else None

    return _read


def _line_buffered_input(prompt: str) -> Callable[[], Optional[int]]:
    """Input provider for the REPL: prompts for a line, hands it out byte by byte."""
    pending: List[int] = []

    def _read() -> Optional[int]:
        if not pending:
            try:
                line = input(prompt)
            except EOFError:
                return None
            pending.extend((line + "\n").encode("utf-8"))
        return pending.pop(0)

    return _read


def dump_tape(interpreter: Interpreter, stream: TextIO) -> None:
    low, high = interpreter.tape.bounds()
    cells = interpreter.tape.window(low, high)
    print(f"tape[{low}..{high}] pointer={interpreter.pointer}", file=stream)
    print(" ".join(str(int(v)) for v in cells), file=stream)


def run_repl(verbose: bool, services: RuntimeServices, max_steps: Optional[int]) -> int:
    print("\x1b[38;2;153;221;255mbfstream\033[0m REPL. Loops may span lines; Ctrl-D to quit.")
    had_output = False

    def _output_sink(byte: int) -> None:
        nonlocal had_output
        had_output = True
        sys.stdout.buffer.write(bytes((byte,)))
        sys.stdout.buffer.flush()

    def _fresh() -> Interpreter:
        fresh = Interpreter(
            filename="<repl>",
            verbose=verbose,
            services=services,
            input_provider=_line_buffered_input(INPUT_PROMPT),
            output_sink=_output_sink,
            max_steps=max_steps,
        )
        fresh.start()
        return fresh

    def _report(failed: Interpreter, error: BFRuntimeError) -> None:
        failed.fail(error)
        formatter = TracebackFormatter(failed)
        print(formatter.format_text(error, verbose=failed.verbose), file=sys.stderr)

    interpreter = _fresh()
    while True:
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(PROMPT)
        except EOFError:
            print()
            break

        try:
            interpreter.feed(line + "\n")
        except BFRuntimeError as error:
            _report(interpreter, error)
            # start over so the REPL stays usable
            interpreter = _fresh()

    try:
        interpreter.finish()
    except BFRuntimeError as error:
        _report(interpreter, error)
        return 1
    interpreter.end()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Streaming tape-machine interpreter")
    parser.add_argument("program", nargs="?", help="Source file path ('-' for stdin) or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-input", "--input", dest="input_path", help="Read input bytes from this file instead of stdin")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], help="Load an extension (.py) or pointer file (.bfx); repeatable")
    parser.add_argument("-max-steps", "--max-steps", dest="max_steps", type=int, default=None, help="Abort after this many executed steps")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record tape snapshots in the state log and tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--dump-tape", action="store_true", help="Print the touched tape range to stderr after the run")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        services = load_runtime_services(args.extensions)
    except BFExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, max_steps=args.max_steps)

    input_handle = None
    if args.input_path:
        try:
            input_handle = open(args.input_path, "rb")
        except OSError as exc:
            print(f"Failed to read {args.input_path}: {exc}", file=sys.stderr)
            return 1

    source_handle = None
    source: Iterable[str]
    if args.source_mode:
        source = args.program.splitlines(keepends=True)
        filename = "<string>"
    elif args.program == "-":
        source = sys.stdin
        filename = "<stdin>"
    else:
        filename = args.program
        try:
            source_handle = open(filename, "r", encoding="utf-8")
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            if input_handle is not None:
                input_handle.close()
            return 1
        source = source_handle

    interpreter = Interpreter(
        filename=filename,
        verbose=args.verbose,
        services=services,
        input_provider=_byte_reader(input_handle) if input_handle is not None else None,
        max_steps=args.max_steps,
    )
    try:
        interpreter.run(source)
    except BFRuntimeError as error:
        sys.stdout.flush()
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except BFError as error:
        print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
        return 1
    finally:
        if source_handle is not None:
            source_handle.close()
        if input_handle is not None:
            input_handle.close()

    if args.dump_tape:
        dump_tape(interpreter, sys.stderr)
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
