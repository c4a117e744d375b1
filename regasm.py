"""RegAsm entry point: compile a program, feed it input, print its output."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ExtensionError, load_runtime_services
from interpreter import Interpreter, OutputRecord, TracebackFormatter, VMRuntimeError
from lexer import CompileError, RegAsmError
from parser import INT64_MAX, INT64_MIN, INTEGER_PATTERN, compile_program

SOURCE_SUFFIX = ".asm"


class InputFormatError(RegAsmError):
    """Raised when the input stream file holds something other than integers."""

    def __init__(self, filename: str, line: int, text: str) -> None:
        super().__init__(f"{filename}:{line}: expecting an integer, but received '{text}'")
        self.filename = filename
        self.line = line
        self.text = text


def parse_input_stream(text: str, filename: str = "<input>") -> List[int]:
    values: List[int] = []
    # Lines end at "\n" only.
    for number, raw in enumerate(text.split("\n"), start=1):
        stripped = raw.strip()
        if not stripped:
            continue
        if not INTEGER_PATTERN.fullmatch(stripped):
            raise InputFormatError(filename, number, stripped)
        value = int(stripped)
        if not INT64_MIN <= value <= INT64_MAX:
            raise InputFormatError(filename, number, stripped)
        values.append(value)
    return values


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        print(f"Failed to read {path}: {exc}", file=sys.stderr)
        return None


def _print_record(record: OutputRecord) -> None:
    print(record.render())


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="RegAsm compiler and virtual machine")
    parser.add_argument("program", help="Source file path (.asm) or literal source with -source")
    parser.add_argument("-i", "--input", dest="input_path", help="File with one integer per line consumed by 'read'")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit memory snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load a Python extension file (repeatable)")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        if not filename.endswith(SOURCE_SUFFIX):
            print(f"the file must have an {SOURCE_SUFFIX} extension", file=sys.stderr)
            return 1
        source_text = _read_text(filename)
        if source_text is None:
            return 1

    inputs: List[int] = []
    if args.input_path:
        input_text = _read_text(args.input_path)
        if input_text is None:
            return 1
        try:
            inputs = parse_input_stream(input_text, args.input_path)
        except InputFormatError as error:
            print(f"InputError: {error}", file=sys.stderr)
            return 1

    try:
        services = load_runtime_services(args.extensions)
    except ExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    try:
        program = compile_program(source_text, filename)
    except CompileError as error:
        print(error, file=sys.stderr)
        return 1

    interpreter = Interpreter(
        program,
        verbose=args.verbose,
        services=services,
        inputs=inputs,
        output_sink=_print_record,
    )
    try:
        interpreter.run()
    except VMRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(error, file=sys.stderr)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
