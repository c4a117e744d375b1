from __future__ import annotations
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from lexer import CompileError, CompileFault, Lexer, SourceLine, is_identifier, label_name


MEMORY_SIZE = 1024
WORD_BITS = 64
INT64_MIN = -(1 << (WORD_BITS - 1))
INT64_MAX = (1 << (WORD_BITS - 1)) - 1

INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


class OperandKind(Enum):
    CONSTANT = "const"
    VARIABLE = "var"
    REFERENCE = "ref"


@dataclass(frozen=True)
class Operand:
    kind: OperandKind
    value: int

    def __str__(self) -> str:
        if self.kind is OperandKind.VARIABLE:
            return f"${self.value}"
        if self.kind is OperandKind.REFERENCE:
            return f"&{self.value}"
        return str(self.value)


class ArithOp(Enum):
    SUB = "-"
    ADD = "+"
    MUL = "*"
    DIV = "/"


class Comparator(Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="


class Logic(Enum):
    AND = "&&"
    OR = "||"


@dataclass(frozen=True)
class Clause:
    left: Operand
    comparator: Comparator
    right: Operand
    # Connective joining this clause to the accumulated result; None on the first clause.
    logic: Optional[Logic] = None


@dataclass(frozen=True)
class Condition:
    clauses: Tuple[Clause, ...]


@dataclass(frozen=True)
class Instruction:
    location: SourceLocation
    rule: ClassVar[str] = "?"

    @property
    def line(self) -> int:
        return self.location.line


@dataclass(frozen=True)
class Operation(Instruction):
    rule: ClassVar[str] = "op"
    target: Operand
    first: Operand
    op: Optional[ArithOp] = None
    second: Optional[Operand] = None


@dataclass(frozen=True)
class Jump(Instruction):
    rule: ClassVar[str] = "to"
    target: str
    condition: Optional[Condition] = None


@dataclass(frozen=True)
class Write(Instruction):
    rule: ClassVar[str] = "write"
    value: Operand


@dataclass(frozen=True)
class Read(Instruction):
    rule: ClassVar[str] = "read"
    target: Operand
    fallback: Optional[str] = None


@dataclass(frozen=True)
class Halt(Instruction):
    rule: ClassVar[str] = "halt"


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]
    labels: Mapping[str, int]
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)


# ---- operands ----

def _register(text: str) -> Optional[int]:
    if not INTEGER_PATTERN.fullmatch(text):
        return None
    index = int(text)
    if index < 0 or index >= MEMORY_SIZE:
        return None
    return index


def resolve_operand(token: str) -> Optional[Operand]:
    """Classify ``token`` as a variable, a reference or a constant."""
    if token.startswith("$"):
        index = _register(token[1:])
        if index is not None:
            return Operand(OperandKind.VARIABLE, index)
    if token.startswith("&"):
        index = _register(token[1:])
        if index is not None:
            return Operand(OperandKind.REFERENCE, index)
    if INTEGER_PATTERN.fullmatch(token):
        value = int(token)
        if INT64_MIN <= value <= INT64_MAX:
            return Operand(OperandKind.CONSTANT, value)
    return None


def _destination(token: str) -> Optional[Operand]:
    operand = resolve_operand(token)
    if operand is None or operand.kind is OperandKind.CONSTANT:
        return None
    return operand


def _fail(rule: str, message: str, received: Sequence[str], kind: CompileFault = CompileFault.MALFORMED) -> CompileError:
    return CompileError(message, kind=kind, rule=rule, received=received)


# ---- conditions ----

_CLAUSE_WIDTH = 4


def compile_condition(tokens: Sequence[str]) -> Condition:
    """Compile ``if <op> <cmp> <op> (<logic> <op> <cmp> <op>)*``.

    Tokens after ``if`` are read in groups of four (operand, comparator,
    operand, connective); the position inside the group decides which
    class is expected. The stream must stop on an operand.
    """
    if not tokens or tokens[0] != "if":
        raise _fail("if", "expecting word 'if', but received", tokens[:1])
    body = list(tokens[1:])
    if not body:
        raise _fail("if", "expecting a value, but received", [])

    clauses: List[Clause] = []
    left: Optional[Operand] = None
    comparator: Optional[Comparator] = None
    logic: Optional[Logic] = None
    for index, token in enumerate(body):
        position = index % _CLAUSE_WIDTH
        if position == 0 or position == 2:
            operand = resolve_operand(token)
            if operand is None:
                raise _fail("if", "expecting a value, but received", [token])
            if position == 0:
                left = operand
            else:
                assert left is not None and comparator is not None
                clauses.append(Clause(left=left, comparator=comparator, right=operand, logic=logic))
        elif position == 1:
            try:
                comparator = Comparator(token)
            except ValueError:
                raise _fail("if", "expecting comparison (==, !=, >=, <=, >, <), but received", [token])
        else:
            try:
                logic = Logic(token)
            except ValueError:
                raise _fail("if", "expecting logic operator (&&, ||), but received", [token])

    if len(body) % _CLAUSE_WIDTH != 3:
        raise _fail("if", "expecting ending with a value, but received", body[-1:])
    return Condition(clauses=tuple(clauses))


# ---- instruction matchers ----
# Each matcher returns None when the line is not its kind and raises
# CompileError when it recognizes its kind but the line is malformed.

Matcher = Callable[[List[str], SourceLocation], Optional[Instruction]]


def match_jump(tokens: List[str], location: SourceLocation) -> Optional[Instruction]:
    if tokens[0] != "to":
        return None
    if len(tokens) < 2 or not is_identifier(tokens[1]):
        raise _fail("to", "expecting valid word, but received", tokens[1:2])
    condition: Optional[Condition] = None
    if len(tokens) > 2:
        if tokens[2] != "if":
            raise _fail("to", "expecting valid word, but received", tokens[2:])
        condition = compile_condition(tokens[2:])
    return Jump(location=location, target=tokens[1], condition=condition)


def match_halt(tokens: List[str], location: SourceLocation) -> Optional[Instruction]:
    if tokens[0] != "halt":
        return None
    if len(tokens) > 1:
        raise _fail("halt", "expecting no parameter, but received", tokens[1:])
    return Halt(location=location)


def match_write(tokens: List[str], location: SourceLocation) -> Optional[Instruction]:
    if tokens[0] != "write":
        return None
    value = resolve_operand(tokens[1]) if len(tokens) > 1 else None
    if value is None:
        raise _fail("write", "expecting a value, but received", tokens[1:2])
    if len(tokens) > 2:
        raise _fail("write", "expecting only one value as a parameter, but received", tokens[2:])
    return Write(location=location, value=value)


def match_operation(tokens: List[str], location: SourceLocation) -> Optional[Instruction]:
    if "=" not in tokens:
        return None
    equals = tokens.index("=")
    if equals == 0:
        raise _fail("op", "invalid operation left value", [])
    if equals != 1:
        raise _fail("op", "must have only one operation left value, but received", tokens[:equals],
                    kind=CompileFault.DUPLICATE_TARGET)
    if "=" in tokens[2:]:
        second_equals = tokens.index("=", 2)
        raise _fail("op", "must have only one operation left value, but received", tokens[:second_equals],
                    kind=CompileFault.DUPLICATE_TARGET)

    target = _destination(tokens[0])
    if target is None:
        raise _fail("op", "invalid operation left value", tokens[:1])
    first = resolve_operand(tokens[2]) if len(tokens) > 2 else None
    if first is None:
        raise _fail("op", "invalid operation first right value", tokens[2:3])
    if len(tokens) == 3:
        return Operation(location=location, target=target, first=first)

    try:
        op = ArithOp(tokens[3])
    except ValueError:
        raise _fail("op", "invalid operation, expecting (+,-,/,*), but received", tokens[3:4])
    second = resolve_operand(tokens[4]) if len(tokens) > 4 else None
    if second is None:
        raise _fail("op", "invalid operation second right value", tokens[4:5])
    if len(tokens) > 5:
        raise _fail("op", "expecting operation to finish, but received", tokens[5:])
    return Operation(location=location, target=target, first=first, op=op, second=second)


def match_read(tokens: List[str], location: SourceLocation) -> Optional[Instruction]:
    if tokens[0] != "read":
        return None
    target = _destination(tokens[1]) if len(tokens) > 1 else None
    if target is None:
        raise _fail("read", "expecting a variable or reference, but received", tokens[1:2])
    fallback: Optional[str] = None
    if len(tokens) > 2:
        if not is_identifier(tokens[2]):
            raise _fail("read", "expecting valid word, but received", tokens[2:3])
        fallback = tokens[2]
    if len(tokens) > 3:
        raise _fail("read", "expecting at most a fallback label, but received", tokens[3:])
    return Read(location=location, target=target, fallback=fallback)


# Order matters: an almost-valid line of one kind must fail as that kind
# rather than be picked up by the Operation matcher.
MATCHERS: Tuple[Matcher, ...] = (match_jump, match_halt, match_write, match_operation, match_read)


# ---- program compiler ----

class Parser:
    def __init__(self, lines: Iterable[SourceLine], filename: str) -> None:
        self.lines = lines
        self.filename = filename
        self.instructions: List[Instruction] = []
        self.labels: Dict[str, int] = {}

    def parse(self) -> Program:
        for line in self.lines:
            try:
                self._parse_line(line)
            except CompileError as error:
                if error.line is None:
                    error.line = line.number
                error.filename = self.filename
                raise
        self._check_labels()
        return Program(
            instructions=tuple(self.instructions),
            labels=MappingProxyType(dict(self.labels)),
            filename=self.filename,
        )

    def _parse_line(self, line: SourceLine) -> None:
        tokens = line.code
        label = label_name(tokens)
        if label is not None:
            # A label names the next instruction and takes no slot itself;
            # redefining it moves it.
            self.labels[label] = len(self.instructions)
            return
        location = self._location(line)
        for matcher in MATCHERS:
            instruction = matcher(tokens, location)
            if instruction is not None:
                self.instructions.append(instruction)
                return
        raise _fail("?", "instruction not found", tokens, kind=CompileFault.UNRECOGNIZED_INSTRUCTION)

    def _check_labels(self) -> None:
        for instruction in self.instructions:
            if isinstance(instruction, Jump):
                name: Optional[str] = instruction.target
            elif isinstance(instruction, Read):
                name = instruction.fallback
            else:
                continue
            if name is not None and name not in self.labels:
                raise CompileError(
                    "label not defined",
                    kind=CompileFault.UNDEFINED_LABEL,
                    rule="label",
                    received=[name],
                    line=instruction.line,
                    filename=self.filename,
                )

    def _location(self, line: SourceLine) -> SourceLocation:
        column = line.tokens[0].column if line.tokens else 1
        return SourceLocation(file=self.filename, line=line.number, column=column, statement=line.text)


def compile_program(text: str, filename: str = "<string>") -> Program:
    lexer = Lexer(text, filename)
    return Parser(lexer.lines(), filename).parse()
