from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence


class RegAsmError(Exception):
    """Base class for compiler and virtual machine errors."""


class CompileFault(Enum):
    UNRECOGNIZED_INSTRUCTION = "instruction not found"
    MALFORMED = "malformed instruction"
    DUPLICATE_TARGET = "more than one left value"
    UNDEFINED_LABEL = "label not defined"


class CompileError(RegAsmError):
    """Raised when a source line cannot be compiled."""

    def __init__(
        self,
        message: str,
        *,
        kind: CompileFault = CompileFault.MALFORMED,
        rule: str = "?",
        received: Optional[Sequence[str]] = None,
        line: Optional[int] = None,
        filename: str = "<string>",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.rule = rule
        self.received = list(received) if received is not None else []
        self.line = line
        self.filename = filename

    def __str__(self) -> str:
        received = " ".join(self.received) if self.received else "nothing"
        return f"[Compilation error: line {self.line}] <{self.rule}> {self.message}: {received}."


@dataclass
class Token:
    value: str
    line: int
    column: int

    def __str__(self) -> str:
        return self.value


@dataclass
class SourceLine:
    number: int
    text: str
    tokens: List[Token] = field(default_factory=list)

    @property
    def values(self) -> List[str]:
        return [token.value for token in self.tokens]

    @property
    def code(self) -> List[str]:
        # Token values up to the first trailing comment.
        out: List[str] = []
        for token in self.tokens:
            if token.value.startswith(COMMENT_PREFIX):
                break
            out.append(token.value)
        return out


IDENTIFIER_START = "abcdefghijklmnopqrstuvwxyz_"
IDENTIFIER_PART = IDENTIFIER_START + "0123456789"
COMMENT_PREFIX = "#"
LABEL_SUFFIX = ":"


def is_identifier(text: str) -> bool:
    if not text or text[0] not in IDENTIFIER_START:
        return False
    return all(ch in IDENTIFIER_PART for ch in text)


def is_comment(tokens: Sequence[str]) -> bool:
    """True for an empty token run or one that starts a comment."""
    return len(tokens) == 0 or tokens[0].startswith(COMMENT_PREFIX)


def label_name(tokens: Sequence[str]) -> Optional[str]:
    if not tokens:
        return None
    head = tokens[0]
    if not head.endswith(LABEL_SUFFIX):
        return None
    name = head[: -len(LABEL_SUFFIX)]
    if is_identifier(name) and is_comment(tokens[1:]):
        return name
    return None


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename

    def tokenize_line(self, raw: str, number: int) -> SourceLine:
        tokens: List[Token] = []
        tokens_append = tokens.append
        n = len(raw)
        index = 0
        while index < n:
            ch = raw[index]
            if ch == " " or ch == "\t" or ch == "\r":
                index += 1
                continue
            start = index
            while index < n and raw[index] not in " \t\r":
                index += 1
            tokens_append(Token(raw[start:index], number, start + 1))
        return SourceLine(number=number, text=raw.strip(), tokens=tokens)

    def lines(self) -> Iterator[SourceLine]:
        """Yield every line that carries a label or an instruction."""
        for number, raw in enumerate(self.text.split("\n"), start=1):
            line = self.tokenize_line(raw, number)
            if is_comment(line.values):
                continue
            yield line
