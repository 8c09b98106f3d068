from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Tuple


class BFError(Exception):
    """Base class for interpreter errors."""


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


class Instruction(Enum):
    INCREMENT = "+"
    DECREMENT = "-"
    MOVE_RIGHT = ">"
    MOVE_LEFT = "<"
    OUTPUT = "."
    INPUT = ","
    LOOP_START = "["
    LOOP_END = "]"


SYMBOLS = {member.value: member for member in Instruction}


def classify(ch: str) -> Optional[Instruction]:
    """Map a source character to its instruction, or None for a no-op."""
    return SYMBOLS.get(ch)


class Lexer:
    """Walks a lazily delivered program and yields its instruction characters.

    The source is any iterable of strings (typically lines of a file). Only
    the current chunk is held in memory; characters that are not
    instructions are dropped here and never reach the engine. Line and
    column survive across chunks, so one lexer can be fed piecemeal.
    """

    def __init__(self, filename: str) -> None:
        self.filename = filename
        self.line = 1
        self.column = 1

    def scan(self, chunk: str) -> Iterator[Tuple[str, SourceLocation]]:
        symbols = SYMBOLS
        for ch in chunk:
            if ch in symbols:
                yield ch, SourceLocation(self.filename, self.line, self.column)
            self._advance(ch)

    def tokenize(self, source: Iterable[str]) -> Iterator[Tuple[str, SourceLocation]]:
        for chunk in source:
            yield from self.scan(chunk)

    def _advance(self, ch: str) -> None:
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
