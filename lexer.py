from __future__ import annotations
from dataclasses import dataclass
from typing import List, Sequence

from opcodes import TOK_LF, TOK_SPACE, TOK_TAB, TOKEN_NAMES


class WSError(Exception):
    """Base class for interpreter errors."""


class WSParseError(WSError):
    """Raised when a program cannot be loaded."""


TOKEN_TYPES = {
    TOK_SPACE: "SPACE",
    TOK_TAB: "TAB",
    TOK_LF: "LF",
}


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int
    offset: int


class Lexer:
    """Turns raw source text into the three meaningful tokens.

    Every other character is a separator and is dropped wherever it
    appears, including between the tokens of a parameter. Line and column
    numbers refer to the raw text so errors can point back into the file.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        token_types = TOKEN_TYPES
        text = self.text
        n = len(text)
        line = self.line
        column = self.column

        index = self.index
        while index < n:
            ch = text[index]
            kind = token_types.get(ch)
            if kind is not None:
                tokens_append(Token(kind, ch, line, column, index))
            if ch == "\n":
                line += 1
                column = 1
            else:
                column += 1
            index += 1

        self.index, self.line, self.column = index, line, column
        return tokens


def tokenize(text: str, filename: str = "<string>") -> List[Token]:
    return Lexer(text, filename).tokenize()


def describe_tokens(tokens: Sequence[Token]) -> str:
    # One rendered line per source line, e.g. "[Space][Space][Tab][LF]".
    lines: List[str] = []
    current: List[str] = []
    for token in tokens:
        current.append(TOKEN_NAMES[token.value])
        if token.value == TOK_LF:
            lines.append("".join(current))
            current = []
    if current:
        lines.append("".join(current))
    return "\n".join(lines)
