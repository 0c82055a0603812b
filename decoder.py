from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from lexer import Token, WSParseError, tokenize
from opcodes import (
    BY_CODE,
    BY_KIND,
    MAX_CODE_LENGTH,
    TOK_LF,
    TOK_SPACE,
    TOK_TAB,
    Category,
    Op,
    OpcodeSpec,
    ParamKind,
    category_of,
)


Parameter = Union[int, str, None]


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int


class UnknownOpcode(WSParseError):
    def __init__(self, position: int, location: Optional[SourceLocation], remainder: str) -> None:
        where = f" ({location.file}:{location.line}:{location.column})" if location else ""
        super().__init__(f"Unknown opcode at token {position}{where}: {label_name(remainder) or '<empty>'}")
        self.position = position
        self.location = location


class UnterminatedParameter(WSParseError):
    def __init__(self, position: int, location: Optional[SourceLocation], kind: Op) -> None:
        where = f" ({location.file}:{location.line}:{location.column})" if location else ""
        super().__init__(f"Parameter of '{kind.value}' at token {position}{where} is not terminated by [LF]")
        self.position = position
        self.location = location
        self.kind = kind


@dataclass(frozen=True)
class Instruction:
    kind: Op
    parameter: Parameter = None
    # Token index of the first token of the opcode.
    position: int = 0
    location: Optional[SourceLocation] = None

    @property
    def category(self) -> Category:
        return category_of(self.kind)

    @property
    def mnemonic(self) -> str:
        return self.kind.value

    def render(self) -> str:
        if self.parameter is None:
            return self.mnemonic
        if isinstance(self.parameter, str):
            return f"{self.mnemonic} {label_name(self.parameter)}"
        return f"{self.mnemonic} {self.parameter}"


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]


def label_name(key: str) -> str:
    """Readable form of a label key: space -> S, tab -> T."""
    return key.replace(TOK_SPACE, "S").replace(TOK_TAB, "T").replace(TOK_LF, "L")


def decode_integer(digits: str) -> int:
    """Decode a sign-prefixed binary magnitude (terminator excluded)."""
    if digits == "":
        return 0
    sign = -1 if digits[0] == TOK_TAB else 1
    value = 0
    for ch in digits[1:]:
        value = value * 2 + (1 if ch == TOK_TAB else 0)
    return sign * value


def encode_integer(value: int) -> str:
    """Inverse of decode_integer, including the terminating [LF]."""
    sign = TOK_TAB if value < 0 else TOK_SPACE
    magnitude = format(abs(value), "b") if value else ""
    return sign + magnitude.replace("0", TOK_SPACE).replace("1", TOK_TAB) + TOK_LF


class Decoder:
    def __init__(self, tokens: Sequence[Token], filename: str = "<string>") -> None:
        self.tokens = tokens
        self.filename = filename
        # Opcodes only ever match against token values; keep them as one string.
        self.text = "".join(token.value for token in tokens)

    def decode(self) -> Program:
        instructions: List[Instruction] = []
        text = self.text
        n = len(text)
        pos = 0
        while pos < n:
            spec = self._match(pos)
            if spec is None:
                raise UnknownOpcode(pos, self._location(pos), text[pos:pos + MAX_CODE_LENGTH])
            start = pos
            pos += len(spec.code)
            parameter: Parameter = None
            if spec.param is not ParamKind.NONE:
                end = text.find(TOK_LF, pos)
                if end == -1:
                    raise UnterminatedParameter(start, self._location(start), spec.kind)
                raw = text[pos:end]
                parameter = decode_integer(raw) if spec.param is ParamKind.INTEGER else raw
                pos = end + 1
            instructions.append(
                Instruction(kind=spec.kind, parameter=parameter, position=start, location=self._location(start))
            )
        return Program(instructions=tuple(instructions), filename=self.filename)

    def _match(self, pos: int) -> Optional[OpcodeSpec]:
        # The table is prefix-free, so the first length that hits is the only match.
        text = self.text
        for length in range(1, MAX_CODE_LENGTH + 1):
            spec = BY_CODE.get(text[pos:pos + length])
            if spec is not None:
                return spec
        return None

    def _location(self, pos: int) -> Optional[SourceLocation]:
        if pos >= len(self.tokens):
            return None
        token = self.tokens[pos]
        return SourceLocation(file=self.filename, line=token.line, column=token.column)


def decode(tokens: Sequence[Token], filename: str = "<string>") -> Program:
    return Decoder(tokens, filename).decode()


def decode_source(text: str, filename: str = "<string>") -> Program:
    return decode(tokenize(text, filename), filename)


def format_program(program: Program) -> str:
    """Listing with one instruction per line, labels flush left."""
    lines: List[str] = []
    for index, instruction in enumerate(program.instructions):
        if instruction.kind is Op.SET_LABEL:
            lines.append(f"{index:04d} {label_name(str(instruction.parameter))}:")
        else:
            lines.append(f"{index:04d}     {instruction.render()}")
    return "\n".join(lines)


def encode_instruction(kind: Op, parameter: Parameter = None) -> str:
    spec = BY_KIND[kind]
    if spec.param is ParamKind.NONE:
        return spec.code
    if spec.param is ParamKind.INTEGER:
        return spec.code + encode_integer(int(parameter or 0))
    return spec.code + str(parameter or "") + TOK_LF
