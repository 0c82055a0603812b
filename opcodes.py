from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


TOK_SPACE = " "
TOK_TAB = "\t"
TOK_LF = "\n"

TOKEN_NAMES: Dict[str, str] = {TOK_SPACE: "[Space]", TOK_TAB: "[Tab]", TOK_LF: "[LF]"}


class Category(Enum):
    STACK = "stack"
    ARITHMETIC = "arithmetic"
    HEAP = "heap"
    FLOW = "flow"
    IO = "io"


class ParamKind(Enum):
    NONE = "none"
    INTEGER = "integer"
    LABEL = "label"


class Op(Enum):
    PUSH = "push"
    DUP = "dup"
    COPY = "copy"
    SWAP = "swap"
    DISCARD = "discard"
    SLIDE = "slide"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"
    STORE = "store"
    RETRIEVE = "retrieve"
    SET_LABEL = "label"
    CALL = "call"
    JUMP = "jump"
    JUMP_IF_ZERO = "jz"
    JUMP_IF_NEGATIVE = "jn"
    END_SUBROUTINE = "ret"
    END_PROGRAM = "end"
    PRINT_CHAR = "printc"
    PRINT_INT = "printi"
    READ_CHAR = "readc"
    READ_INT = "readi"


@dataclass(frozen=True)
class OpcodeSpec:
    code: str
    kind: Op
    param: ParamKind
    category: Category


_S, _T, _L = TOK_SPACE, TOK_TAB, TOK_LF
_NONE, _INT, _LABEL = ParamKind.NONE, ParamKind.INTEGER, ParamKind.LABEL

# Each group shares its instruction-modification prefix:
# stack [S], arithmetic [T][S], heap [T][T], flow [L], io [T][L].
OPCODE_TABLE: Tuple[OpcodeSpec, ...] = (
    OpcodeSpec(_S + _S, Op.PUSH, _INT, Category.STACK),
    OpcodeSpec(_S + _L + _S, Op.DUP, _NONE, Category.STACK),
    OpcodeSpec(_S + _T + _S, Op.COPY, _INT, Category.STACK),
    OpcodeSpec(_S + _L + _T, Op.SWAP, _NONE, Category.STACK),
    OpcodeSpec(_S + _L + _L, Op.DISCARD, _NONE, Category.STACK),
    OpcodeSpec(_S + _T + _L, Op.SLIDE, _INT, Category.STACK),
    OpcodeSpec(_T + _S + _S + _S, Op.ADD, _NONE, Category.ARITHMETIC),
    OpcodeSpec(_T + _S + _S + _T, Op.SUB, _NONE, Category.ARITHMETIC),
    OpcodeSpec(_T + _S + _S + _L, Op.MUL, _NONE, Category.ARITHMETIC),
    OpcodeSpec(_T + _S + _T + _S, Op.DIV, _NONE, Category.ARITHMETIC),
    OpcodeSpec(_T + _S + _T + _T, Op.MOD, _NONE, Category.ARITHMETIC),
    OpcodeSpec(_T + _T + _S, Op.STORE, _NONE, Category.HEAP),
    OpcodeSpec(_T + _T + _T, Op.RETRIEVE, _NONE, Category.HEAP),
    OpcodeSpec(_L + _S + _S, Op.SET_LABEL, _LABEL, Category.FLOW),
    OpcodeSpec(_L + _S + _T, Op.CALL, _LABEL, Category.FLOW),
    OpcodeSpec(_L + _S + _L, Op.JUMP, _LABEL, Category.FLOW),
    OpcodeSpec(_L + _T + _S, Op.JUMP_IF_ZERO, _LABEL, Category.FLOW),
    OpcodeSpec(_L + _T + _T, Op.JUMP_IF_NEGATIVE, _LABEL, Category.FLOW),
    OpcodeSpec(_L + _T + _L, Op.END_SUBROUTINE, _NONE, Category.FLOW),
    OpcodeSpec(_L + _L + _L, Op.END_PROGRAM, _NONE, Category.FLOW),
    OpcodeSpec(_T + _L + _S + _S, Op.PRINT_CHAR, _NONE, Category.IO),
    OpcodeSpec(_T + _L + _S + _T, Op.PRINT_INT, _NONE, Category.IO),
    OpcodeSpec(_T + _L + _T + _S, Op.READ_CHAR, _NONE, Category.IO),
    OpcodeSpec(_T + _L + _T + _T, Op.READ_INT, _NONE, Category.IO),
)


def check_prefix_free(table: Tuple[OpcodeSpec, ...]) -> None:
    codes = sorted(spec.code for spec in table)
    # After sorting, a code that prefixes another sorts directly before some code it prefixes.
    for shorter, longer in zip(codes, codes[1:]):
        if longer.startswith(shorter):
            raise ValueError(f"Opcode table is not prefix-free: {render_code(shorter)} prefixes {render_code(longer)}")
    kinds = [spec.kind for spec in table]
    missing = set(Op) - set(kinds)
    if missing:
        names = ", ".join(sorted(op.value for op in missing))
        raise ValueError(f"Opcode table has no code for: {names}")
    if len(kinds) != len(set(kinds)):
        raise ValueError("Opcode table maps an instruction kind more than once")


def render_code(code: str) -> str:
    return "".join(TOKEN_NAMES[ch] for ch in code)


check_prefix_free(OPCODE_TABLE)

BY_CODE: Dict[str, OpcodeSpec] = {spec.code: spec for spec in OPCODE_TABLE}
BY_KIND: Dict[Op, OpcodeSpec] = {spec.kind: spec for spec in OPCODE_TABLE}
MAX_CODE_LENGTH = max(len(spec.code) for spec in OPCODE_TABLE)


def category_of(kind: Op) -> Category:
    return BY_KIND[kind].category