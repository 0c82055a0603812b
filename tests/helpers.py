from __future__ import annotations

from typing import Tuple, Union

from decoder import encode_instruction
from opcodes import TOK_SPACE, TOK_TAB, Op

Step = Union[Op, Tuple[Op, Union[int, str]]]


def label(name: str) -> str:
    """Label key from an S/T spelling, e.g. "STS" -> " \\t "."""
    return name.replace("S", TOK_SPACE).replace("T", TOK_TAB)


def assemble(*steps: Step) -> str:
    parts = []
    for step in steps:
        if isinstance(step, tuple):
            kind, parameter = step
            if isinstance(parameter, str):
                parameter = label(parameter)
            parts.append(encode_instruction(kind, parameter))
        else:
            parts.append(encode_instruction(step))
    return "".join(parts)


def program(*steps: Step, end: bool = True) -> str:
    if end:
        steps = steps + (Op.END_PROGRAM,)
    return assemble(*steps)
