from __future__ import annotations
import sys
from typing import Callable, List, Optional, TextIO


OutputSink = Callable[[str], None]


class InputPort:
    """Character source for the read instructions; None means exhausted."""

    def read_char(self) -> Optional[str]:
        raise NotImplementedError

    def read_line(self) -> Optional[str]:
        raise NotImplementedError


class StreamInput(InputPort):
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdin

    def read_char(self) -> Optional[str]:
        ch = self.stream.read(1)
        return ch if ch else None

    def read_line(self) -> Optional[str]:
        line = self.stream.readline()
        if line == "":
            return None
        return line.rstrip("\n").rstrip("\r")


class StringInput(InputPort):
    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0

    def read_char(self) -> Optional[str]:
        if self.index >= len(self.text):
            return None
        ch = self.text[self.index]
        self.index += 1
        return ch

    def read_line(self) -> Optional[str]:
        if self.index >= len(self.text):
            return None
        end = self.text.find("\n", self.index)
        if end == -1:
            line = self.text[self.index:]
            self.index = len(self.text)
        else:
            line = self.text[self.index:end]
            self.index = end + 1
        return line.rstrip("\r")


class CollectingOutput:
    def __init__(self) -> None:
        self.parts: List[str] = []

    def __call__(self, text: str) -> None:
        self.parts.append(text)

    @property
    def text(self) -> str:
        return "".join(self.parts)


def stdout_sink(text: str) -> None:
    sys.stdout.write(text)
