from __future__ import annotations

from lexer import Lexer, describe_tokens, tokenize


def test_only_three_tokens_survive():
    tokens = tokenize("a \tb\nc")
    assert [t.type for t in tokens] == ["SPACE", "TAB", "LF"]
    assert [t.value for t in tokens] == [" ", "\t", "\n"]


def test_positions_refer_to_raw_text():
    tokens = Lexer("x \ny\t", "prog.ws").tokenize()
    assert [(t.line, t.column, t.offset) for t in tokens] == [(1, 2, 1), (1, 3, 2), (2, 2, 4)]


def test_carriage_return_is_a_separator():
    assert [t.type for t in tokenize("\r\n\r")] == ["LF"]


def test_empty_source():
    assert tokenize("") == []


def test_describe_tokens_splits_on_line_feed():
    assert describe_tokens(tokenize("  \t\n\n\n\n")) == "[Space][Space][Tab][LF]\n[LF]\n[LF]\n[LF]"
    assert describe_tokens(tokenize(" \t")) == "[Space][Tab]"
