from __future__ import annotations

import io
import json
from pathlib import Path

from opcodes import Op
from tests.helpers import assemble, program
from wslang import EXIT_CANCELLED, run_cli

PROFILE_EXT = Path(__file__).resolve().parent.parent / "ext" / "profile.py"


def write(tmp_path: Path, source: str, name: str = "prog.ws") -> str:
    path = tmp_path / name
    path.write_bytes(source.encode("utf-8"))
    return str(path)


def test_missing_argument_prints_usage(capsys):
    assert run_cli([]) == 0
    out = capsys.readouterr().out
    assert out.strip() == "usage: wslang filename"


def test_runs_program(tmp_path, capsys):
    path = write(tmp_path, program((Op.PUSH, 72), Op.PRINT_CHAR, (Op.PUSH, 33), Op.PRINT_CHAR))
    assert run_cli([path]) == 0
    assert capsys.readouterr().out == "H!"


def test_reads_stdin(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("20\n"))
    path = write(tmp_path, program((Op.PUSH, 0), Op.READ_INT, (Op.PUSH, 0), Op.RETRIEVE, (Op.PUSH, 2), Op.MUL, Op.PRINT_INT))
    assert run_cli([path]) == 0
    assert capsys.readouterr().out == "40"


def test_lone_carriage_return_is_not_a_line_feed(tmp_path, capsys):
    # With newline translation the CR would become an LF and terminate the push early.
    source = "   \t\r\t\n" + assemble(Op.PRINT_INT, Op.END_PROGRAM)
    path = write(tmp_path, source)
    assert run_cli([path]) == 0
    assert capsys.readouterr().out == "3"


def test_unreadable_file(tmp_path, capsys):
    assert run_cli([str(tmp_path / "missing.ws")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def test_parse_error(tmp_path, capsys):
    path = write(tmp_path, "  \t")
    assert run_cli([path]) == 1
    assert capsys.readouterr().err.startswith("ParseError: ")


def test_duplicate_label_is_a_parse_error(tmp_path, capsys):
    path = write(tmp_path, program((Op.SET_LABEL, "S"), (Op.SET_LABEL, "S")))
    assert run_cli([path]) == 1
    assert "ParseError: Label S" in capsys.readouterr().err


def test_fault_prints_traceback(tmp_path, capsys):
    path = write(tmp_path, program((Op.PUSH, 1), Op.PRINT_INT, (Op.PUSH, 1), (Op.PUSH, 0), Op.DIV))
    assert run_cli([path, "--traceback-json"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert "Traceback (most recent call last):" in captured.err
    assert "DivisionByZero" in captured.err
    payload = captured.err[captured.err.index("{"):]
    assert json.loads(payload)["error"]["type"] == "DivisionByZero"


def test_max_steps_cancels(tmp_path, capsys):
    path = write(tmp_path, program((Op.SET_LABEL, "T"), (Op.JUMP, "T")))
    assert run_cli([path, "--max-steps", "100"]) == EXIT_CANCELLED
    assert "ExecutionCancelled" in capsys.readouterr().err


def test_listing(tmp_path, capsys):
    path = write(tmp_path, program((Op.PUSH, 5), Op.PRINT_INT))
    assert run_cli([path, "--listing"]) == 0
    assert capsys.readouterr().out.splitlines() == ["0000     push 5", "0001     printi", "0002     end"]


def test_tokens(tmp_path, capsys):
    path = write(tmp_path, "x  \t\n")
    assert run_cli([path, "--tokens"]) == 0
    assert capsys.readouterr().out.strip() == "[Space][Space][Tab][LF]"


def test_listing_parse_error(tmp_path, capsys):
    path = write(tmp_path, "\t\t")
    assert run_cli([path, "--listing"]) == 1
    assert "ParseError" in capsys.readouterr().err


def test_extension_flag(tmp_path, capsys):
    path = write(tmp_path, program((Op.PUSH, 1), Op.PRINT_INT))
    assert run_cli([path, "--ext", str(PROFILE_EXT)]) == 0
    captured = capsys.readouterr()
    assert captured.out == "1"
    assert "profile: 3 instructions" in captured.err


def test_bad_extension(tmp_path, capsys):
    path = write(tmp_path, program())
    assert run_cli([path, "--ext", str(tmp_path / "missing.py")]) == 1
    assert "ExtensionError" in capsys.readouterr().err
