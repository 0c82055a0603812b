from __future__ import annotations

from pathlib import Path

import pytest

from extensions import (
    ExtensionAPI,
    RuntimeServices,
    WSExtensionError,
    build_default_services,
    load_runtime_services,
    read_wsx,
)
from interpreter import ExecutionCancelled, Interpreter, MachineState, StackUnderflow, WSRuntimeError
from opcodes import Op
from ports import CollectingOutput, StringInput
from tests.helpers import program

PROFILE_EXT = Path(__file__).resolve().parent.parent / "ext" / "profile.py"


def make(source: str, services: RuntimeServices) -> Interpreter:
    return Interpreter(source=source, services=services, input_port=StringInput(""), output_sink=CollectingOutput())


def test_events_fire_in_order():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []
    ext.on_event("program_start", lambda interp, prog: seen.append(("start", len(prog))))
    ext.on_event("on_output", lambda interp, text: seen.append(("out", text)))
    ext.on_event("program_end", lambda interp, state: seen.append(("end", state)))

    make(program((Op.PUSH, 7), Op.PRINT_INT), services).run()
    assert seen == [("start", 3), ("out", "7"), ("end", MachineState.HALTED)]


def test_on_error_sees_the_fault():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    errors = []

    @ext.on_event("on_error")
    def _record(interp, error):
        errors.append(error)

    with pytest.raises(WSRuntimeError) as exc:
        make(program(Op.DISCARD), services).run()
    assert errors == [exc.value]


def test_event_priority():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    order = []
    ext.on_event("program_end", lambda interp, state: order.append("low"), priority=-1)
    ext.on_event("program_end", lambda interp, state: order.append("high"), priority=5)
    make(program(), services).run()
    assert order == ["high", "low"]


def test_unknown_event_rejected():
    ext = ExtensionAPI(services=build_default_services(), ext_name="test")
    with pytest.raises(WSExtensionError):
        ext.on_event("before_fetch", lambda *args: None)


def test_step_rules_run_every_n_steps():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []

    @ext.every_n_steps(2)
    def _sample(interp, ctx):
        seen.append((ctx.step_index, ctx.ip, ctx.rule))

    make(program((Op.PUSH, 1), (Op.PUSH, 2), Op.ADD), services).run()
    assert seen == [(2, 1, "push"), (4, 3, "end")]


def test_step_rule_can_cancel():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    @ext.every_n_steps(10)
    def _budget(interp, ctx):
        raise ExecutionCancelled(interp.steps)

    interp = make(program((Op.SET_LABEL, "S"), (Op.JUMP, "S")), services)
    with pytest.raises(ExecutionCancelled):
        interp.run()
    assert interp.state is MachineState.CANCELLED


def test_failing_hook_becomes_fault():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    @ext.every_n_steps(1)
    def _broken(interp, ctx):
        raise KeyError("boom")

    with pytest.raises(WSRuntimeError) as exc:
        make(program(), services).run()
    assert exc.value.rule == "EXT"


def test_failing_program_end_hook_faults_the_run():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    @ext.on_event("program_end")
    def _broken(interp, state):
        raise RuntimeError("boom")

    interp = make(program(), services)
    with pytest.raises(WSRuntimeError) as exc:
        interp.run()
    assert exc.value.rule == "EXT"
    assert interp.state is MachineState.FAULTED
    assert interp.fault is exc.value


def test_failing_error_hook_keeps_the_original_fault():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    @ext.on_event("on_error")
    def _broken(interp, error):
        raise RuntimeError("boom")

    interp = make(program(Op.DISCARD), services)
    with pytest.raises(StackUnderflow) as exc:
        interp.run()
    assert interp.fault is exc.value
    assert [e.rule for e in interp.hook_errors] == ["EXT"]
    assert "boom" in interp.hook_errors[0].message


def test_invalid_step_interval():
    ext = ExtensionAPI(services=build_default_services(), ext_name="test")
    with pytest.raises(WSExtensionError):
        ext.every_n_steps(0, lambda interp, ctx: None)


def test_profile_extension(capsys):
    services = load_runtime_services([str(PROFILE_EXT)])
    assert [m.name for m in services.metadata] == ["profile"]
    interp = make(program((Op.PUSH, 1), (Op.PUSH, 2), Op.ADD), services)
    interp.run()
    assert interp.profile_counts == {"push": 2, "add": 1, "end": 1}
    err = capsys.readouterr().err
    assert "profile: 4 instructions" in err


def test_wsx_pointer_file(tmp_path):
    pointer = tmp_path / "exts.wsx"
    pointer.write_text(f"# extensions\n{PROFILE_EXT}  # profiler\n\n", encoding="utf-8")
    assert read_wsx(str(pointer)) == [str(PROFILE_EXT)]
    services = load_runtime_services([str(pointer)])
    assert services.hook_registry.has_step_rules


def test_missing_extension(tmp_path):
    with pytest.raises(WSExtensionError, match="not found"):
        load_runtime_services([str(tmp_path / "nope.py")])


def test_extension_without_register(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n", encoding="utf-8")
    with pytest.raises(WSExtensionError, match="ws_lang_register"):
        load_runtime_services([str(path)])


def test_extension_api_version_mismatch(tmp_path):
    path = tmp_path / "future.py"
    path.write_text("WS_LANG_EXTENSION_API_VERSION = 99\ndef ws_lang_register(ext):\n    pass\n", encoding="utf-8")
    with pytest.raises(WSExtensionError, match="requires API 99"):
        load_runtime_services([str(path)])


def test_extension_listed_twice_loads_once(tmp_path):
    pointer = tmp_path / "exts.wsx"
    pointer.write_text(f"{PROFILE_EXT}\n", encoding="utf-8")
    services = load_runtime_services([str(PROFILE_EXT), str(pointer)])
    assert [m.name for m in services.metadata] == ["profile"]
    interp = make(program((Op.PUSH, 1)), services)
    interp.run()
    assert interp.profile_counts == {"push": 1, "end": 1}


def test_extension_without_metadata_is_named_after_its_file(tmp_path):
    path = tmp_path / "quiet.py"
    path.write_text("def ws_lang_register(ext):\n    pass\n", encoding="utf-8")
    services = load_runtime_services([str(path)])
    assert [m.name for m in services.metadata] == ["quiet"]
