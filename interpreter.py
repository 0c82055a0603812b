from __future__ import annotations
import json
import os
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from decoder import Instruction, Program, SourceLocation, decode_source, label_name
from extensions import RuntimeServices, StepContext, build_default_services
from lexer import WSError, WSParseError
from opcodes import Op
from ports import CollectingOutput, InputPort, OutputSink, StreamInput, StringInput, stdout_sink


DEFAULT_HISTORY = 1000


class MachineState(Enum):
    RUNNING = "running"
    HALTED = "halted"
    FAULTED = "faulted"
    CANCELLED = "cancelled"


class DuplicateLabel(WSParseError):
    def __init__(self, key: str, index: int, first_index: int) -> None:
        super().__init__(
            f"Label {label_name(key) or '<empty>'} at instruction {index} was already defined at instruction {first_index}"
        )
        self.key = key
        self.index = index
        self.first_index = first_index


class WSRuntimeError(WSError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        ip: Optional[int] = None,
        rule: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.ip = ip
        self.rule = rule
        self.location = location
        self.step_index: Optional[int] = None


class StackUnderflow(WSRuntimeError):
    pass


class DivisionByZero(WSRuntimeError):
    pass


class InvalidHeapAddress(WSRuntimeError):
    pass


class UninitializedHeapRead(WSRuntimeError):
    pass


class UndefinedLabel(WSRuntimeError):
    pass


class CallStackUnderflow(WSRuntimeError):
    pass


class UnexpectedEndOfInput(WSRuntimeError):
    pass


class InstructionPointerOutOfRange(WSRuntimeError):
    pass


class InvalidIntegerInput(WSRuntimeError):
    pass


class InvalidCharacterCode(WSRuntimeError):
    pass


class ExecutionCancelled(WSError):
    """Raised when the step budget runs out. Not a program fault."""

    def __init__(self, steps: int) -> None:
        super().__init__(f"Step budget of {steps} instructions exhausted")
        self.steps = steps


@dataclass
class Frame:
    name: str
    frame_id: str
    call_ip: Optional[int]
    return_ip: Optional[int]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    ip: Optional[int]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    stack_snapshot: Optional[List[int]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        ip: Optional[int],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        stack_snapshot: Optional[List[int]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            ip=ip,
            source_location=location,
            statement=statement,
            stack_snapshot=stack_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    @property
    def last_step_index(self) -> Optional[int]:
        return self.entries[-1].step_index if self.entries else None


def build_label_table(program: Program) -> Dict[str, int]:
    labels: Dict[str, int] = {}
    for index, instruction in enumerate(program.instructions):
        if instruction.kind is not Op.SET_LABEL:
            continue
        key = str(instruction.parameter)
        if key in labels:
            raise DuplicateLabel(key, index, labels[key])
        labels[key] = index
    return labels


Handler = Callable[[Instruction], Optional[int]]


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        program: Optional[Program] = None,
        services: Optional[RuntimeServices] = None,
        input_port: Optional[InputPort] = None,
        output_sink: Optional[OutputSink] = None,
        max_steps: Optional[int] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.source = source
        self.filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.verbose = verbose
        self.program = program
        self.services = services or build_default_services()
        self.hook_registry = self.services.hook_registry
        self.input_port = input_port or StreamInput()
        self.output_sink = output_sink or stdout_sink
        if max_steps is not None and max_steps < 0:
            raise ValueError("max_steps must be >= 0")
        self.max_steps = max_steps
        self.history = history

        self._dispatch: Dict[Op, Handler] = {
            Op.PUSH: self._push,
            Op.DUP: self._dup,
            Op.COPY: self._copy,
            Op.SWAP: self._swap,
            Op.DISCARD: self._discard,
            Op.SLIDE: self._slide,
            Op.ADD: self._arith,
            Op.SUB: self._arith,
            Op.MUL: self._arith,
            Op.DIV: self._arith,
            Op.MOD: self._arith,
            Op.STORE: self._store,
            Op.RETRIEVE: self._retrieve,
            Op.SET_LABEL: self._set_label,
            Op.CALL: self._call,
            Op.JUMP: self._jump,
            Op.JUMP_IF_ZERO: self._jump_if,
            Op.JUMP_IF_NEGATIVE: self._jump_if,
            Op.END_SUBROUTINE: self._end_subroutine,
            Op.END_PROGRAM: self._end_program,
            Op.PRINT_CHAR: self._print_char,
            Op.PRINT_INT: self._print_int,
            Op.READ_CHAR: self._read_char,
            Op.READ_INT: self._read_int,
        }
        missing = set(Op) - set(self._dispatch)
        if missing:
            raise TypeError(f"No handler for: {', '.join(sorted(op.value for op in missing))}")

        self._reset()

    def _reset(self) -> None:
        self.state = MachineState.RUNNING
        self.fault: Optional[WSRuntimeError] = None
        self.ip = 0
        self.steps = 0
        self.stack: List[int] = []
        self.heap: Dict[int, int] = {}
        self.labels: Dict[str, int] = {}
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.top_frame = self._new_frame("<top-level>", None, None)
        self.io_log: Deque[Dict[str, Any]] = deque(maxlen=self.history)
        self.hook_errors: List[WSRuntimeError] = []
        self.logger = StateLogger(verbose=self.verbose, history=self.history)
        self.logger.record(frame=None, ip=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})

    def parse(self) -> Program:
        return decode_source(self.source, self.filename)

    def load(self, program: Program) -> None:
        # Resolve labels before anything runs so DuplicateLabel is a load-time error.
        labels = build_label_table(program)
        self._reset()
        self.program = program
        self.labels = labels

    def run(self) -> MachineState:
        program = self.program if self.program is not None else self.parse()
        self.load(program)
        try:
            self._emit_event("program_start", self, program)
            self._execute(program)
            self._emit_event("program_end", self, self.state)
        except WSRuntimeError as error:
            self._record_fault(error)
            raise
        except ExecutionCancelled:
            self.state = MachineState.CANCELLED
            raise
        except Exception as exc:
            # Surface interpreter bugs as faults so callers can format them uniformly.
            wrapped = WSRuntimeError(f"Internal interpreter error: {exc}", ip=self.ip, rule="internal")
            self._record_fault(wrapped)
            raise wrapped from exc
        return self.state

    def _record_fault(self, error: WSRuntimeError) -> None:
        self.state = MachineState.FAULTED
        self.fault = error
        if error.step_index is None:
            error.step_index = self.logger.last_step_index
        try:
            self._emit_event("on_error", self, error)
        except WSError as hook_error:
            # The program's fault stays the reported error.
            self.hook_errors.append(
                hook_error
                if isinstance(hook_error, WSRuntimeError)
                else WSRuntimeError(str(hook_error), ip=self.ip, rule="EXT")
            )

    def _execute(self, program: Program) -> None:
        instructions = program.instructions
        n = len(instructions)
        dispatch = self._dispatch
        log_step = self._log_step
        max_steps = self.max_steps

        while self.state is MachineState.RUNNING:
            ip = self.ip
            if ip < 0 or ip >= n:
                raise InstructionPointerOutOfRange(
                    f"Instruction pointer {ip} is outside the program (0..{n - 1})"
                    if n else "Program has no instructions",
                    ip=ip,
                )
            if max_steps is not None and self.steps >= max_steps:
                raise ExecutionCancelled(self.steps)
            instruction = instructions[ip]
            log_step(instruction)
            self.steps += 1
            try:
                target = dispatch[instruction.kind](instruction)
            except WSRuntimeError as error:
                if error.ip is None:
                    error.ip = ip
                    error.rule = instruction.mnemonic
                    error.location = instruction.location
                raise
            if self.state is MachineState.RUNNING:
                self.ip = ip + 1 if target is None else target

    # ---- stack ----

    def _require(self, count: int, instruction: Instruction) -> None:
        if len(self.stack) < count:
            raise StackUnderflow(
                f"'{instruction.mnemonic}' needs {count} stack item{'s' if count != 1 else ''}, found {len(self.stack)}"
            )

    def _pop(self, instruction: Instruction) -> int:
        self._require(1, instruction)
        return self.stack.pop()

    def _push(self, instruction: Instruction) -> None:
        self.stack.append(int(instruction.parameter))  # type: ignore[arg-type]

    def _dup(self, instruction: Instruction) -> None:
        self._require(1, instruction)
        self.stack.append(self.stack[-1])

    def _copy(self, instruction: Instruction) -> None:
        n = int(instruction.parameter)  # type: ignore[arg-type]
        if n < 0:
            raise StackUnderflow(f"'copy' needs a non-negative depth, got {n}")
        self._require(n + 1, instruction)
        self.stack.append(self.stack[-1 - n])

    def _swap(self, instruction: Instruction) -> None:
        self._require(2, instruction)
        stack = self.stack
        stack[-1], stack[-2] = stack[-2], stack[-1]

    def _discard(self, instruction: Instruction) -> None:
        self._pop(instruction)

    def _slide(self, instruction: Instruction) -> None:
        n = int(instruction.parameter)  # type: ignore[arg-type]
        if n < 0:
            raise StackUnderflow(f"'slide' needs a non-negative count, got {n}")
        self._require(n + 1, instruction)
        top = self.stack.pop()
        if n:
            del self.stack[-n:]
        self.stack.append(top)

    # ---- arithmetic ----

    def _arith(self, instruction: Instruction) -> None:
        self._require(2, instruction)
        b = self.stack.pop()
        a = self.stack.pop()
        kind = instruction.kind
        if kind is Op.ADD:
            result = a + b
        elif kind is Op.SUB:
            result = a - b
        elif kind is Op.MUL:
            result = a * b
        else:
            if b == 0:
                raise DivisionByZero(f"'{instruction.mnemonic}' by zero ({a} {instruction.mnemonic} 0)")
            # Floor semantics: the quotient rounds toward negative infinity.
            result = a // b if kind is Op.DIV else a % b
        self.stack.append(result)

    # ---- heap ----

    def _heap_store(self, address: int, value: int) -> None:
        if address < 0:
            raise InvalidHeapAddress(f"Heap address {address} is negative")
        self.heap[address] = value

    def _store(self, instruction: Instruction) -> None:
        self._require(2, instruction)
        value = self.stack.pop()
        address = self.stack.pop()
        self._heap_store(address, value)

    def _retrieve(self, instruction: Instruction) -> None:
        address = self._pop(instruction)
        if address < 0:
            raise InvalidHeapAddress(f"Heap address {address} is negative")
        try:
            value = self.heap[address]
        except KeyError:
            raise UninitializedHeapRead(f"Heap address {address} was never written")
        self.stack.append(value)

    # ---- flow ----

    def _target(self, instruction: Instruction) -> int:
        key = str(instruction.parameter)
        try:
            return self.labels[key]
        except KeyError:
            raise UndefinedLabel(f"Label {label_name(key) or '<empty>'} is not defined")

    def _set_label(self, instruction: Instruction) -> None:
        return None

    def _call(self, instruction: Instruction) -> int:
        target = self._target(instruction)
        frame = self._new_frame(f"subroutine {label_name(str(instruction.parameter)) or '<empty>'}", self.ip, self.ip + 1)
        self.call_stack.append(frame)
        return target

    def _jump(self, instruction: Instruction) -> int:
        return self._target(instruction)

    def _jump_if(self, instruction: Instruction) -> Optional[int]:
        value = self._pop(instruction)
        taken = value == 0 if instruction.kind is Op.JUMP_IF_ZERO else value < 0
        # The label is only resolved when the branch is taken.
        return self._target(instruction) if taken else None

    def _end_subroutine(self, instruction: Instruction) -> int:
        if not self.call_stack:
            raise CallStackUnderflow("'ret' outside of any subroutine call")
        frame = self.call_stack.pop()
        # Returned frames never appear in a traceback again.
        self.logger.forget_frame(frame.frame_id)
        return frame.return_ip  # type: ignore[return-value]

    def _end_program(self, instruction: Instruction) -> None:
        self.state = MachineState.HALTED

    # ---- io ----

    def _write(self, text: str, value: int, event: str) -> None:
        self.output_sink(text)
        self.io_log.append({"event": event, "value": value})
        if self.hook_registry.has_handlers("on_output"):
            self._emit_event("on_output", self, text)

    def _print_char(self, instruction: Instruction) -> None:
        value = self._pop(instruction)
        # Surrogates are valid for chr() but cannot be encoded on output.
        if not 0 <= value <= 0x10FFFF or 0xD800 <= value <= 0xDFFF:
            raise InvalidCharacterCode(f"{value} is not a valid character code")
        text = chr(value)
        self._write(text, value, "PRINTC")

    def _print_int(self, instruction: Instruction) -> None:
        value = self._pop(instruction)
        self._write(str(value), value, "PRINTI")

    def _read_char(self, instruction: Instruction) -> None:
        address = self._pop(instruction)
        ch = self.input_port.read_char()
        if ch is None:
            raise UnexpectedEndOfInput("Input exhausted while reading a character")
        self.io_log.append({"event": "READC", "text": ch})
        self._heap_store(address, ord(ch))

    def _read_int(self, instruction: Instruction) -> None:
        address = self._pop(instruction)
        line = self.input_port.read_line()
        if line is None:
            raise UnexpectedEndOfInput("Input exhausted while reading a number")
        self.io_log.append({"event": "READI", "text": line})
        try:
            value = int(line.strip())
        except ValueError:
            raise InvalidIntegerInput(f"Cannot read {line!r} as an integer")
        self._heap_store(address, value)

    # ---- bookkeeping ----

    @property
    def current_frame(self) -> Frame:
        return self.call_stack[-1] if self.call_stack else self.top_frame

    def _new_frame(self, name: str, call_ip: Optional[int], return_ip: Optional[int]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_ip=call_ip, return_ip=return_ip)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (WSRuntimeError, ExecutionCancelled):
            raise
        except Exception as exc:
            raise WSRuntimeError(f"Extension hook '{event}' failed: {exc}", ip=self.ip, rule="EXT")

    def _log_step(self, instruction: Instruction) -> None:
        entry = self.logger.record(
            frame=self.current_frame,
            ip=self.ip,
            location=instruction.location,
            statement=instruction.render(),
            stack_snapshot=list(self.stack) if self.verbose else None,
            rewrite_record={"rule": instruction.mnemonic},
        )

        if not self.hook_registry.has_step_rules:
            return
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, ip=self.ip, rule=instruction.mnemonic, instruction=instruction),
            )
        except (WSRuntimeError, ExecutionCancelled):
            raise
        except Exception as exc:
            raise WSRuntimeError(
                f"Extension step rule failed: {exc}",
                ip=self.ip,
                rule="EXT",
                location=instruction.location,
            )


def run_source(source: str, *, input_text: str = "", max_steps: Optional[int] = None) -> str:
    """Run a program to completion and return everything it printed."""
    output = CollectingOutput()
    interpreter = Interpreter(
        source=source,
        input_port=StringInput(input_text),
        output_sink=output,
        max_steps=max_steps,
    )
    interpreter.run()
    return output.text


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in [self.interpreter.top_frame] + self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=entry.source_location if entry else None,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: WSRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            entry = frame.state_entry
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if entry is not None:
                if frame.statement:
                    lines.append(f"    {entry.ip:04d}  {frame.statement}")
                lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
                if verbose and entry.stack_snapshot is not None:
                    lines.append(f"    Stack: {entry.stack_snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: WSRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["ip"] = frame.state_entry.ip
                entry["statement"] = frame.state_entry.statement
                if frame.state_entry.stack_snapshot is not None:
                    entry["stack_snapshot"] = frame.state_entry.stack_snapshot
                if frame.state_entry.rewrite_record is not None:
                    entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "ip": error.ip,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
