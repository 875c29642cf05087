from __future__ import annotations
import json
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from hooks import HookRegistry, StepContext, TraceObserver
from lexer import WSError
from parser import (
    ADD,
    CALL,
    DIV,
    DROP,
    DUP,
    EXIT,
    GETC,
    GETN,
    JMP,
    JN,
    JZ,
    LABEL,
    LOAD,
    MOD,
    MUL,
    PUSH,
    PUTC,
    PUTN,
    RET,
    STORE,
    SUB,
    SWAP,
    Instruction,
    Program,
    SourceLocation,
)


DEFAULT_HISTORY = 16
SNAPSHOT_LIMIT = 16

# Operand stack depth each kind needs before it runs.
MIN_DEPTH: Dict[str, int] = {
    PUSH: 0,
    DUP: 1,
    SWAP: 2,
    DROP: 1,
    ADD: 2,
    SUB: 2,
    MUL: 2,
    DIV: 2,
    MOD: 2,
    STORE: 2,
    LOAD: 1,
    LABEL: 0,
    CALL: 0,
    JMP: 0,
    JZ: 1,
    JN: 1,
    RET: 0,
    EXIT: 0,
    PUTC: 1,
    PUTN: 1,
    GETC: 1,
    GETN: 1,
}

_NUMBER_RE = re.compile(rb"[+-]?[0-9]+")


class WSRuntimeError(WSError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
        pc: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.pc = pc
        self.step_index: Optional[int] = None
        # Set when closing the trace observer also failed during this error.
        self.observer_error: Optional[Exception] = None


class HaltSignal(Exception):
    pass


@dataclass
class Heap:
    cells: Dict[int, int] = field(default_factory=dict)

    def store(self, address: int, value: int) -> None:
        self.cells[address] = value

    def load(self, address: int) -> int:
        try:
            return self.cells[address]
        except KeyError:
            raise WSRuntimeError(f"Heap address {address} was never written", rule=LOAD) from None

    def has(self, address: int) -> bool:
        return address in self.cells

    def snapshot(self, limit: int = SNAPSHOT_LIMIT) -> Dict[int, int]:
        return {k: self.cells[k] for k in sorted(self.cells)[:limit]}


@dataclass
class LabelTable:
    targets: Dict[int, int] = field(default_factory=dict)

    @classmethod
    def build(cls, program: Program) -> "LabelTable":
        table = cls()
        for index, instruction in enumerate(program.instructions):
            if instruction.kind == LABEL:
                # A later definition overwrites an earlier one.
                table.targets[instruction.operand] = index
        return table

    def resolve(self, label: int, rule: str) -> int:
        try:
            return self.targets[label]
        except KeyError:
            raise WSRuntimeError(f"Undefined label {label}", rule=rule) from None

    def __contains__(self, label: int) -> bool:
        return label in self.targets


@dataclass
class StateEntry:
    step_index: int
    pc: int
    instruction: Instruction
    stack_snapshot: Optional[List[int]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0

    def record(self, *, pc: int, instruction: Instruction, stack: List[int]) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_state_index,
            pc=pc,
            instruction=instruction,
            stack_snapshot=stack[-SNAPSHOT_LIMIT:] if self.verbose else None,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


def _read_stdin_byte() -> bytes:
    return sys.stdin.buffer.read(1)


def _write_stdout(data: bytes) -> None:
    out = sys.stdout.buffer
    out.write(data)
    out.flush()


class Interpreter:
    def __init__(
        self,
        program: Program,
        *,
        verbose: bool = False,
        hooks: Optional[HookRegistry] = None,
        observer: Optional[TraceObserver] = None,
        input_provider: Optional[Callable[[], bytes]] = None,
        output_sink: Optional[Callable[[bytes], None]] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.program = program
        self.instructions: List[Instruction] = program.instructions
        self.verbose = verbose
        self.hooks = hooks if hooks is not None else HookRegistry()
        self.observer = observer
        self.input_provider = input_provider or _read_stdin_byte
        self.output_sink = output_sink or _write_stdout

        self.labels = LabelTable.build(program)
        self.stack: List[int] = []
        self.heap = Heap()
        self.call_stack: List[int] = []
        self.pc = 0
        self.logger = StateLogger(verbose=verbose, history=history)

        self.handlers: Dict[str, Callable[[Instruction], Optional[int]]] = {
            PUSH: self._push,
            DUP: self._dup,
            SWAP: self._swap,
            DROP: self._drop,
            ADD: lambda ins: self._binary(lambda a, b: a + b),
            SUB: lambda ins: self._binary(lambda a, b: a - b),
            MUL: lambda ins: self._binary(lambda a, b: a * b),
            DIV: lambda ins: self._binary(self._safe_div),
            MOD: lambda ins: self._binary(self._safe_mod),
            STORE: self._store,
            LOAD: self._load,
            LABEL: self._label,
            CALL: self._call,
            JMP: self._jump,
            JZ: self._jump_if_zero,
            JN: self._jump_if_negative,
            RET: self._return,
            EXIT: self._exit,
            PUTC: self._put_char,
            PUTN: self._put_number,
            GETC: self._get_char,
            GETN: self._get_number,
        }

    @property
    def steps(self) -> int:
        return self.logger.next_state_index

    def run(self) -> int:
        """Execute until EXIT. Returns the number of dispatched instructions."""
        self._emit_event("program_start", self, self.program)
        failure: Optional[WSRuntimeError] = None
        try:
            self._execute()
        except HaltSignal:
            self._emit_event("program_end", self, self.steps)
        except WSRuntimeError as error:
            failure = error
            self._annotate(error)
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            # Convert unexpected Python-level exceptions into WSRuntimeError
            # so the CLI can format them like any other fault.
            failure = WSRuntimeError(f"Internal interpreter error: {exc}", rule="internal")
            self._annotate(failure)
            self._emit_event("on_error", self, failure)
            raise failure from exc
        finally:
            self._close_observer(failure)
        return self.steps

    def _close_observer(self, failure: Optional[WSRuntimeError]) -> None:
        if self.observer is None:
            return
        try:
            self.observer.close()
        except Exception as exc:
            if failure is None:
                raise
            # The program's own error stays the one reported.
            failure.observer_error = exc

    def _notify_observer(self, ctx: StepContext) -> None:
        try:
            self.observer.instruction_executed(ctx)
        except WSRuntimeError:
            raise
        except Exception as exc:
            raise WSRuntimeError(f"Trace observer failed: {exc}", rule="OBSERVER") from exc

    def _execute(self) -> None:
        instructions = self.instructions
        count = len(instructions)
        handlers = self.handlers
        record = self.logger.record
        emit_event = self._emit_event
        notify = self.hooks.has("before_instruction")
        observe = self.observer is not None
        notify_observer = self._notify_observer
        stack = self.stack

        while True:
            pc = self.pc
            if not 0 <= pc < count:
                raise WSRuntimeError(
                    f"Program counter {pc} is outside the program ({count} instructions); missing end of program?",
                    rule="FETCH",
                    pc=pc,
                )
            instruction = instructions[pc]
            entry = record(pc=pc, instruction=instruction, stack=stack)
            if notify or observe:
                ctx = StepContext(entry.step_index, pc, instruction)
                if observe:
                    notify_observer(ctx)
                if notify:
                    emit_event("before_instruction", self, ctx)
            kind = instruction.kind
            need = MIN_DEPTH[kind]
            if len(stack) < need:
                raise WSRuntimeError(
                    f"Stack underflow: {kind} needs {need} value(s) but the stack holds {len(stack)}",
                    rule=kind,
                )
            target = handlers[kind](instruction)
            self.pc = pc + 1 if target is None else target

    def _annotate(self, error: WSRuntimeError) -> None:
        if error.pc is None:
            error.pc = self.pc
        if 0 <= error.pc < len(self.instructions):
            instruction = self.instructions[error.pc]
            if error.location is None:
                error.location = instruction.location
            if error.rule is None:
                error.rule = instruction.kind
        last = self.logger.last
        if last is not None:
            error.step_index = last.step_index

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hooks.emit(event, *args, **kwargs)
        except (WSRuntimeError, HaltSignal):
            raise
        except Exception as exc:
            raise WSRuntimeError(f"Hook '{event}' failed: {exc}", rule="HOOK") from exc

    # Stack

    def _push(self, instruction: Instruction) -> None:
        self.stack.append(instruction.operand)

    def _dup(self, _: Instruction) -> None:
        self.stack.append(self.stack[-1])

    def _swap(self, _: Instruction) -> None:
        stack = self.stack
        stack[-1], stack[-2] = stack[-2], stack[-1]

    def _drop(self, _: Instruction) -> None:
        self.stack.pop()

    # Arithmetic

    def _binary(self, op: Callable[[int, int], int]) -> None:
        # Second-from-top is the left operand.
        stack = self.stack
        stack[-2:] = [op(stack[-2], stack[-1])]

    def _safe_div(self, a: int, b: int) -> int:
        if b == 0:
            raise WSRuntimeError("Division by zero", rule=DIV)
        return a // b

    def _safe_mod(self, a: int, b: int) -> int:
        if b == 0:
            raise WSRuntimeError("Modulo by zero", rule=MOD)
        # Result takes the sign of the divisor.
        return a % b

    # Heap

    def _store(self, _: Instruction) -> None:
        stack = self.stack
        self.heap.store(stack[-2], stack[-1])
        del stack[-2:]

    def _load(self, _: Instruction) -> None:
        self.stack[-1] = self.heap.load(self.stack[-1])

    # Flow

    def _label(self, _: Instruction) -> None:
        return None

    def _call(self, instruction: Instruction) -> int:
        target = self.labels.resolve(instruction.operand, CALL)
        self.call_stack.append(self.pc)
        return target

    def _jump(self, instruction: Instruction) -> int:
        return self.labels.resolve(instruction.operand, JMP)

    def _jump_if_zero(self, instruction: Instruction) -> Optional[int]:
        if self.stack.pop() == 0:
            return self.labels.resolve(instruction.operand, JZ)
        return None

    def _jump_if_negative(self, instruction: Instruction) -> Optional[int]:
        if self.stack.pop() < 0:
            return self.labels.resolve(instruction.operand, JN)
        return None

    def _return(self, _: Instruction) -> int:
        if not self.call_stack:
            raise WSRuntimeError("Return with an empty call stack", rule=RET)
        # Resume after the CALL that pushed this frame.
        return self.call_stack.pop() + 1

    def _exit(self, _: Instruction) -> None:
        raise HaltSignal()

    # I/O

    def _put_char(self, _: Instruction) -> None:
        value = self.stack[-1]
        try:
            data = chr(value).encode("utf-8")
        except (ValueError, OverflowError, UnicodeEncodeError):
            raise WSRuntimeError(f"Cannot output {value} as a character", rule=PUTC) from None
        self.stack.pop()
        self.output_sink(data)

    def _put_number(self, _: Instruction) -> None:
        value = self.stack.pop()
        self.output_sink(str(value).encode("ascii"))

    def _get_char(self, _: Instruction) -> None:
        address = self.stack[-1]
        data = self.input_provider()
        if not data:
            raise WSRuntimeError("Input exhausted while reading a character", rule=GETC)
        self.heap.store(address, data[0])
        self.stack.pop()

    def _get_number(self, _: Instruction) -> None:
        address = self.stack[-1]
        self.heap.store(address, self._read_number())
        self.stack.pop()

    def _read_number(self) -> int:
        buffer = bytearray()
        while True:
            data = self.input_provider()
            if not data:
                # A final line without a newline still counts.
                if not buffer:
                    raise WSRuntimeError("Input exhausted while reading a number", rule=GETN)
                break
            if data == b"\n":
                break
            buffer += data
        if buffer.endswith(b"\r"):
            del buffer[-1:]
        if _NUMBER_RE.fullmatch(buffer) is None:
            raise WSRuntimeError(f"Malformed number input {bytes(buffer)!r}", rule=GETN)
        return int(buffer.decode("ascii"))


@dataclass
class TracebackFrame:
    name: str
    pc: Optional[int]
    instruction: Optional[Instruction]
    location: Optional[SourceLocation]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: WSRuntimeError) -> List[TracebackFrame]:
        instructions = self.interpreter.instructions
        positions = list(self.interpreter.call_stack) + [error.pc]
        frames: List[TracebackFrame] = []
        name = "<top-level>"
        for pc in positions:
            instruction = instructions[pc] if pc is not None and 0 <= pc < len(instructions) else None
            frames.append(
                TracebackFrame(
                    name=name,
                    pc=pc,
                    instruction=instruction,
                    location=instruction.location if instruction else None,
                )
            )
            if instruction is not None and instruction.kind == CALL:
                name = f"label {instruction.operand}"
        return frames

    def format_text(self, error: WSRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.instruction is not None:
                lines.append(f"    #{frame.pc} {frame.instruction}")
            elif frame.pc is not None:
                lines.append(f"    #{frame.pc} <no instruction>")
        history = self.interpreter.logger.entries
        if history and verbose:
            lines.append("  Recent instructions:")
            for entry in history:
                lines.append(f"    step {entry.step_index}: #{entry.pc} {entry.instruction}  stack={entry.stack_snapshot}")
        elif history:
            recent = ", ".join(f"#{entry.pc} {entry.instruction}" for entry in history)
            lines.append(f"  Recent instructions: {recent}")
        if verbose:
            lines.append(f"  Stack (top last): {self.interpreter.stack[-SNAPSHOT_LIMIT:]}")
            lines.append(f"  Heap: {self.interpreter.heap.snapshot()}")
        if error.observer_error is not None:
            lines.append(f"  Closing the trace observer also failed: {error.observer_error}")
        rule = error.rule or "runtime"
        step =f", step {error.step_index}" if error.step_index is not None else ""
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule}{step})")
        return "\n".join(lines)

    def to_json(self, error: WSRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "pc": frame.pc}
            if frame.instruction is not None:
                entry["instruction"] = frame.instruction.to_dict()
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                }
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
            "stack": self.interpreter.stack[-SNAPSHOT_LIMIT:],
            "heap": {str(k): v for k, v in self.interpreter.heap.snapshot().items()},
        }
        return json.dumps(data, indent=2)
