from __future__ import annotations
import json
import operator
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from numpy.typing import NDArray

from lexer import RegAsmError
from extensions import HookRegistry, RuntimeServices, build_default_services
from parser import (
    INT64_MIN,
    MEMORY_SIZE,
    WORD_BITS,
    ArithOp,
    Comparator,
    Condition,
    Halt,
    Instruction,
    Jump,
    Logic,
    Operand,
    OperandKind,
    Operation,
    Program,
    Read,
    SourceLocation,
    Write,
)


class RuntimeFault(Enum):
    INVALID_MEMORY_ACCESS = "invalid memory access"
    DIVISION_BY_ZERO = "division by zero"
    INPUT_EXHAUSTED = "no input left to read"
    INTERNAL = "internal error"


class VMRuntimeError(RegAsmError):
    """Raised for execution faults.

    ``records`` holds the output produced before the fault so callers can
    show partial output ahead of the error.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: RuntimeFault = RuntimeFault.INTERNAL,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        self.rewrite_rule = rewrite_rule
        self.step_index: Optional[int] = None
        self.records: List[OutputRecord] = []

    @property
    def line(self) -> Optional[int]:
        return self.location.line if self.location else None

    def __str__(self) -> str:
        return f"[Execution error: line {self.line}] {self.message}."


@dataclass(frozen=True)
class OutputRecord:
    operand: Operand
    value: int
    # Address held by the register of a reference operand.
    address: Optional[int] = None
    line: Optional[int] = None

    def render(self) -> str:
        if self.operand.kind is OperandKind.CONSTANT:
            return f"$ {self.value}"
        if self.operand.kind is OperandKind.VARIABLE:
            return f"$ [ {self.operand.value} ] {self.value}"
        return f"$ [ {self.operand.value} -> {self.address} ] {self.value}"

    def __str__(self) -> str:
        return self.render()


_WORD = 1 << WORD_BITS


def wrap_int64(value: int) -> int:
    return ((value - INT64_MIN) % _WORD) + INT64_MIN


def truncate_div(a: int, b: int) -> int:
    # Python floors; machine division truncates toward zero.
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


ARITHMETIC: Dict[ArithOp, Callable[[int, int], int]] = {
    ArithOp.ADD: operator.add,
    ArithOp.SUB: operator.sub,
    ArithOp.MUL: operator.mul,
    ArithOp.DIV: truncate_div,
}

COMPARATORS: Dict[Comparator, Callable[[int, int], bool]] = {
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
    Comparator.GT: operator.gt,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.LE: operator.le,
}


class Memory:
    def __init__(self, size: int = MEMORY_SIZE) -> None:
        self.size = size
        self.cells: NDArray[np.int64] = np.zeros(size, dtype=np.int64)

    def __len__(self) -> int:
        return self.size

    def load(self, register: int) -> int:
        return int(self.cells[register])

    def store(self, register: int, value: int) -> None:
        self.cells[register] = wrap_int64(value)

    def address_at(self, register: int) -> int:
        """Return the address held in ``register``, checked against memory bounds."""
        address = int(self.cells[register])
        if address < 0 or address >= self.size:
            raise VMRuntimeError(
                f"invalid memory access: &{register} holds {address}",
                kind=RuntimeFault.INVALID_MEMORY_ACCESS,
            )
        return address

    def snapshot(self) -> Dict[str, int]:
        return {f"${int(i)}": int(self.cells[i]) for i in np.flatnonzero(self.cells)}


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    pc: Optional[int]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    memory_snapshot: Optional[Dict[str, int]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    """Per-step state log.

    Every entry is kept only in verbose mode; otherwise just the latest one
    survives, so long-running programs log in constant memory.
    """

    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self._last: Optional[StateEntry] = None
        self.next_state_index = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        pc: Optional[int],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        memory_snapshot: Optional[Dict[str, int]] = None,
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
            pc=pc,
            source_location=location,
            statement=statement,
            memory_snapshot=memory_snapshot,
            rewrite_record=rewrite,
        )
        if self.verbose:
            self.entries.append(entry)
        self._last = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self._last


class Interpreter:
    def __init__(
        self,
        program: Program,
        *,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        inputs: Iterable[int] = (),
        output_sink: Optional[Callable[[OutputRecord], None]] = None,
    ) -> None:
        self.program = program
        self.filename = program.filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.inputs: List[int] = list(inputs)
        self.output_sink = output_sink

        self.memory = Memory()
        self.pc = 0
        self.read_cursor = 0
        self.step_count = 0
        self.halted = False
        self.records: List[OutputRecord] = []
        # READ/WRITE replay log, kept in verbose mode only.
        self.io_log: List[Dict[str, Any]] = []
        self.logger = StateLogger(verbose=verbose)
        self.logger.record(pc=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})

    def run(self) -> List[OutputRecord]:
        try:
            self._emit_event("program_start", self, self.program)
            self._execute()
            self._emit_event("program_end", self, self.records)
        except VMRuntimeError as error:
            self._fail(error)
            raise
        except Exception as exc:
            # Surface Python-level failures as located VM errors.
            last = self.logger.last_entry
            wrapped = VMRuntimeError(
                f"Internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rewrite_rule="internal",
            )
            self._fail(wrapped)
            raise wrapped from exc
        return self.records

    def _fail(self, error: VMRuntimeError) -> None:
        error.records = list(self.records)
        last = self.logger.last_entry
        if last is not None:
            error.step_index = last.step_index
        self._emit_event("on_error", self, error)

    def _execute(self) -> None:
        instructions = self.program.instructions
        count = len(instructions)
        emit_event = self._emit_event
        while not self.halted and self.pc < count:
            instruction = instructions[self.pc]
            self._log_step(instruction)
            emit_event("before_instruction", self, instruction)
            try:
                self._execute_instruction(instruction)
            except VMRuntimeError as error:
                if error.location is None:
                    error.location = instruction.location
                if error.rewrite_rule is None:
                    error.rewrite_rule = instruction.rule
                raise
            emit_event("after_instruction", self, instruction)

    def _execute_instruction(self, instruction: Instruction) -> None:
        if isinstance(instruction, Operation):
            self._execute_operation(instruction)
        elif isinstance(instruction, Jump):
            self._execute_jump(instruction)
        elif isinstance(instruction, Write):
            self._execute_write(instruction)
        elif isinstance(instruction, Read):
            self._execute_read(instruction)
        elif isinstance(instruction, Halt):
            self.halted = True
        else:
            raise VMRuntimeError(f"Unknown instruction {type(instruction).__name__}")

    def _execute_operation(self, instruction: Operation) -> None:
        first = self._value(instruction.first)
        if instruction.op is None or instruction.second is None:
            result = first
        else:
            second = self._value(instruction.second)
            if instruction.op is ArithOp.DIV and second == 0:
                raise VMRuntimeError("division by zero", kind=RuntimeFault.DIVISION_BY_ZERO)
            result = ARITHMETIC[instruction.op](first, second)
        self._store(instruction.target, result)
        self.pc += 1

    def _execute_jump(self, instruction: Jump) -> None:
        if self._evaluate_condition(instruction.condition):
            self.pc = self.program.labels[instruction.target]
        else:
            self.pc += 1

    def _execute_write(self, instruction: Write) -> None:
        operand = instruction.value
        address: Optional[int] = None
        if operand.kind is OperandKind.REFERENCE:
            address = self.memory.address_at(operand.value)
        record = OutputRecord(
            operand=operand,
            value=self._value(operand),
            address=address,
            line=instruction.line,
        )
        self.records.append(record)
        if self.verbose:
            self.io_log.append({"event": "WRITE", "line": instruction.line, "value": record.value})
        if self.output_sink is not None:
            self.output_sink(record)
        self._emit_event("on_write", self, instruction, record)
        self.pc += 1

    def _execute_read(self, instruction: Read) -> None:
        if self.read_cursor < len(self.inputs):
            value = self.inputs[self.read_cursor]
            self._store(instruction.target, value)
            self.read_cursor += 1
            if self.verbose:
                self.io_log.append({"event": "READ", "line": instruction.line, "value": value})
            self._emit_event("on_read", self, instruction, value)
            self.pc += 1
            return
        if instruction.fallback is not None:
            self.pc = self.program.labels[instruction.fallback]
            return
        raise VMRuntimeError(
            f"no input left to read into {instruction.target}",
            kind=RuntimeFault.INPUT_EXHAUSTED,
        )

    def _evaluate_condition(self, condition: Optional[Condition]) -> bool:
        if condition is None:
            return True
        result = False
        # Left-to-right fold without precedence; every clause is resolved.
        for clause in condition.clauses:
            left = self._value(clause.left)
            right = self._value(clause.right)
            outcome = COMPARATORS[clause.comparator](left, right)
            if clause.logic is None:
                result = outcome
            elif clause.logic is Logic.AND:
                result = result and outcome
            else:
                result = result or outcome
        return result

    def _value(self, operand: Operand) -> int:
        if operand.kind is OperandKind.CONSTANT:
            return operand.value
        if operand.kind is OperandKind.VARIABLE:
            return self.memory.load(operand.value)
        return self.memory.load(self.memory.address_at(operand.value))

    def _store(self, target: Operand, value: int) -> None:
        if target.kind is OperandKind.VARIABLE:
            self.memory.store(target.value, value)
        elif target.kind is OperandKind.REFERENCE:
            self.memory.store(self.memory.address_at(target.value), value)
        else:
            raise VMRuntimeError(f"Cannot store into constant {target}")

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except VMRuntimeError:
            raise
        except Exception as exc:
            last = self.logger.last_entry
            raise VMRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=last.source_location if last else None,
                rewrite_rule="EXT",
            ) from exc

    def _log_step(self, instruction: Instruction) -> None:
        location = instruction.location
        snapshot = self.memory.snapshot() if self.verbose else None
        self.logger.record(
            pc=self.pc,
            location=location,
            statement=location.statement,
            memory_snapshot=snapshot,
            rewrite_record={"rule": instruction.rule},
        )
        self.step_count += 1


def execute(
    program: Program,
    inputs: Iterable[int] = (),
    *,
    verbose: bool = False,
    services: Optional[RuntimeServices] = None,
    output_sink: Optional[Callable[[OutputRecord], None]] = None,
) -> List[OutputRecord]:
    interpreter = Interpreter(program, verbose=verbose, services=services, inputs=inputs, output_sink=output_sink)
    return interpreter.run()


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _failing_entry(self, error: VMRuntimeError) -> Optional[StateEntry]:
        entries = self.interpreter.logger.entries
        if error.step_index is not None and 0 <= error.step_index < len(entries):
            return entries[error.step_index]
        return self.interpreter.logger.last_entry

    def format_text(self, error: VMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        entry = self._failing_entry(error)
        location = error.location or (entry.source_location if entry else None)
        if location:
            lines.append(f"  File \"{location.file}\", line {location.line}, in <program>")
            if location.statement:
                lines.append(f"    {location.statement}")
        else:
            lines.append("  <unknown location> in <program>")
        if entry:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.memory_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.memory_snapshot.items())
                lines.append(f"    Memory snapshot: {snapshot or '<all zero>'}")
        rule = error.rewrite_rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rewrite: {rule})")
        return "\n".join(lines)

    def to_json(self, error: VMRuntimeError) -> str:
        entry = self._failing_entry(error)
        frame: Dict[str, Any] = {"frame_index": 0, "name": "<program>"}
        location = error.location or (entry.source_location if entry else None)
        if location:
            frame["source_location"] = {
                "file": location.file,
                "line": location.line,
                "statement": location.statement,
            }
        if entry:
            frame["state_id"] = entry.state_id
            frame["step_index"] = entry.step_index
            frame["pc"] = entry.pc
            if entry.memory_snapshot is not None:
                frame["memory_snapshot"] = entry.memory_snapshot
            if entry.rewrite_record is not None:
                frame["rewrite_record"] = entry.rewrite_record
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind.name,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "output": [record.render() for record in error.records],
            "traceback": [frame],
        }
        return json.dumps(data, indent=2)
