from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from extensions import HookRegistry, RuntimeServices, StepContext
from lexer import BFError, Instruction, Lexer, SourceLocation, classify
from tape import Tape


# Cells either side of the pointer captured in verbose snapshots.
SNAPSHOT_RADIUS = 4
DEFAULT_HISTORY = 256

InputProvider = Callable[[], Optional[int]]
OutputSink = Callable[[int], None]


class BFRuntimeError(BFError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class BFInputError(BFRuntimeError):
    """Raised when an input instruction finds no byte to read."""


class BFStructureError(BFRuntimeError):
    """Raised for unbalanced loop brackets."""


class StepLimitExceeded(BFRuntimeError):
    """Raised when execution exceeds the configured step budget."""


def _stdin_byte() -> Optional[int]:
    data = sys.stdin.buffer.read(1)
    return data[0] if data else None


def _stdout_byte(byte: int) -> None:
    sys.stdout.buffer.write(bytes((byte,)))
    sys.stdout.buffer.flush()


@dataclass
class Ledger:
    """Append-only record of every valid instruction seen so far."""

    instructions: List[str] = field(default_factory=list)
    locations: List[Optional[SourceLocation]] = field(default_factory=list)
    cursor: int = -1

    def append_and_advance(self, ch: str, location: Optional[SourceLocation] = None) -> None:
        self.instructions.append(ch)
        self.locations.append(location)
        self.cursor += 1

    def at(self, position: int) -> str:
        return self.instructions[position]

    def location_at(self, position: int) -> Optional[SourceLocation]:
        if 0 <= position < len(self.locations):
            return self.locations[position]
        return None

    def __len__(self) -> int:
        return len(self.instructions)


@dataclass
class LoopController:
    starts: List[int] = field(default_factory=list)
    skip_depth: int = 0
    # Ledger index of the loop-start that put the engine into skip mode.
    skip_origin: Optional[int] = None

    @property
    def skipping(self) -> bool:
        return self.skip_depth > 0

    def push(self, position: int) -> None:
        self.starts.append(position)

    def top(self, location: Optional[SourceLocation]) -> int:
        if not self.starts:
            raise BFStructureError("']' without matching '['", location=location, rule="]")
        return self.starts[-1]

    def pop(self, location: Optional[SourceLocation]) -> int:
        if not self.starts:
            raise BFStructureError("']' without matching '['", location=location, rule="]")
        return self.starts.pop()

    def enter_skip(self, position: int) -> None:
        if self.skip_depth == 0:
            self.skip_origin = position
        self.skip_depth += 1

    def leave_skip(self) -> None:
        self.skip_depth -= 1
        if self.skip_depth == 0:
            self.skip_origin = None


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    instruction: str
    ledger_index: int
    pointer: int
    replay: bool
    source_location: Optional[SourceLocation]
    tape_snapshot: Optional[Dict[int, int]]
    rewrite_record: Dict[str, Any]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        instruction: str,
        ledger_index: int,
        pointer: int,
        replay: bool,
        location: Optional[SourceLocation],
        tape_snapshot: Optional[Dict[int, int]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            instruction=instruction,
            ledger_index=ledger_index,
            pointer=pointer,
            replay=replay,
            source_location=location,
            tape_snapshot=tape_snapshot,
            rewrite_record={"from_state_id": self.last_state_id, "to_state_id": state_id},
        )
        self.entries.append(entry)
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        *,
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[InputProvider] = None,
        output_sink: Optional[OutputSink] = None,
        max_steps: Optional[int] = None,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or _stdin_byte
        self.output_sink = output_sink or _stdout_byte
        self.max_steps = max_steps

        self.lexer = Lexer(filename)
        self.tape = Tape()
        self.pointer = 0
        self.ledger = Ledger()
        self.loops = LoopController()
        self.logger = StateLogger(verbose=verbose, history=history)

    @property
    def steps(self) -> int:
        return self.logger.next_state_index

    def run(self, source: Iterable[str]) -> None:
        """Stream ``source`` through the engine until it is exhausted."""
        self.start()
        try:
            for chunk in source:
                self.feed(chunk)
            self.finish()
        except BFRuntimeError as error:
            self.fail(error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions (RecursionError on
            # absurd nesting, faulty providers) into runtime errors so the
            # CLI can format them as tracebacks.
            wrapped = BFRuntimeError(
                f"Internal interpreter error: {exc}",
                location=self._current_location(),
                rule="internal",
            )
            if self.logger.last is not None:
                wrapped.step_index = self.logger.last.step_index
            raise wrapped from exc
        else:
            self.end()

    def start(self) -> None:
        self._emit_event("program_start", self)

    def end(self) -> None:
        self._emit_event("program_end", self)

    def fail(self, error: BFRuntimeError) -> None:
        """Stamp ``error`` with the last step and notify ``on_error`` hooks."""
        if error.step_index is None and self.logger.last is not None:
            error.step_index = self.logger.last.step_index
        self._emit_event("on_error", self, error)

    def feed(self, chunk: str) -> None:
        for ch, location in self.lexer.scan(chunk):
            self.dispatch(ch, replay=False, location=location)

    def finish(self) -> None:
        loops = self.loops
        if loops.skipping:
            origin = loops.skip_origin if loops.skip_origin is not None else -1
            raise BFStructureError(
                "Unterminated loop: source ended while skipping a loop body",
                location=self.ledger.location_at(origin),
                rule="[",
            )
        if loops.starts:
            raise BFStructureError(
                "Unterminated loop: source ended inside a loop body",
                location=self.ledger.location_at(loops.starts[-1]),
                rule="[",
            )

    def dispatch(self, ch: str, *, replay: bool, location: Optional[SourceLocation] = None) -> None:
        instruction = classify(ch)
        if instruction is None:
            return
        if not replay:
            self.ledger.append_and_advance(ch, location)

        loops = self.loops
        if loops.skipping:
            if instruction is Instruction.LOOP_START:
                loops.enter_skip(self.ledger.cursor)
            elif instruction is Instruction.LOOP_END:
                loops.leave_skip()
            return

        self._log_step(instruction, replay)
        self._emit_event("before_instruction", self, instruction, replay)
        if instruction is Instruction.INCREMENT:
            self.tape.modify(self.pointer, 1)
        elif instruction is Instruction.DECREMENT:
            self.tape.modify(self.pointer, -1)
        elif instruction is Instruction.MOVE_RIGHT:
            self.pointer += 1
        elif instruction is Instruction.MOVE_LEFT:
            self.pointer -= 1
        elif instruction is Instruction.OUTPUT:
            self._output()
        elif instruction is Instruction.INPUT:
            self._input()
        elif instruction is Instruction.LOOP_START:
            self._loop_start()
        elif instruction is Instruction.LOOP_END:
            self._loop_end()
        self._emit_event("after_instruction", self, instruction, replay)

    def _output(self) -> None:
        byte = self.tape.get(self.pointer) % 256
        self.output_sink(byte)
        self._emit_event("on_output", self, byte)

    def _input(self) -> None:
        byte = self.input_provider()
        if byte is None:
            raise BFInputError("Input exhausted", location=self._current_location(), rule=",")
        self.tape.set(self.pointer, byte)
        self._emit_event("on_input", self, byte)

    def _loop_start(self) -> None:
        if self.tape.get(self.pointer) != 0:
            self.loops.push(self.ledger.cursor)
        else:
            self.loops.enter_skip(self.ledger.cursor)

    def _loop_end(self) -> None:
        tape = self.tape
        ledger = self.ledger
        loops = self.loops
        location = self._current_location()
        if tape.get(self.pointer) == 0:
            loops.pop(location)
            return
        while tape.get(self.pointer) != 0:
            current = ledger.cursor
            ledger.cursor = loops.top(location) + 1
            while ledger.cursor < current:
                self.dispatch(ledger.at(ledger.cursor), replay=True)
                ledger.cursor += 1
            ledger.cursor = current
            if tape.get(self.pointer) != 0:
                # Jumping back is a step of its own, so empty bodies still
                # consume the step budget.
                self._log_step(Instruction.LOOP_END, True)
        loops.pop(location)

    def _current_location(self) -> Optional[SourceLocation]:
        return self.ledger.location_at(self.ledger.cursor)

    def tape_snapshot(self, radius: int = SNAPSHOT_RADIUS) -> Dict[int, int]:
        low, high = self.pointer - radius, self.pointer + radius
        cells = self.tape.window(low, high).tolist()
        return {low + offset: int(value) for offset, value in enumerate(cells)}

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=self._current_location(),
                rule="EXT",
            ) from exc

    def _log_step(self, instruction: Instruction, replay: bool) -> None:
        if self.max_steps is not None and self.logger.next_state_index >= self.max_steps:
            raise StepLimitExceeded(
                f"Step limit of {self.max_steps} exceeded",
                location=self._current_location(),
                rule=instruction.value,
            )
        entry = self.logger.record(
            instruction=instruction.value,
            ledger_index=self.ledger.cursor,
            pointer=self.pointer,
            replay=replay,
            location=self._current_location(),
            tape_snapshot=self.tape_snapshot() if self.verbose else None,
        )

        try:
            self.hook_registry.after_step(
                self,
                StepContext(
                    step_index=entry.step_index,
                    instruction=entry.instruction,
                    ledger_index=entry.ledger_index,
                    pointer=entry.pointer,
                    replay=replay,
                ),
            )
        except BFRuntimeError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension step rule failed: {exc}",
                location=entry.source_location,
                rule="EXT",
            ) from exc


def run_program(
    program: str,
    *,
    input_data: bytes = b"",
    **options: Any,
) -> Tuple[bytes, Interpreter]:
    """Run ``program`` against in-memory input and collect the output bytes."""
    pending = iter(input_data)
    produced = bytearray()
    interpreter = Interpreter(
        input_provider=lambda: next(pending, None),
        output_sink=produced.append,
        **options,
    )
    interpreter.run(program.splitlines(keepends=True))
    return bytes(produced), interpreter


@dataclass
class TracebackFrame:
    name: str
    ledger_index: int
    location: Optional[SourceLocation]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        ledger = self.interpreter.ledger
        frames: List[TracebackFrame] = []
        for depth, start in enumerate(self.interpreter.loops.starts):
            frames.append(
                TracebackFrame(name=f"loop {depth}", ledger_index=start, location=ledger.location_at(start))
            )
        return frames

    def format_text(self, error: BFRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            lines.append(f"    '[' at ledger index {frame.ledger_index}")
        if error.location:
            lines.append(
                f"  File \"{error.location.file}\", line {error.location.line}, column {error.location.column}"
            )
        entry = self.interpreter.logger.last
        if entry:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.tape_snapshot is not None:
                snapshot = ", ".join(f"[{k}]={v}" for k, v in entry.tape_snapshot.items())
                lines.append(f"    Tape snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: BFRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "ledger_index": frame.ledger_index}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                }
            frames_json.append(entry)
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        last = self.interpreter.logger.last
        if last is not None:
            data["last_state"] = {
                "state_id": last.state_id,
                "step_index": last.step_index,
                "instruction": last.instruction,
                "ledger_index": last.ledger_index,
                "pointer": last.pointer,
                "replay": last.replay,
                "rewrite_record": last.rewrite_record,
            }
            if last.tape_snapshot is not None:
                data["last_state"]["tape_snapshot"] = {str(k): v for k, v in last.tape_snapshot.items()}
        return json.dumps(data, indent=2)
