from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from extensions import ExtensionHookError, HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import MeowError, MeowParseError
from parser import digits_of, parse_source


CAT_EMOJI = "\U0001F408"
ERR_EMOJI = "\U0001F47D"

# Number of executed steps kept for tracebacks.
DEFAULT_HISTORY = 64


@dataclass(frozen=True)
class Instruction:
    opcode: int
    name: str
    takes_operand: bool

    @property
    def size(self) -> int:
        return 2 if self.takes_operand else 1


# Positional: the opcode of an instruction is its index in this table.
INSTRUCTION_TABLE: Tuple[Instruction, ...] = tuple(
    Instruction(opcode=index, name=name, takes_operand=takes_operand)
    for index, (name, takes_operand) in enumerate(
        (
            ("RET", False),
            ("MEOW", False),
            ("PUSH", True),
            ("POP", False),
            ("LOAD", True),
            ("SAVE", True),
            ("ADD", False),
            ("SUB", False),
            ("JMP", True),
            ("JE", True),
            ("NOP", False),
        )
    )
)

OPCODES: Dict[str, int] = {instruction.name: instruction.opcode for instruction in INSTRUCTION_TABLE}


def lookup_instruction(opcode: int) -> Instruction:
    """Return the descriptor for ``opcode``; unknown opcodes degrade to NOP."""
    if 0 <= opcode < len(INSTRUCTION_TABLE):
        return INSTRUCTION_TABLE[opcode]
    return INSTRUCTION_TABLE[-1]


def format_value(value: Optional[int]) -> str:
    return "None" if value is None else digits_of(value)


def format_cells(cells: List[int]) -> str:
    return "[" + ", ".join(digits_of(value) for value in cells) + "]"


def _json_value(value: Optional[int]) -> Any:
    # json renders ints through str(), which is capped; oversized cells become strings.
    if value is None:
        return None
    text = digits_of(value)
    return value if len(text) <= 4000 else text


@dataclass(frozen=True, repr=False)
class RuntimeEvent:
    ip: Optional[int]
    opcode: Optional[int]
    operand: Optional[int]
    opname: Optional[str]
    cells: List[int]

    @property
    def is_final(self) -> bool:
        return self.ip is None

    def __repr__(self) -> str:
        return (
            f"RuntimeEvent(ip={format_value(self.ip)}, opcode={format_value(self.opcode)}, "
            f"operand={format_value(self.operand)}, opname={self.opname!r}, cells={format_cells(self.cells)})"
        )


@dataclass(frozen=True)
class Hooks:
    on_error: Optional[Callable[[str], None]] = None
    on_pause: Optional[Callable[[], None]] = None
    on_meow: Optional[Callable[[], None]] = None
    on_step: Optional[Callable[[RuntimeEvent], None]] = None


class MeowRuntimeError(MeowError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        ip: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.rule = rule
        self.ip = ip
        self.step_index: Optional[int] = None
        # Set when an on_error extension handler itself failed.
        self.handler_error: Optional[MeowRuntimeError] = None


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    ip: int
    opcode: int
    opname: str
    cells_snapshot: Optional[List[int]]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0

    def record(self, *, ip: int, opcode: int, opname: str, cells: List[int]) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            ip=ip,
            opcode=opcode,
            opname=opname,
            cells_snapshot=list(cells) if self.verbose else None,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    """Executes a Cell List in place.

    The list is both program and operand stack: PUSH, POP and the arithmetic
    instructions work on its tail while ``ip`` walks it from the front. The
    run ends when ``ip`` moves past the last cell.
    """

    def __init__(
        self,
        cells: List[int],
        *,
        hooks: Optional[Hooks] = None,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        verbose: bool = False,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.cells = cells
        self.hooks = hooks or Hooks()
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text))
        self.verbose = verbose
        self.ip = 0
        self.logger = StateLogger(verbose=verbose, history=history)
        self._actions: Dict[str, Callable[[int, Optional[int]], int]] = {
            "RET": self._op_ret,
            "MEOW": self._op_meow,
            "PUSH": self._op_push,
            "POP": self._op_pop,
            "LOAD": self._op_load,
            "SAVE": self._op_save,
            "ADD": self._op_add,
            "SUB": self._op_sub,
            "JMP": self._op_jmp,
            "JE": self._op_je,
            "NOP": self._op_nop,
        }

    def run(self) -> List[int]:
        self._emit_event("program_start", self)
        try:
            self._execute()
        except MeowRuntimeError as error:
            self._fail(error)
            raise
        except Exception as exc:
            # Convert unexpected Python-level exceptions so callers only ever
            # see MeowRuntimeError from a run.
            wrapped = MeowRuntimeError(f"Internal interpreter error: {exc}", rule="internal", ip=self.ip)
            self._fail(wrapped)
            raise wrapped from exc
        self._emit_event("program_end", self)
        return self.cells

    def _fail(self, error: MeowRuntimeError) -> None:
        if self.logger.last is not None:
            error.step_index = self.logger.last.step_index
        try:
            self._emit_event("on_error", self, error)
        except MeowRuntimeError as handler_error:
            # The original fault stays the one raised.
            error.handler_error = handler_error

    def _execute(self) -> None:
        cells = self.cells
        actions = self._actions
        on_step = self.hooks.on_step
        while self.ip < len(cells):
            ip = self.ip
            opcode = cells[ip]
            instruction = lookup_instruction(opcode)
            operand = self._resolve_operand(instruction, ip)
            self._log_step(instruction, ip, opcode)
            if on_step is not None:
                on_step(RuntimeEvent(ip=ip, opcode=opcode, operand=operand, opname=instruction.name, cells=cells))
            self.ip = actions[instruction.name](ip, operand)
        if on_step is not None:
            # Reports the state of the list after the last instruction.
            on_step(RuntimeEvent(ip=None, opcode=None, operand=None, opname=None, cells=cells))

    def _resolve_operand(self, instruction: Instruction, ip: int) -> Optional[int]:
        if not instruction.takes_operand:
            return None
        if ip + 1 >= len(self.cells):
            raise MeowRuntimeError(
                f"operand not found for {instruction.name} at ip {ip}", rule=instruction.name, ip=ip
            )
        return self.cells[ip + 1]

    # Helpers
    def _require_stack(self, depth: int, rule: str, ip: int) -> None:
        if len(self.cells) < depth:
            raise MeowRuntimeError(
                f"stack underflow: {rule} needs {depth} cells, list holds {len(self.cells)}", rule=rule, ip=ip
            )

    def _check_index(self, index: int, rule: str, ip: int) -> int:
        if not 0 <= index < len(self.cells):
            raise MeowRuntimeError(
                f"{rule} index {format_value(index)} out of range [0, {len(self.cells)})", rule=rule, ip=ip
            )
        return index

    # Instructions. Each returns the next instruction pointer.
    def _op_ret(self, ip: int, _: Optional[int]) -> int:
        if self.hooks.on_pause is not None:
            self.hooks.on_pause()
        else:
            self.output_sink("")
        return ip + 1

    def _op_meow(self, ip: int, _: Optional[int]) -> int:
        self._require_stack(1, "MEOW", ip)
        on_meow = self.hooks.on_meow
        for _repeat in range(self.cells[-1]):
            if on_meow is not None:
                on_meow()
            else:
                self.output_sink(CAT_EMOJI)
        return ip + 1

    def _op_push(self, ip: int, operand: Optional[int]) -> int:
        self.cells.append(operand)
        return ip + 2

    def _op_pop(self, ip: int, _: Optional[int]) -> int:
        self._require_stack(1, "POP", ip)
        self.cells.pop()
        return ip + 1

    def _op_load(self, ip: int, operand: Optional[int]) -> int:
        index = self._check_index(operand, "LOAD", ip)
        self.cells.append(self.cells[index])
        return ip + 2

    def _op_save(self, ip: int, operand: Optional[int]) -> int:
        index = self._check_index(operand, "SAVE", ip)
        self._require_stack(1, "SAVE", ip)
        self.cells[index] = self.cells[-1]
        return ip + 2

    def _op_add(self, ip: int, _: Optional[int]) -> int:
        a, b = self._pop_pair("ADD", ip)
        self.cells.append(a + b)
        return ip + 1

    def _op_sub(self, ip: int, _: Optional[int]) -> int:
        a, b = self._pop_pair("SUB", ip)
        self.cells.append(max(a - b, 0))
        return ip + 1

    def _op_jmp(self, ip: int, operand: Optional[int]) -> int:
        return self._check_index(operand, "JMP", ip)

    def _op_je(self, ip: int, operand: Optional[int]) -> int:
        target = self._check_index(operand, "JE", ip)
        self._require_stack(1, "JE", ip)
        if self.cells.pop() == 0:
            return target
        return ip + 2

    def _op_nop(self, ip: int, _: Optional[int]) -> int:
        return ip + 1

    def _pop_pair(self, rule: str, ip: int) -> Tuple[int, int]:
        self._require_stack(2, rule, ip)
        b = self.cells.pop()
        a = self.cells.pop()
        return a, b

    def _emit_event(self, event: str, *args: Any) -> None:
        self._run_extensions(self.hook_registry.emit, event, *args)

    def _run_extensions(self, dispatch: Callable[..., None], *args: Any) -> None:
        try:
            dispatch(*args)
        except ExtensionHookError as exc:
            raise MeowRuntimeError(str(exc), rule="EXT", ip=self.ip) from exc

    def _log_step(self, instruction: Instruction, ip: int, opcode: int) -> None:
        entry = self.logger.record(ip=ip, opcode=opcode, opname=instruction.name, cells=self.cells)
        self._emit_event("before_step", self, instruction, ip)
        ctx = StepContext(
            step_index=entry.step_index,
            ip=ip,
            opcode=opcode,
            opname=instruction.name,
            table_index=instruction.opcode,
        )
        self._run_extensions(self.hook_registry.after_step, self, ctx)


def execute(
    cells: List[int],
    hooks: Optional[Hooks] = None,
    *,
    services: Optional[RuntimeServices] = None,
    output_sink: Optional[Callable[[str], None]] = None,
) -> List[int]:
    return Interpreter(cells, hooks=hooks, services=services, output_sink=output_sink).run()


def format_error(module: str, message: str) -> str:
    return f"{ERR_EMOJI} {module} {ERR_EMOJI} {message} {ERR_EMOJI}"


def report_error(module: str, message: str, on_error: Optional[Callable[[str], None]] = None) -> None:
    """Route a stage-labelled failure to ``on_error`` or to stderr."""
    full_message = format_error(module, message)
    if on_error is not None:
        on_error(full_message)
    else:
        print(full_message, file=sys.stderr)


def run_meowlang(
    code: str,
    hooks: Optional[Hooks] = None,
    *,
    services: Optional[RuntimeServices] = None,
    output_sink: Optional[Callable[[str], None]] = None,
    filename: str = "<string>",
) -> bool:
    """Parse and execute ``code``. Returns False if either stage failed."""
    hooks = hooks or Hooks()
    try:
        cells = parse_source(code, filename)
    except MeowParseError as error:
        report_error("Parser", str(error), hooks.on_error)
        return False
    try:
        Interpreter(cells, hooks=hooks, services=services, output_sink=output_sink).run()
    except MeowRuntimeError as error:
        report_error("Interpreter", error.message, hooks.on_error)
        return False
    return True


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def format_text(self, error: MeowRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        entries = list(self.interpreter.logger.entries)
        if not verbose:
            entries = entries[-1:]
        for entry in entries:
            lines.append(f"  Step {entry.step_index} ({entry.state_id}): ip={entry.ip} {entry.opname} [opcode {format_value(entry.opcode)}]")
            if entry.cells_snapshot is not None:
                lines.append(f"    Cells: {format_cells(entry.cells_snapshot)}")
        if not entries:
            lines.append("  <no steps executed>")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        if error.handler_error is not None:
            lines.append(f"  while handling it: {error.handler_error.message}")
        return "\n".join(lines)

    def to_json(self, error: MeowRuntimeError) -> str:
        steps: List[Dict[str, Any]] = []
        for entry in self.interpreter.logger.entries:
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "state_id": entry.state_id,
                "ip": entry.ip,
                "opcode": _json_value(entry.opcode),
                "opname": entry.opname,
            }
            if entry.cells_snapshot is not None:
                item["cells"] = [_json_value(value) for value in entry.cells_snapshot]
            steps.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "ip": error.ip,
                "failing_step_index": error.step_index,
            },
            "steps": steps,
        }
        return json.dumps(data, indent=2)
