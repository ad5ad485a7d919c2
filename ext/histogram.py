"""Meowlang extension: instruction histogram.

Counts how often each instruction descriptor is dispatched during a run and
prints a histogram to stderr when the program ends. Out-of-range opcodes are
counted under NOP, since that is what executes.
"""

from __future__ import annotations

import sys
from typing import Any, Dict, List

import numpy as np

from extensions import ExtensionAPI, StepContext
from interpreter import INSTRUCTION_TABLE

MEOW_EXTENSION_NAME = "histogram"
MEOW_EXTENSION_API_VERSION = 1

_BAR_WIDTH = 40


def opcode_histogram(table_indices: List[int]) -> np.ndarray:
    indices = np.asarray(table_indices, dtype=np.intp)
    return np.bincount(indices, minlength=len(INSTRUCTION_TABLE))


def format_histogram(counts: np.ndarray) -> str:
    total = int(counts.sum())
    lines = [f"histogram: {total} step(s)"]
    if total == 0:
        return lines[0]
    peak = int(counts.max())
    shares = counts / total
    for instruction, count, share in zip(INSTRUCTION_TABLE, counts, shares):
        if count == 0:
            continue
        bar = "#" * max(1, int(round(_BAR_WIDTH * int(count) / peak)))
        lines.append(f"  {instruction.name:<5} {int(count):>8}  {share:6.1%}  {bar}")
    return "\n".join(lines)


# Per-run sample buffers keyed by interpreter identity.
_SAMPLES: Dict[int, List[int]] = {}


def _on_start(interpreter: Any) -> None:
    _SAMPLES[id(interpreter)] = []


def _on_step(interpreter: Any, ctx: StepContext) -> None:
    _SAMPLES.setdefault(id(interpreter), []).append(ctx.table_index)


def _on_end(interpreter: Any) -> None:
    counts = opcode_histogram(_SAMPLES.pop(id(interpreter), []))
    interpreter.histogram_counts = counts
    print(format_histogram(counts), file=sys.stderr)


def _on_error(interpreter: Any, _error: Any) -> None:
    _SAMPLES.pop(id(interpreter), None)


def meow_register(ext: ExtensionAPI) -> None:
    ext.metadata(version="1.0.0")
    ext.on_event("program_start", _on_start)
    ext.every_n_steps(1, _on_step, name="histogram_sample")
    ext.on_event("program_end", _on_end)
    ext.on_event("on_error", _on_error)
