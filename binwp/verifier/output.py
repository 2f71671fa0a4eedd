"""
Binwp — Result reporting.

Reads a counterexample out of a solver model (initial register values and
the initial memory bytes the model fixes), renders it as a gdb script or a
JSON assignment for replay, and formats the human-readable summary.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import z3

from binwp.symbolic.constraint import (
    Constraint, PathStep, RefutedGoal, refuted_goals,
)
from binwp.symbolic.environment import Environment
from binwp.verifier.solver import CheckResult, Verdict

logger = logging.getLogger("binwp.verifier.output")


@dataclass
class Counterexample:
    regs: dict[str, int] = field(default_factory=dict)
    mem: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "regs": {k: hex(v) for k, v in sorted(self.regs.items())},
            "mem": {hex(k): hex(v) for k, v in sorted(self.mem.items())},
        }


# ── Model extraction ──────────────────────────────────────────────────

def _as_int(value: z3.ExprRef) -> int | None:
    if z3.is_bv_value(value):
        return value.as_long()
    return None


def _array_entries(model: z3.ModelRef, arr: z3.ArrayRef) -> dict[int, int]:
    value = model.eval(arr, model_completion=True)
    entries: dict[int, int] = {}
    if z3.is_as_array(value):
        interp = model[z3.get_as_array_func(value)]
        for entry in interp.as_list()[:-1]:
            addr, byte = _as_int(entry[0]), _as_int(entry[1])
            if addr is not None and byte is not None:
                entries[addr] = byte
        return entries
    # Store(Store(K(default), a1, v1), a2, v2): the outermost store wins.
    while z3.is_store(value):
        addr, byte = _as_int(value.arg(1)), _as_int(value.arg(2))
        if addr is not None and byte is not None:
            entries.setdefault(addr, byte)
        value = value.arg(0)
    return entries


def extract_counterexample(model: z3.ModelRef,
                           env: Environment) -> Counterexample:
    """Initial registers and memory of *env*'s side fixed by *model*."""
    declared = {d.name() for d in model.decls()}
    cex = Counterexample()
    mem_name = env.arch.mem_name
    for name, const in sorted(env.var_map.items()):
        if name == mem_name or const.decl().name() not in declared:
            continue
        value = _as_int(model.eval(const, model_completion=True))
        if value is not None:
            cex.regs[name] = value
    mem = env.var_map.get(mem_name)
    if mem is not None and mem.decl().name() in declared:
        cex.mem = _array_entries(model, mem)
    logger.debug("Counterexample: %d register(s), %d memory byte(s)",
                 len(cex.regs), len(cex.mem))
    return cex


# ── Replay artifacts ──────────────────────────────────────────────────

def gdb_script(cex: Counterexample, func: str, env: Environment) -> str:
    lines = [f"break *{func}", "run"]
    for name, value in sorted(cex.regs.items()):
        if env.arch.registers.get(name, 0) > 1:
            lines.append(f"set ${name.lower()} = {value:#x}")
    for addr, byte in sorted(cex.mem.items()):
        lines.append(f"set {{char}} {addr:#x} = {byte:#x}")
    return "\n".join(lines) + "\n"


def output_gdb(cex: Counterexample, func: str, env: Environment,
               path: str) -> None:
    Path(path).write_text(gdb_script(cex, func, env), encoding="utf-8")
    logger.info("Wrote gdb script to %s", path)


def output_bildb(cex: Counterexample, path: str) -> None:
    Path(path).write_text(json.dumps(cex.to_dict(), indent=2) + "\n",
                          encoding="utf-8")
    logger.info("Wrote register/memory assignment to %s", path)


# ── Summary ───────────────────────────────────────────────────────────

def print_result(result: CheckResult, constr: Constraint,
                 show: list[str] | tuple[str, ...] = (),
                 ) -> tuple[str, list[RefutedGoal], list[PathStep]]:
    """Summary line(s) for *result*, plus the refuted goals and path."""
    text, goals, path = _describe(result, constr, show)
    logger.info("Result: %s", text.splitlines()[0])
    return text, goals, path


def _describe(result: CheckResult, constr: Constraint,
              show: list[str] | tuple[str, ...],
              ) -> tuple[str, list[RefutedGoal], list[PathStep]]:
    goals: list[RefutedGoal] = []
    path: list[PathStep] = []
    if result.verdict is Verdict.PROVED:
        text = "UNSAT!" if result.exact else \
            "UNSAT! (up to the loop unrolling bound)"
        return text, goals, path
    if result.verdict is Verdict.UNKNOWN:
        return f"UNKNOWN: {result.reason}", goals, path

    goals, path = refuted_goals(constr, result.model)
    lines = ["SAT!"]
    if "refuted-goals" in show:
        lines.append("Refuted goals:")
        lines.extend(f"  {g.name}: {g.formula}" for g in goals)
    if "paths" in show:
        lines.append("Path:")
        lines.extend(
            f"  {step.name}: {'taken' if step.taken else 'not taken'}"
            for step in path
        )
    return "\n".join(lines), goals, path
