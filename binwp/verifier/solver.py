"""
Binwp — Solver adapter.

The precondition holds for every input iff its negation is unsatisfiable:

    UNSAT   → Proved   (no input violates a goal)
    SAT     → Refuted  (the model is a counterexample)
    UNKNOWN → Unknown  (timeout or incompleteness; reason kept)

A proof over a precondition with loop cuts only covers executions that
stay within the unroll bound.  In that case a second query with every cut
turned into a failure decides whether the proof is exact.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

import z3

from binwp import config
from binwp.symbolic.constraint import (
    Constraint, EvalStats, eval_constraint, has_loop_cuts,
)

logger = logging.getLogger("binwp.verifier.solver")


class Verdict(str, enum.Enum):
    PROVED = "PROVED"
    REFUTED = "REFUTED"
    UNKNOWN = "UNKNOWN"


@dataclass
class CheckResult:
    verdict: Verdict
    model: z3.ModelRef | None = None
    reason: str = ""
    exact: bool = True


def mk_solver(timeout_ms: int = config.Z3_TIMEOUT_MS) -> z3.Solver:
    solver = z3.Solver()
    if timeout_ms > 0:
        solver.set("timeout", timeout_ms)
    return solver


def check(solver: z3.Solver, constr: Constraint,
          stats: EvalStats | None = None) -> CheckResult:
    """Ask *solver* whether any input violates *constr*."""
    solver.add(z3.Not(eval_constraint(constr, stats)))
    result = solver.check()

    if result == z3.unsat:
        exact = True
        if has_loop_cuts(constr):
            exact = not _cut_reachable(constr)
        logger.info("Z3: UNSAT — precondition proved%s.",
                    "" if exact else " up to the unroll bound")
        return CheckResult(Verdict.PROVED, exact=exact)

    if result == z3.sat:
        logger.info("Z3: SAT — counterexample found.")
        return CheckResult(Verdict.REFUTED, model=solver.model())

    reason = solver.reason_unknown()
    logger.warning("Z3: UNKNOWN (%s)", reason)
    return CheckResult(Verdict.UNKNOWN, reason=reason, exact=False)


def _cut_reachable(constr: Constraint) -> bool:
    cut_solver = mk_solver()
    cut_solver.add(z3.Not(eval_constraint(constr, cuts_hold=False)))
    result = cut_solver.check()
    if result == z3.unknown:
        logger.warning("Could not decide whether a loop cut is reachable "
                       "(%s); treating the proof as bounded.",
                       cut_solver.reason_unknown())
        return True
    return result == z3.sat
