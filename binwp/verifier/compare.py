"""
Binwp — Comparative analysis.

Two subroutines are compared by sequential composition: the modified
subroutine runs after the original, on a disjoint (freshened) copy of the
state, and a comparator postcondition relates the two final states.

    pre = hyps => wp(original, wp(modified, post))

A comparator is a pair of generators over ``(sub, env)`` for each side:
one yields hypotheses about the initial states, the other the
postcondition over the final states.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import z3

from binwp.arch import Arch
from binwp.ir import Sub, Var
from binwp.symbolic.constraint import (
    Constraint, mk_clause, mk_goal, trivial,
)
from binwp.symbolic.environment import Environment, freshen
from binwp.symbolic.precondition import (
    reachable_callees, set_sp_range, visit_sub,
)
from binwp.symbolic.smtlib import mk_smtlib2_compare

logger = logging.getLogger("binwp.verifier.compare")

Side = tuple[Sub, Environment]
ComparatorFn = Callable[[Side, Side], Constraint]


@dataclass(frozen=True)
class Comparator:
    name: str
    hyp: ComparatorFn
    post: ComparatorFn


def _conj(name: str, formulas: list[z3.BoolRef]) -> Constraint:
    if not formulas:
        return trivial()
    return mk_goal(name, z3.And(*formulas) if len(formulas) > 1
                   else formulas[0])


def _no_constraint(_orig: Side, _modif: Side) -> Constraint:
    return trivial()


# ── Built-in comparators ──────────────────────────────────────────────

compare_subs_empty_post = Comparator("empty", _no_constraint, _no_constraint)


def compare_subs_sp(arch: Arch) -> Comparator | None:
    """Both sides start on the same in-range stack pointer and end equal.

    ``None`` when *arch* has no stack pointer.
    """
    if not arch.has_stack_pointer():
        logger.warning("Architecture %s has no stack pointer; skipping the "
                       "stack pointer comparator.", arch.name)
        return None
    sp = Var(arch.stack_pointer, arch.width(arch.stack_pointer))

    def same_sp(orig: Side, modif: Side) -> z3.BoolRef:
        return orig[1].get_var(sp) == modif[1].get_var(sp)

    def hyp(orig: Side, modif: Side) -> Constraint:
        return mk_clause(
            [], [mk_goal("stack pointers equal", same_sp(orig, modif)),
                 set_sp_range(orig[1])],
        )

    def post(orig: Side, modif: Side) -> Constraint:
        return mk_goal("stack pointers equal on exit", same_sp(orig, modif))

    return Comparator("sp", hyp, post)


def compare_subs_fun() -> Comparator:
    """Every function the modified side calls, the original calls too."""

    def names(orig: Side, modif: Side) -> list[str]:
        return sorted(reachable_callees(orig[1], orig[0])
                      | reachable_callees(modif[1], modif[0]))

    def hyp(orig: Side, modif: Side) -> Constraint:
        env1, env2 = orig[1], modif[1]
        return _conj("no function called on entry", [
            z3.And(z3.Not(env1.call_var(f)), z3.Not(env2.call_var(f)))
            for f in names(orig, modif)
        ])

    def post(orig: Side, modif: Side) -> Constraint:
        env1, env2 = orig[1], modif[1]
        return _conj("modified calls a subset of original calls", [
            z3.Implies(env2.call_var(f), env1.call_var(f))
            for f in names(orig, modif)
        ])

    return Comparator("func_calls", hyp, post)


def compare_subs_eq(pre_regs: set[Var], post_regs: set[Var]) -> Comparator:
    """Equal *pre_regs* on entry imply equal *post_regs* on exit."""

    def equal(orig: Side, modif: Side, regs: set[Var]) -> list[z3.BoolRef]:
        return [orig[1].get_var(v) == modif[1].get_var(v)
                for v in sorted(regs, key=lambda v: v.name)]

    def hyp(orig: Side, modif: Side) -> Constraint:
        return _conj("registers equal on entry", equal(orig, modif, pre_regs))

    def post(orig: Side, modif: Side) -> Constraint:
        return _conj("registers equal on exit", equal(orig, modif, post_regs))

    return Comparator("post_reg_values", hyp, post)


def compare_subs_smtlib(hyp_text: str = "", post_text: str = "") -> Comparator:
    """User SMT-LIB over ``<reg>_orig`` / ``<reg>_mod`` names."""

    def hyp(orig: Side, modif: Side) -> Constraint:
        return mk_smtlib2_compare(orig[1], modif[1], hyp_text, "precondition")

    def post(orig: Side, modif: Side) -> Constraint:
        return mk_smtlib2_compare(orig[1], modif[1], post_text,
                                  "postcondition")

    return Comparator("smtlib", hyp, post)


# ── Composition ───────────────────────────────────────────────────────

def compare_subs(
    postconds: list[ComparatorFn],
    hyps: list[ComparatorFn],
    original: Side,
    modified: Side,
) -> tuple[Constraint, Environment, Environment]:
    """Precondition under which *original* and *modified* agree.

    Exactly one side must be freshened; if neither is, the modified side
    is freshened here.
    """
    sub1, env1 = original
    sub2, env2 = modified
    if env1.freshen and env2.freshen:
        raise ValueError("Only one side of a comparison may be freshened")
    if not (env1.freshen or env2.freshen):
        env2 = freshen(env2)
        modified = (sub2, env2)

    post = mk_clause([], [p(original, modified) for p in postconds])
    pre_mod, env2 = visit_sub(env2, post, sub2)
    pre, env1 = visit_sub(env1, pre_mod, sub1)
    hyp_constrs = [h(original, modified) for h in hyps]
    logger.debug("Composed %s (original) with %s (modified)",
                 sub1.name, sub2.name)
    return mk_clause(hyp_constrs, [pre]), env1, env2
