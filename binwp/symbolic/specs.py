"""
Binwp — Function specs.

A ``FunSpec`` pairs a predicate over the callee with the transformer that
gives the call site its meaning.  The environment holds an ordered chain of
specs; :func:`resolve` applies the first one whose predicate matches and
only that one.  :func:`default_specs` ends with ``spec_rax_out``, which
matches every callee, so a default chain never runs dry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

import z3

from binwp.errors import NoSpecError
from binwp.ir import Jmp, Sub
from binwp.symbolic.constraint import (
    Constraint, mk_clause, mk_goal, mk_subst,
)
from binwp.symbolic.environment import Environment

logger = logging.getLogger("binwp.symbolic.specs")

Predicate = Callable[[Sub, Environment], bool]
Transformer = Callable[
    [Environment, Constraint, Sub, Jmp], "tuple[Constraint, Environment]"
]


@dataclass(frozen=True)
class FunSpec:
    name: str
    predicate: Predicate
    apply: Transformer


VERIFIER_ERRORS = ("__VERIFIER_error", "__assert_fail")
VERIFIER_ASSUME = "__VERIFIER_assume"
VERIFIER_NONDET_PREFIX = "__VERIFIER_nondet_"
AFL_MAYBE_LOG = "__afl_maybe_log"
AFL_CLOBBERED = ("RAX", "RCX", "RDX")


# ── Dispatch ──────────────────────────────────────────────────────────

def resolve(env: Environment, callee: Sub) -> FunSpec:
    """First spec of *env* whose predicate holds for *callee*."""
    for spec in env.specs:
        if spec.predicate(callee, env):
            logger.debug("Call to %s handled by %s", callee.name, spec.name)
            return spec
    raise NoSpecError(
        f"No function spec matches the call to {callee.name} "
        f"(tried: {[s.name for s in env.specs]})"
    )


# ── Helpers ───────────────────────────────────────────────────────────

def input_values(env: Environment) -> list[z3.ExprRef]:
    if not env.use_fun_input_regs:
        return []
    return [env.get_var(env.reg_var(r)) for r in env.arch.input_regs]


def havoc(env: Environment, post: Constraint, callee: Sub,
          regs: Iterable[str], functional: tuple[str, ...] = ()) -> Constraint:
    """Give each of *regs* an unknown value after the call.

    Registers named in *functional* become an uninterpreted function of the
    input registers instead of a fresh constant.
    """
    inputs = input_values(env)
    olds: list[z3.ExprRef] = []
    news: list[z3.ExprRef] = []
    for reg in regs:
        if reg not in env.arch.registers:
            continue
        width = env.arch.registers[reg]
        olds.append(env.get_var(env.reg_var(reg)))
        if reg in functional:
            news.append(env.fun_output(f"{callee.name}_{reg}", inputs, width))
        else:
            news.append(env.fresh(f"{callee.name}_{reg}", width))
    return mk_subst(post, olds, news)


def _return_regs(env: Environment) -> tuple[str, ...]:
    return (env.arch.return_reg,) if env.arch.return_reg else ()


# ── Verifier intrinsics ───────────────────────────────────────────────

def _is_error(sub: Sub, _env: Environment) -> bool:
    return sub.name in VERIFIER_ERRORS


def _apply_error(env, post, sub, jmp):
    return mk_goal(f"{sub.name} reached at {jmp.tid}", z3.BoolVal(False)), env


spec_verifier_error = FunSpec("spec_verifier_error", _is_error, _apply_error)


def _is_assume(sub: Sub, env: Environment) -> bool:
    return sub.name == VERIFIER_ASSUME and bool(env.arch.input_regs)


def _apply_assume(env, post, sub, jmp):
    arg = env.get_var(env.reg_var(env.arch.input_regs[0]))
    hyp = mk_goal(f"{sub.name} argument at {jmp.tid}",
                  arg != z3.BitVecVal(0, arg.size()))
    return mk_clause([hyp], [post]), env


spec_verifier_assume = FunSpec("spec_verifier_assume", _is_assume,
                               _apply_assume)


def _is_nondet(sub: Sub, env: Environment) -> bool:
    return (sub.name.startswith(VERIFIER_NONDET_PREFIX)
            and env.arch.return_reg is not None)


def _apply_nondet(env, post, sub, jmp):
    return havoc(env, post, sub, _return_regs(env)), env


spec_verifier_nondet = FunSpec("spec_verifier_nondet", _is_nondet,
                               _apply_nondet)


def _is_afl(sub: Sub, _env: Environment) -> bool:
    return sub.name == AFL_MAYBE_LOG


def _apply_afl(env, post, sub, jmp):
    return havoc(env, post, sub, AFL_CLOBBERED), env


spec_afl_maybe_log = FunSpec("spec_afl_maybe_log", _is_afl, _apply_afl)


# ── Inlining ──────────────────────────────────────────────────────────

def spec_inline(to_inline: Iterable[str]) -> FunSpec:
    """Inline callees named in *to_inline*, up to the unroll depth."""
    names = frozenset(to_inline)

    def matches(sub: Sub, env: Environment) -> bool:
        return (sub.name in names and bool(sub.blks)
                and env.inline_depth[sub.name] < env.num_unroll)

    def apply(env, post, sub, jmp):
        from binwp.symbolic.precondition import visit_sub

        env.inline_depth[sub.name] += 1
        try:
            pre, env = visit_sub(env, post, sub)
        finally:
            env.inline_depth[sub.name] -= 1
        return pre, env

    return FunSpec("spec_inline", matches, apply)


# ── Summaries ─────────────────────────────────────────────────────────

def _is_empty(sub: Sub, _env: Environment) -> bool:
    if len(sub.blks) != 1:
        return False
    blk = sub.blks[0]
    return not blk.defs and all(j.kind == "ret" for j in blk.jmps)


def _apply_empty(env, post, sub, jmp):
    return post, env


spec_empty = FunSpec("spec_empty", _is_empty, _apply_empty)


def _has_args(sub: Sub, _env: Environment) -> bool:
    return bool(sub.args)


def _apply_arg_terms(env, post, sub, jmp):
    ins = [env.get_var(a.var) for a in sub.args if a.intent in ("in", "both")]
    if not env.use_fun_input_regs:
        ins = []
    olds: list[z3.ExprRef] = []
    news: list[z3.ExprRef] = []
    for a in sub.args:
        if a.intent not in ("out", "both"):
            continue
        olds.append(env.get_var(a.var))
        news.append(env.fun_output(f"{sub.name}_{a.var.name}", ins,
                                   a.var.width))
    return mk_subst(post, olds, news), env


spec_arg_terms = FunSpec("spec_arg_terms", _has_args, _apply_arg_terms)


def _has_caller_saved(_sub: Sub, env: Environment) -> bool:
    return bool(env.arch.caller_saved)


def _apply_chaos(env, post, sub, jmp):
    return havoc(env, post, sub, env.arch.caller_saved,
                 functional=_return_regs(env)), env


spec_chaos_caller_saved = FunSpec("spec_chaos_caller_saved",
                                  _has_caller_saved, _apply_chaos)


def _always(_sub: Sub, _env: Environment) -> bool:
    return True


def _apply_rax_out(env, post, sub, jmp):
    regs = _return_regs(env)
    return havoc(env, post, sub, regs, functional=regs), env


spec_rax_out = FunSpec("spec_rax_out", _always, _apply_rax_out)


def default_specs(to_inline: Iterable[str] = (),
                  trip_asserts: bool = False) -> list[FunSpec]:
    specs = [
        spec_verifier_assume,
        spec_verifier_nondet,
        spec_afl_maybe_log,
        spec_inline(to_inline),
        spec_empty,
        spec_arg_terms,
        spec_chaos_caller_saved,
        spec_rax_out,
    ]
    if trip_asserts:
        specs.insert(0, spec_verifier_error)
    return specs
