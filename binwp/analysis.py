"""
Binwp — Analysis orchestrator.

Pipeline:
  1. Validate the flags against the number of files.
  2. Load the program(s) through the cache.
  3. Build the environment(s): function specs, expected conditions, stack.
  4. Single run: hyps => pre(sub, post).
     Comparative run: hyps => pre(original, pre(modified, comparators)).
  5. Hand the precondition to the solver and report the verdict, the
     refuted goals and path, and the counterexample (plus replay files).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import z3
from pydantic import BaseModel, Field, field_validator

from binwp import config
from binwp.cache import CacheContext, read_program
from binwp.errors import ConfigError, MissingFunctionError
from binwp.ir import Program, Sub, sub_to_string
from binwp.symbolic.constraint import (
    Constraint, EvalStats, mk_clause, print_stats, to_string,
)
from binwp.symbolic.environment import (
    Environment, ExpCond, MemRange, VarGen, mk_env, set_freshen,
)
from binwp.symbolic.precondition import (
    get_vars, init_vars, mem_read_offsets, non_null_load_assert,
    non_null_load_vc, non_null_store_assert, non_null_store_vc,
    set_of_reg_names, set_sp_range, visit_sub,
)
from binwp.symbolic.smtlib import mk_smtlib2_single
from binwp.symbolic.specs import FunSpec, default_specs
from binwp.verifier.compare import (
    Comparator, ComparatorFn, compare_subs, compare_subs_empty_post,
    compare_subs_eq, compare_subs_fun, compare_subs_smtlib, compare_subs_sp,
)
from binwp.verifier.output import (
    extract_counterexample, output_bildb, output_gdb, print_result,
)
from binwp.verifier.solver import Verdict, check, mk_solver
from binwp.verifier.symbols import identity, offset_constraint

logger = logging.getLogger("binwp.analysis")

DEBUG_OPTIONS = (
    "z3-solver-stats", "z3-verbose", "constraint-stats",
    "eval-constraint-stats",
)
SHOW_OPTIONS = (
    "bir", "refuted-goals", "paths", "precond-internal", "precond-smtlib",
)


# ── Flags ─────────────────────────────────────────────────────────────

class Flags(BaseModel):
    """Options of one analysis run."""
    func: str = ""
    precond: str = ""
    postcond: str = ""
    trip_asserts: bool = False
    check_null_derefs: bool = False
    compare_func_calls: bool = False
    compare_post_reg_values: list[str] = Field(default_factory=list)
    inline: str | None = None
    num_unroll: int | None = Field(default=None, ge=0)
    gdb_output: str | None = None
    bildb_output: str | None = None
    use_fun_input_regs: bool = True
    mem_offset: bool = False
    debug: list[str] = Field(default_factory=list)
    show: list[str] = Field(default_factory=list)
    stack_base: int | None = Field(default=None, ge=0)
    stack_size: int | None = Field(default=None, gt=0)

    @field_validator("compare_post_reg_values", "debug", "show",
                     mode="before")
    @classmethod
    def _split_commas(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("func")
    @classmethod
    def _strip_func(cls, value: str) -> str:
        return value.strip()


def validate(flags: Flags, files: list[str]) -> ConfigError | None:
    """The first problem with running *flags* on *files*, if any."""
    if not flags.func:
        return ConfigError("Function is not provided for analysis.")
    if len(files) not in (1, 2):
        return ConfigError(
            "Only one binary (single analysis) or two binaries (comparative "
            f"analysis) can be analyzed. Number of binaries provided: "
            f"{len(files)}."
        )
    if flags.compare_func_calls and len(files) != 2:
        return ConfigError(
            "compare_func_calls is only used for a comparative analysis. "
            f"Please specify two files. Number of files given: {len(files)}."
        )
    if flags.compare_post_reg_values and len(files) != 2:
        return ConfigError(
            "compare_post_reg_values is only used for a comparative analysis. "
            f"Please specify two files. Number of files given: {len(files)}."
        )
    bad = [d for d in flags.debug if d not in DEBUG_OPTIONS]
    if bad:
        return ConfigError(f"Invalid debug options: {bad}. Available "
                           f"options are: {list(DEBUG_OPTIONS)}")
    bad = [s for s in flags.show if s not in SHOW_OPTIONS]
    if bad:
        return ConfigError(f"Invalid show options: {bad}. Available "
                           f"options are: {list(SHOW_OPTIONS)}")
    return None


# ── Helpers ───────────────────────────────────────────────────────────

def find_func_err(prog: Program, func: str) -> Sub:
    sub = prog.find_sub(func)
    if sub is None:
        raise MissingFunctionError(func)
    return sub


def match_inline(pattern: str | None, subs: tuple[Sub, ...]) -> list[str]:
    """Names of the subroutines whose name *pattern* matches."""
    if not pattern:
        return []
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"Invalid inline pattern {pattern!r}: {exc}") \
            from exc
    names = [s.name for s in subs if regex.search(s.name)]
    if names:
        logger.info("Inlining functions: %s", names)
    else:
        logger.warning("No functions matched the inline pattern %r", pattern)
    return names


def confine_outputs(flags: Flags, root: str) -> Flags:
    """*flags* with the replay paths resolved below *root*.

    Raises :class:`ConfigError` for a path that resolves outside *root*
    (absolute paths, ``..`` components, symlinks leading out).
    """
    base = Path(root).resolve()
    updates: dict[str, str] = {}
    for name in ("gdb_output", "bildb_output"):
        path = getattr(flags, name)
        if path is None:
            continue
        target = (base / path).resolve()
        if target == base or not target.is_relative_to(base):
            raise ConfigError(
                f"{name} {path!r} is outside the output directory {base}"
            )
        updates[name] = str(target)
    return flags.model_copy(update=updates)


def update_stack(base: int | None, size: int | None) -> MemRange:
    stack = MemRange()
    if base is not None:
        stack = stack.update_base(base)
    if size is not None:
        stack = stack.update_size(size)
    return stack


def exp_conds_mod(flags: Flags) -> list[ExpCond]:
    if flags.check_null_derefs:
        return [non_null_load_vc, non_null_store_vc]
    return []


def exp_conds_orig(flags: Flags, env_mod: Environment, prog1: Program,
                   prog2: Program) -> list[ExpCond]:
    """Hooks of the original side; they refer to *env_mod*'s memory."""
    offset = (offset_constraint(prog1.symbols, prog2.symbols)
              if flags.mem_offset else identity)
    offsets = mem_read_offsets(env_mod, offset)
    if flags.check_null_derefs:
        return [non_null_load_assert, non_null_store_assert, offsets]
    return [offsets]


def fun_specs(flags: Flags, to_inline: list[str]) -> list[FunSpec]:
    return default_specs(to_inline, trip_asserts=flags.trip_asserts)


def _build_env(flags: Flags, prog: Program, var_gen: VarGen,
               exp_conds: list[ExpCond]) -> Environment:
    to_inline = match_inline(flags.inline, prog.subs)
    return mk_env(
        prog.arch, prog.subs, fun_specs(flags, to_inline),
        stack_range=update_stack(flags.stack_base, flags.stack_size),
        exp_conds=exp_conds,
        use_fun_input_regs=flags.use_fun_input_regs,
        num_unroll=(flags.num_unroll if flags.num_unroll is not None
                    else config.NUM_UNROLL),
        var_gen=var_gen,
    )


# ── Comparators ───────────────────────────────────────────────────────

def comparators_of_flags(
    orig: tuple[Sub, Environment],
    modif: tuple[Sub, Environment],
    flags: Flags,
) -> tuple[list[ComparatorFn], list[ComparatorFn]]:
    """Postcondition and hypothesis generators selected by *flags*."""
    sub1, env1 = orig
    sub2, env2 = modif
    comps: list[Comparator] = []
    if flags.compare_func_calls:
        comps.append(compare_subs_fun())
    if flags.compare_post_reg_values:
        all_regs = get_vars(env1, sub1) | get_vars(env2, sub2)
        post_regs = set_of_reg_names(env1, flags.compare_post_reg_values)
        logger.debug("Pre register vals: %s",
                     sorted(v.name for v in all_regs))
        logger.debug("Post register vals: %s",
                     sorted(v.name for v in post_regs))
        comps.append(compare_subs_eq(all_regs, post_regs))
    if flags.precond or flags.postcond:
        comps.append(compare_subs_smtlib(flags.precond, flags.postcond))
    sp = compare_subs_sp(env1.arch)
    if sp is not None:
        comps.append(sp)
    if not comps:
        comps = [compare_subs_empty_post]
    logger.info("Comparators: %s", [c.name for c in comps])
    return [c.post for c in comps], [c.hyp for c in comps]


# ── Runs ──────────────────────────────────────────────────────────────

@dataclass
class CombinedPre:
    pre: Constraint
    orig: tuple[Environment, Sub]
    modif: tuple[Environment, Sub]


def single(ctx: CacheContext, var_gen: VarGen, flags: Flags,
           file: str) -> CombinedPre:
    prog = read_program(ctx, file)
    main_sub = find_func_err(prog, flags.func)
    env = _build_env(flags, prog, var_gen, exp_conds_mod(flags))
    true_constr = env.trivial_constr()
    hyps, env = init_vars(get_vars(env, main_sub), env)
    hyps = [set_sp_range(env)] + hyps
    if flags.postcond:
        post = mk_smtlib2_single(env, flags.postcond, "postcondition")
    else:
        post = true_constr
    pre, env = visit_sub(env, post, main_sub)
    pre = mk_clause([mk_smtlib2_single(env, flags.precond, "precondition")],
                    [pre])
    pre = mk_clause(hyps, [pre])
    return CombinedPre(pre, (env, main_sub), (env, main_sub))


def comparative(ctx: CacheContext, var_gen: VarGen, flags: Flags,
                file1: str, file2: str) -> CombinedPre:
    prog1 = read_program(ctx, file1)
    prog2 = read_program(ctx, file2)
    main_sub1 = find_func_err(prog1, flags.func)
    main_sub2 = find_func_err(prog2, flags.func)

    env2 = _build_env(flags, prog2, var_gen, exp_conds_mod(flags))
    env2 = set_freshen(env2, True)
    hyps2, env2 = init_vars(get_vars(env2, main_sub2), env2)

    env1 = _build_env(flags, prog1, var_gen,
                      exp_conds_orig(flags, env2, prog1, prog2))
    hyps1, env1 = init_vars(get_vars(env1, main_sub1), env1)

    posts, hyps = comparators_of_flags((main_sub1, env1), (main_sub2, env2),
                                       flags)
    pre, env1, env2 = compare_subs(posts, hyps, (main_sub1, env1),
                                   (main_sub2, env2))
    pre = mk_clause(hyps1 + hyps2, [pre])
    return CombinedPre(pre, (env1, main_sub1), (env2, main_sub2))


# ── Entry point ───────────────────────────────────────────────────────

@dataclass
class AnalysisReport:
    verdict: str
    exact: bool
    message: str
    refuted_goals: list[dict[str, str]] = field(default_factory=list)
    path: list[dict[str, Any]] = field(default_factory=list)
    counterexample: dict[str, Any] | None = None
    truncated_loops: list[str] = field(default_factory=list)
    details: dict[str, str] = field(default_factory=dict)


def run(flags: Flags, files: list[str], ctx: CacheContext) -> AnalysisReport:
    """Run the analysis *flags* describe; raises on invalid input."""
    err = validate(flags, files)
    if err is not None:
        raise err
    logger.info("━━━ Analyzing %s in %s ━━━", flags.func, files)
    verbose = "z3-verbose" in flags.debug
    if verbose:
        z3.set_param("verbose", 10)
    try:
        return _analyze(flags, files, ctx)
    finally:
        # z3 parameters are process-wide; later runs start quiet.
        if verbose:
            z3.set_param("verbose", 0)


def _analyze(flags: Flags, files: list[str],
             ctx: CacheContext) -> AnalysisReport:
    var_gen = VarGen()
    solver = mk_solver()
    if len(files) == 1:
        combined = single(ctx, var_gen, flags, files[0])
    else:
        combined = comparative(ctx, var_gen, flags, files[0], files[1])

    details: dict[str, str] = {}
    env1, sub1 = combined.orig
    env2, sub2 = combined.modif
    if "bir" in flags.show:
        details["bir"] = (sub_to_string(sub1) if len(files) == 1 else
                          f"{sub_to_string(sub1)}\n\n{sub_to_string(sub2)}")
    if "constraint-stats" in flags.debug:
        details["constraint-stats"] = str(print_stats(combined.pre))
    if "precond-internal" in flags.show:
        details["precond-internal"] = to_string(combined.pre)

    stats = EvalStats() if "eval-constraint-stats" in flags.debug else None
    result = check(solver, combined.pre, stats)
    if stats is not None:
        details["eval-constraint-stats"] = stats.summary()
        logger.debug("Eval stats: %s", details["eval-constraint-stats"])
    if "precond-smtlib" in flags.show:
        details["precond-smtlib"] = solver.sexpr()
    if "z3-solver-stats" in flags.debug:
        details["z3-solver-stats"] = str(solver.statistics())

    text, goals, path = print_result(result, combined.pre, flags.show)
    report = AnalysisReport(
        verdict=result.verdict.value,
        exact=result.exact,
        message=text,
        refuted_goals=[{"name": g.name, "formula": str(g.formula)}
                       for g in goals],
        path=[{"jump": p.name, "taken": p.taken} for p in path],
        truncated_loops=sorted(env1.truncated_loops | env2.truncated_loops),
        details=details,
    )
    if result.verdict is Verdict.REFUTED:
        cex = extract_counterexample(result.model, env2)
        report.counterexample = cex.to_dict()
        if flags.gdb_output:
            output_gdb(cex, flags.func, env2, flags.gdb_output)
        if flags.bildb_output:
            output_bildb(cex, flags.bildb_output)
    return report
