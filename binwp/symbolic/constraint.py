"""
Binwp — Constraint tree.

The verification condition is kept as a tree rather than a flat z3 term so
that goals keep their names for counterexample reporting, branch nodes keep
the jump they came from, and substitutions are deferred until the tree is
flattened for the solver.

Node kinds
----------
Goal    – a named boolean formula
Ite     – ``If(cond, then, else)`` keyed by the conditional jump
Clause  – ``And(hyps) => And(concls)``
Subst   – ``body[olds := news]``, applied lazily by :func:`eval_constraint`

Paths cut by loop unrolling end in a goal over :data:`LOOP_CUT`.  Flattening
treats it as true by default; flattening with ``cuts_hold=False`` turns
every cut into a failure, which tells whether any cut is reachable.
"""
from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

import z3

logger = logging.getLogger("binwp.symbolic.constraint")

LOOP_CUT = z3.Bool("__binwp_loop_cut")


@dataclass(frozen=True, eq=False)
class Goal:
    name: str
    formula: z3.BoolRef


@dataclass(frozen=True, eq=False)
class Ite:
    name: str
    cond: z3.BoolRef
    then: Constraint
    orelse: Constraint


@dataclass(frozen=True, eq=False)
class Clause:
    hyps: tuple[Constraint, ...]
    concls: tuple[Constraint, ...]


@dataclass(frozen=True, eq=False)
class Subst:
    body: Constraint
    olds: tuple[z3.ExprRef, ...]
    news: tuple[z3.ExprRef, ...]


Constraint = Union[Goal, Ite, Clause, Subst]


# ── Constructors ──────────────────────────────────────────────────────

def mk_goal(name: str, formula: z3.BoolRef) -> Goal:
    return Goal(name, formula)


def trivial() -> Goal:
    return Goal("true", z3.BoolVal(True))


def mk_loop_cut(name: str) -> Goal:
    return Goal(name, LOOP_CUT)


def mk_ite(name: str, cond: z3.BoolRef, then: Constraint,
           orelse: Constraint) -> Constraint:
    if z3.is_true(cond):
        return then
    if z3.is_false(cond):
        return orelse
    return Ite(name, cond, then, orelse)


def mk_clause(hyps: list[Constraint] | tuple[Constraint, ...],
              concls: list[Constraint] | tuple[Constraint, ...]) -> Clause:
    return Clause(tuple(hyps), tuple(concls))


def mk_subst(body: Constraint, olds: list[z3.ExprRef],
             news: list[z3.ExprRef]) -> Constraint:
    if len(olds) != len(news):
        raise ValueError(
            f"Substitution arity mismatch: {len(olds)} vs {len(news)}"
        )
    if not olds:
        return body
    return Subst(body, tuple(olds), tuple(news))


# ── Flattening ────────────────────────────────────────────────────────

@dataclass
class EvalStats:
    """Sizes of the substitutions applied while flattening."""
    subst_sizes: list[int] = field(default_factory=list)

    def summary(self) -> str:
        if not self.subst_sizes:
            return "No substitutions were applied."
        mean = statistics.mean(self.subst_sizes)
        stdev = (statistics.pstdev(self.subst_sizes)
                 if len(self.subst_sizes) > 1 else 0.0)
        return (f"Substitutions: {len(self.subst_sizes)} | "
                f"mean size {mean:.2f} | max {max(self.subst_sizes)} | "
                f"std dev {stdev:.2f}")


def _children(c: Constraint) -> tuple[Constraint, ...]:
    if isinstance(c, Ite):
        return (c.then, c.orelse)
    if isinstance(c, Clause):
        return c.hyps + c.concls
    if isinstance(c, Subst):
        return (c.body,)
    return ()


def eval_constraint(constr: Constraint, stats: EvalStats | None = None,
                    cuts_hold: bool = True) -> z3.BoolRef:
    """Flatten *constr* into a single z3 formula.

    Subtrees shared between branches are flattened once.  The walk keeps
    its own stack, so the depth of the tree is not bounded by Python's
    recursion limit.
    """
    memo: dict[int, z3.BoolRef] = {}
    stack: list[tuple[Constraint, bool]] = [(constr, False)]
    while stack:
        c, ready = stack.pop()
        if id(c) in memo:
            continue
        if not ready:
            pending = [k for k in _children(c) if id(k) not in memo]
            if pending:
                stack.append((c, True))
                stack.extend((k, False) for k in pending)
                continue
        memo[id(c)] = _combine(c, memo, stats)
    return z3.substitute(memo[id(constr)], (LOOP_CUT, z3.BoolVal(cuts_hold)))


def _combine(c: Constraint, memo: dict[int, z3.BoolRef],
             stats: EvalStats | None) -> z3.BoolRef:
    """Formula of *c* once every child is in *memo*."""
    if isinstance(c, Goal):
        return c.formula
    if isinstance(c, Ite):
        return z3.If(c.cond, memo[id(c.then)], memo[id(c.orelse)])
    if isinstance(c, Clause):
        concl = z3.And(*[memo[id(x)] for x in c.concls]) if c.concls \
            else z3.BoolVal(True)
        if not c.hyps:
            return concl
        return z3.Implies(z3.And(*[memo[id(h)] for h in c.hyps]), concl)
    if isinstance(c, Subst):
        if stats is not None:
            stats.subst_sizes.append(len(c.olds))
        return z3.substitute(memo[id(c.body)], *zip(c.olds, c.news))
    raise TypeError(f"Not a constraint: {c!r}")


# ── Statistics ────────────────────────────────────────────────────────

@dataclass
class ConstraintStats:
    goals: int = 0
    ites: int = 0
    clauses: int = 0
    substs: int = 0

    def __str__(self) -> str:
        return (f"Goals: {self.goals} | ITEs: {self.ites} | "
                f"Clauses: {self.clauses} | Substitutions: {self.substs}")


def iter_nodes(constr: Constraint) -> Iterator[Constraint]:
    """Every distinct node of *constr*, each shared subtree once."""
    seen: set[int] = set()
    stack: list[Constraint] = [constr]
    while stack:
        c = stack.pop()
        if id(c) in seen:
            continue
        seen.add(id(c))
        yield c
        if isinstance(c, Ite):
            stack.extend((c.then, c.orelse))
        elif isinstance(c, Clause):
            stack.extend(c.hyps)
            stack.extend(c.concls)
        elif isinstance(c, Subst):
            stack.append(c.body)


def constraint_stats(constr: Constraint) -> ConstraintStats:
    stats = ConstraintStats()
    for c in iter_nodes(constr):
        if isinstance(c, Goal):
            stats.goals += 1
        elif isinstance(c, Ite):
            stats.ites += 1
        elif isinstance(c, Clause):
            stats.clauses += 1
        elif isinstance(c, Subst):
            stats.substs += 1
    return stats


def has_loop_cuts(constr: Constraint) -> bool:
    return any(isinstance(c, Goal) and c.formula.eq(LOOP_CUT)
               for c in iter_nodes(constr))


def print_stats(constr: Constraint) -> ConstraintStats:
    stats = constraint_stats(constr)
    logger.info("Constraint stats: %s", stats)
    return stats


# ── Pretty printing ───────────────────────────────────────────────────

def to_string(constr: Constraint) -> str:
    lines: list[str] = []
    # Entries are either a line to emit or a node to expand at a depth.
    stack: list[str | tuple[Constraint, int]] = [(constr, 0)]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            lines.append(item)
            continue
        c, depth = item
        pad = "  " * depth
        todo: list[str | tuple[Constraint, int]] = []
        if isinstance(c, Goal):
            lines.append(f"{pad}{c.name}: {c.formula}")
        elif isinstance(c, Ite):
            lines.append(f"{pad}ITE {c.name} ({c.cond})")
            todo = [(c.then, depth + 1), f"{pad}ELSE", (c.orelse, depth + 1)]
        elif isinstance(c, Clause):
            lines.append(f"{pad}CLAUSE")
            todo = [(h, depth + 1) for h in c.hyps]
            todo.append(f"{pad}=>")
            todo.extend((x, depth + 1) for x in c.concls)
        elif isinstance(c, Subst):
            pairs = ", ".join(f"{o} -> {n}" for o, n in zip(c.olds, c.news))
            lines.append(f"{pad}LET [{pairs}] IN")
            todo = [(c.body, depth + 1)]
        stack.extend(reversed(todo))
    return "\n".join(lines)


# ── Model inspection ──────────────────────────────────────────────────

@dataclass
class RefutedGoal:
    name: str
    formula: z3.BoolRef


@dataclass
class PathStep:
    """One conditional jump decided by the model."""
    name: str
    taken: bool


# Substitutions in scope, innermost first: ``(pairs, enclosing)``.
Scope = Union[tuple[tuple[tuple[Any, Any], ...], "Scope"], None]


def _apply(expr: Any, scope: Scope) -> Any:
    while scope is not None:
        pairs, scope = scope
        expr = z3.substitute(expr, *pairs)
    return expr


def _holds(model: z3.ModelRef, expr: z3.BoolRef) -> bool:
    expr = z3.substitute(expr, (LOOP_CUT, z3.BoolVal(True)))
    return z3.is_true(model.eval(expr, model_completion=True))


def refuted_goals(constr: Constraint, model: z3.ModelRef,
                  ) -> tuple[list[RefutedGoal], list[PathStep]]:
    """Goals false under *model* along the path the model selects.

    Branches are followed only on the side whose condition holds and
    clause conclusions only when the hypotheses hold, so the result is the
    set of goals that actually fail on the counterexample execution.
    """
    goals: list[RefutedGoal] = []
    path: list[PathStep] = []
    stack: list[tuple[Constraint, Scope]] = [(constr, None)]
    while stack:
        c, scope = stack.pop()
        if isinstance(c, Goal):
            f = _apply(c.formula, scope)
            if not _holds(model, f):
                goals.append(RefutedGoal(c.name, f))
        elif isinstance(c, Ite):
            taken = _holds(model, _apply(c.cond, scope))
            path.append(PathStep(c.name, taken))
            stack.append((c.then if taken else c.orelse, scope))
        elif isinstance(c, Clause):
            if all(_holds(model, _apply(eval_constraint(h), scope))
                   for h in c.hyps):
                stack.extend((x, scope) for x in reversed(c.concls))
        elif isinstance(c, Subst):
            stack.append((c.body, (tuple(zip(c.olds, c.news)), scope)))
    return goals, path
