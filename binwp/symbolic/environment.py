"""
Binwp — Symbolic environment.

One ``Environment`` per subroutine under analysis.  It owns the mapping
from program variables to z3 constants, the memory sort, the stack range,
the ordered function-spec chain and the expected-condition hooks.

Freshening
----------
In a comparative run both subroutines are lifted from similar program text,
so ``RAX`` exists on both sides.  The modified side is freshened before any
constraint is built: every constant it introduces carries the ``_mod``
suffix, and :meth:`Environment.renaming` exposes the resulting substitution
from the plain names to the freshened ones.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Callable, TYPE_CHECKING

import z3

from binwp import config
from binwp.arch import Arch
from binwp.ir import Sub, Var
from binwp.symbolic.constraint import Constraint, trivial

if TYPE_CHECKING:
    from binwp.symbolic.specs import FunSpec

logger = logging.getLogger("binwp.symbolic.environment")

FRESH_SUFFIX = "_mod"
INIT_PREFIX = "init_"
CALLED_PREFIX = "called_"


# ── Stack range ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class MemRange:
    """``[base - size, base]``; the stack grows down from ``base``."""
    base: int = config.STACK_BASE
    size: int = config.STACK_SIZE

    def update_base(self, base: int) -> MemRange:
        return replace(self, base=base)

    def update_size(self, size: int) -> MemRange:
        return replace(self, size=size)


# ── Fresh-name generator ──────────────────────────────────────────────

class VarGen:
    """Run-wide counter for intermediate symbol names.

    Shared by both environments of a comparative run.
    """

    def __init__(self) -> None:
        self._counter = 0

    def fresh(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"


# ── Expected conditions ───────────────────────────────────────────────

@dataclass(frozen=True)
class MemAccess:
    """A load or store met while translating one term."""
    kind: str               # "load" | "store"
    addr: z3.BitVecRef
    size: int
    tid: str


@dataclass(frozen=True)
class ExpCondResult:
    """``verify`` results are goals; ``assume`` results are hypotheses."""
    kind: str
    goal: Constraint


ExpCond = Callable[["Environment", MemAccess], "ExpCondResult | None"]


# ── Environment ───────────────────────────────────────────────────────

@dataclass
class Environment:
    arch: Arch
    subs: dict[str, Sub] = field(default_factory=dict)
    specs: list[FunSpec] = field(default_factory=list)
    exp_conds: list[ExpCond] = field(default_factory=list)
    stack_range: MemRange = field(default_factory=MemRange)
    var_gen: VarGen = field(default_factory=VarGen)
    use_fun_input_regs: bool = True
    num_unroll: int = config.NUM_UNROLL
    freshen: bool = False

    var_map: dict[str, z3.ExprRef] = field(default_factory=dict)
    init_map: dict[str, z3.ExprRef] = field(default_factory=dict)
    call_vars: dict[str, z3.BoolRef] = field(default_factory=dict)
    introduced: set[str] = field(default_factory=set)
    truncated_loops: set[str] = field(default_factory=set)
    inline_depth: Counter = field(default_factory=Counter)

    def copy(self) -> Environment:
        return replace(
            self,
            subs=dict(self.subs),
            specs=list(self.specs),
            exp_conds=list(self.exp_conds),
            var_map=dict(self.var_map),
            init_map=dict(self.init_map),
            call_vars=dict(self.call_vars),
            introduced=set(self.introduced),
            truncated_loops=set(self.truncated_loops),
            inline_depth=Counter(self.inline_depth),
        )

    # ── Naming ────────────────────────────────────────────────────────

    def _name(self, base: str) -> str:
        name = base + FRESH_SUFFIX if self.freshen else base
        self.introduced.add(name)
        return name

    def mem_sort(self) -> z3.ArraySortRef:
        return z3.ArraySort(z3.BitVecSort(self.arch.addr_size),
                            z3.BitVecSort(8))

    def _mk_const(self, name: str, var: Var) -> z3.ExprRef:
        if var.is_mem:
            return z3.Const(name, self.mem_sort())
        return z3.BitVec(name, var.width)

    def get_var(self, var: Var) -> z3.ExprRef:
        """The z3 constant for *var*, created on first use."""
        const = self.var_map.get(var.name)
        if const is None:
            const = self._mk_const(self._name(var.name), var)
            self.var_map[var.name] = const
        return const

    def mem_var(self) -> Var:
        return Var(self.arch.mem_name, 0, True)

    def reg_var(self, name: str) -> Var:
        return Var(name, self.arch.width(name))

    def get_mem(self) -> z3.ArrayRef:
        return self.get_var(self.mem_var())

    def get_init_var(self, var: Var) -> z3.ExprRef:
        const = self.init_map.get(var.name)
        if const is None:
            const = self._mk_const(self._name(INIT_PREFIX + var.name), var)
            self.init_map[var.name] = const
        return const

    def fresh(self, prefix: str, width: int) -> z3.BitVecRef:
        """A new unconstrained bit-vector, never seen before in this run."""
        return z3.BitVec(self._name(self.var_gen.fresh(prefix)), width)

    def fresh_mem(self, prefix: str = "mem") -> z3.ArrayRef:
        return z3.Const(self._name(self.var_gen.fresh(prefix)),
                        self.mem_sort())

    def call_var(self, callee: str) -> z3.BoolRef:
        """Flag that becomes true once *callee* has been called."""
        const = self.call_vars.get(callee)
        if const is None:
            const = z3.Bool(self._name(CALLED_PREFIX + callee))
            self.call_vars[callee] = const
        return const

    def fun_output(self, name: str, inputs: list[z3.ExprRef],
                   width: int) -> z3.BitVecRef:
        """Uninterpreted function of *inputs* standing for a call result.

        The symbol is shared by both sides of a comparative run, so the same
        callee fed the same inputs returns the same value in each.
        """
        if not inputs:
            return self.fresh(name, width)
        fn = z3.Function(name, *[i.sort() for i in inputs],
                         z3.BitVecSort(width))
        return fn(*inputs)

    def renaming(self) -> list[tuple[z3.ExprRef, z3.ExprRef]]:
        """Pairs mapping each unfreshened constant to this env's constant."""
        pairs: list[tuple[z3.ExprRef, z3.ExprRef]] = []
        if not self.freshen:
            return pairs
        for const in (list(self.var_map.values())
                      + list(self.init_map.values())
                      + list(self.call_vars.values())):
            plain = z3.Const(const.decl().name()[:-len(FRESH_SUFFIX)],
                             const.sort())
            pairs.append((plain, const))
        return pairs

    # ── Queries ───────────────────────────────────────────────────────

    def get_sub(self, name: str) -> Sub | None:
        return self.subs.get(name)

    def trivial_constr(self) -> Constraint:
        return trivial()


# ── Construction ──────────────────────────────────────────────────────

def mk_env(
    arch: Arch,
    subs: list[Sub] | tuple[Sub, ...],
    specs: list[FunSpec],
    *,
    stack_range: MemRange | None = None,
    exp_conds: list[ExpCond] | None = None,
    use_fun_input_regs: bool = True,
    num_unroll: int = config.NUM_UNROLL,
    var_gen: VarGen | None = None,
) -> Environment:
    """Build an environment whose variable set covers the register file."""
    env = Environment(
        arch=arch,
        subs={s.name: s for s in subs},
        specs=list(specs),
        exp_conds=list(exp_conds or []),
        stack_range=stack_range or MemRange(),
        var_gen=var_gen or VarGen(),
        use_fun_input_regs=use_fun_input_regs,
        num_unroll=num_unroll,
    )
    _seed_registers(env)
    return env


def _seed_registers(env: Environment) -> None:
    for name in sorted(env.arch.registers):
        env.get_var(env.reg_var(name))
    env.get_mem()


def freshen(env: Environment) -> Environment:
    """Copy of *env* whose introduced names are disjoint from unfreshened ones.

    Must be called before any constraint is built from the environment.
    """
    fresh = env.copy()
    fresh.freshen = True
    fresh.var_map = {}
    fresh.init_map = {}
    fresh.call_vars = {}
    fresh.introduced = set()
    _seed_registers(fresh)
    logger.debug("Freshened environment for %s (%d constants)",
                 env.arch.name, len(fresh.introduced))
    return fresh


def set_freshen(env: Environment, flag: bool) -> Environment:
    return freshen(env) if flag else env


def smtlib_decls(env: Environment, suffix: str = "") -> dict[str, Any]:
    """Names a user may mention in SMT-LIB text, mapped to z3 symbols."""
    decls: dict[str, Any] = {}
    for name, const in env.var_map.items():
        decls[name + suffix] = const
    for name, const in env.init_map.items():
        decls[INIT_PREFIX + name + suffix] = const
    return decls
