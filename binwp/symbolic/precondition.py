"""
Binwp — Weakest-precondition builder.

Walks the control-flow graph of a subroutine and produces the constraint
tree whose truth on the initial state guarantees the postcondition on
every exit:

    wp(x := e, Q)                = Q[x := e]
    wp(when c goto L; rest, Q)   = ite(c, wp(L, Q), wp(rest, Q))
    wp(call f with return L, Q)  = spec_f(wp(L, Q)[called_f := true])
    wp(ret, Q)                   = Q

Loops are unrolled: a loop header may be entered ``num_unroll + 1`` times
on one path (``num_unroll`` iterations of the body plus the exit test).  A
path that would enter it again ends in a loop-cut goal (assumed to hold)
and the header is recorded in ``Environment.truncated_loops``; the solver
adapter then checks whether any cut is reachable.  A loop's entry count is
forgotten once the path leaves the loop body, so sequential loops add to
the size of the tree instead of multiplying it.
"""
from __future__ import annotations

import logging
from typing import Callable

import z3

from binwp.errors import MalformedCfgError
from binwp.ir import TRUE, Blk, Def, Jmp, Sub, Var, callees, sub_vars
from binwp.symbolic.constraint import (
    Constraint, mk_clause, mk_goal, mk_ite, mk_loop_cut, mk_subst,
)
from binwp.symbolic.environment import (
    Environment, ExpCond, ExpCondResult, MemAccess,
)
from binwp.symbolic.expressions import (
    load_bytes, translate, translate_cond,
)
from binwp.symbolic.specs import resolve

logger = logging.getLogger("binwp.symbolic.precondition")

UnrollState = tuple[tuple[str, int], ...]


# ── Entry points ──────────────────────────────────────────────────────

def visit_sub(env: Environment, post: Constraint,
              sub: Sub) -> tuple[Constraint, Environment]:
    """Weakest precondition of *sub* for *post*.

    *env* is updated in place (new constants, truncated loops) and returned.
    """
    if not sub.blks:
        return post, env
    walker = _SubWalker(env, post, sub)
    pre = walker.visit_blk(sub.blks[0].tid, ())
    return pre, env


def visit_def(env: Environment, post: Constraint, d: Def) -> Constraint:
    accesses: list[MemAccess] = []
    rhs = translate(d.rhs, env, d.tid, accesses)
    lhs = env.get_var(d.lhs)
    body = mk_subst(post, [lhs], [rhs])
    return with_exp_conds(env, body, accesses)


def with_exp_conds(env: Environment, constr: Constraint,
                   accesses: list[MemAccess]) -> Constraint:
    """Guard *constr* with whatever the hooks say about *accesses*."""
    hyps: list[Constraint] = []
    vcs: list[Constraint] = []
    for access in accesses:
        for hook in env.exp_conds:
            res = hook(env, access)
            if res is None:
                continue
            (vcs if res.kind == "verify" else hyps).append(res.goal)
    if not hyps and not vcs:
        return constr
    return mk_clause(hyps, vcs + [constr])


# ── CFG walk ──────────────────────────────────────────────────────────

def _term_name(tid: str, attrs: dict) -> str:
    addr = attrs.get("address")
    if isinstance(addr, int):
        return f"{tid} ({addr:#x})"
    return tid


def _falls_through(blk: Blk) -> bool:
    return not any(j.cond == TRUE for j in blk.jmps)


def _enter(state: UnrollState, header: str) -> UnrollState:
    """Count one more entry into *header*; inner loops start over."""
    for i, (h, count) in enumerate(state):
        if h == header:
            return state[:i] + ((h, count + 1),)
    return state + ((header, 1),)


class _SubWalker:
    """Memoized walk of one subroutine's blocks under one postcondition.

    Blocks are keyed by their tid and the entry counts of the loops that
    enclose them.  A block depends on the blocks its jumps and fall-through
    reach; the walk builds dependencies first from an explicit work list,
    so long paths do not consume Python stack frames.
    """

    def __init__(self, env: Environment, post: Constraint, sub: Sub) -> None:
        self.env = env
        self.post = post
        self.sub = sub
        self.blocks = {b.tid: b for b in sub.blks}
        self.next_blk = {
            b.tid: (sub.blks[i + 1].tid if i + 1 < len(sub.blks) else None)
            for i, b in enumerate(sub.blks)
        }
        self.loops = self._natural_loops()
        self.memo: dict[tuple[str, UnrollState], Constraint] = {}

    def _successors(self, blk: Blk) -> list[str]:
        succs: list[str] = []
        for j in blk.jmps:
            if j.kind == "goto" and j.target:
                succs.append(j.target)
            elif j.kind in ("call", "int") and j.return_to:
                succs.append(j.return_to)
        nxt = self.next_blk[blk.tid]
        if _falls_through(blk) and nxt is not None:
            succs.append(nxt)
        return succs

    def _back_edges(self) -> list[tuple[str, str]]:
        """``(source, header)`` pairs of a depth-first walk from the entry."""
        edges: list[tuple[str, str]] = []
        on_stack: set[str] = set()
        done: set[str] = set()
        entry = self.sub.blks[0].tid
        stack: list[tuple[str, list[str]]] = [
            (entry, self._successors(self.blocks[entry])),
        ]
        on_stack.add(entry)
        while stack:
            tid, succs = stack[-1]
            if not succs:
                stack.pop()
                on_stack.discard(tid)
                done.add(tid)
                continue
            nxt = succs.pop(0)
            if nxt in on_stack:
                edges.append((tid, nxt))
            elif nxt not in done and nxt in self.blocks:
                on_stack.add(nxt)
                stack.append((nxt, self._successors(self.blocks[nxt])))
        return edges

    def _natural_loops(self) -> dict[str, frozenset[str]]:
        """Each loop header mapped to the blocks of its loop body."""
        preds: dict[str, set[str]] = {}
        for b in self.sub.blks:
            for s in self._successors(b):
                preds.setdefault(s, set()).add(b.tid)
        bodies: dict[str, set[str]] = {}
        for src, header in self._back_edges():
            body = bodies.setdefault(header, {header})
            todo = [src]
            while todo:
                tid = todo.pop()
                if tid in body:
                    continue
                body.add(tid)
                todo.extend(preds.get(tid, ()))
        if bodies:
            logger.debug("Loop headers in %s: %s", self.sub.name,
                         sorted(bodies))
        return {h: frozenset(b) for h, b in bodies.items()}

    # ── Blocks ────────────────────────────────────────────────────────

    def _key(self, tid: str, state: UnrollState) -> tuple[str, UnrollState]:
        """Key of entering *tid* from *state*.

        Counts of loops that do not contain *tid* are dropped, so code
        after a loop is shared by every iteration count that exits it.
        """
        state = tuple((h, n) for h, n in state if tid in self.loops[h])
        if tid in self.loops:
            state = _enter(state, tid)
        return tid, state

    def _is_cut(self, key: tuple[str, UnrollState]) -> bool:
        tid, state = key
        return (tid in self.loops
                and dict(state)[tid] > self.env.num_unroll + 1)

    def _block(self, tid: str) -> Blk:
        blk = self.blocks.get(tid)
        if blk is None:
            raise MalformedCfgError(
                f"{self.sub.name}: jump to missing block {tid}"
            )
        return blk

    def _deps(self, key: tuple[str, UnrollState],
              ) -> list[tuple[str, UnrollState]]:
        if self._is_cut(key):
            return []
        tid, state = key
        blk = self._block(tid)
        return [self._key(s, state) for s in self._successors(blk)]

    def visit_blk(self, tid: str, state: UnrollState) -> Constraint:
        root = self._key(tid, state)
        stack: list[tuple[tuple[str, UnrollState], bool]] = [(root, False)]
        while stack:
            key, ready = stack.pop()
            if key in self.memo:
                continue
            if not ready:
                pending = [k for k in self._deps(key) if k not in self.memo]
                if pending:
                    stack.append((key, True))
                    stack.extend((k, False) for k in pending)
                    continue
            self.memo[key] = self._build(key)
        return self.memo[root]

    def _lookup(self, tid: str, state: UnrollState) -> Constraint:
        return self.memo[self._key(tid, state)]

    def _build(self, key: tuple[str, UnrollState]) -> Constraint:
        tid, state = key
        if self._is_cut(key):
            if tid not in self.env.truncated_loops:
                logger.warning(
                    "Loop at %s in %s unrolled %d times; the result "
                    "holds only up to this bound.",
                    tid, self.sub.name, self.env.num_unroll,
                )
            self.env.truncated_loops.add(tid)
            return mk_loop_cut(
                f"loop at {tid} cut after {self.env.num_unroll} iterations"
            )

        blk = self._block(tid)
        nxt = self.next_blk[tid]
        if _falls_through(blk) and nxt is not None:
            pre = self._lookup(nxt, state)
        else:
            pre = self.post
        for jmp in reversed(blk.jmps):
            pre = self.visit_jmp(jmp, pre, state)
        for d in reversed(blk.defs):
            pre = visit_def(self.env, pre, d)
        return pre

    # ── Jumps ─────────────────────────────────────────────────────────


    def visit_jmp(self, jmp: Jmp, orelse: Constraint,
                  state: UnrollState) -> Constraint:
        accesses: list[MemAccess] = []
        cond = translate_cond(jmp.cond, self.env, jmp.tid, accesses)
        if z3.is_false(cond):
            return with_exp_conds(self.env, orelse, accesses)
        taken = self._taken(jmp, state)
        ite = mk_ite(_term_name(jmp.tid, jmp.attrs), cond, taken, orelse)
        return with_exp_conds(self.env, ite, accesses)

    def _taken(self, jmp: Jmp, state: UnrollState) -> Constraint:
        if jmp.kind == "goto":
            if jmp.target is None:
                raise MalformedCfgError(
                    f"{self.sub.name}: goto {jmp.tid} has no target"
                )
            return self._lookup(jmp.target, state)
        if jmp.kind == "ret":
            return self.post
        after = (self._lookup(jmp.return_to, state)
                 if jmp.return_to else self.post)
        if jmp.kind == "int":
            return after
        return self._call(jmp, after)

    def _call(self, jmp: Jmp, after: Constraint) -> Constraint:
        name = jmp.target or f"indirect_{jmp.tid}"
        after = mk_subst(after, [self.env.call_var(name)], [z3.BoolVal(True)])
        callee = self.env.get_sub(name) or Sub(name)
        spec = resolve(self.env, callee)
        pre, self.env = spec.apply(self.env, after, callee, jmp)
        return pre


# ── Variables and hypotheses ──────────────────────────────────────────

def reachable_callees(env: Environment, sub: Sub) -> set[str]:
    """Callees of *sub*, following into the bodies *env* knows about."""
    found: set[str] = set()
    todo = list(callees(sub))
    while todo:
        name = todo.pop()
        if name in found:
            continue
        found.add(name)
        body = env.get_sub(name)
        if body is not None:
            todo.extend(callees(body))
    return found


def get_vars(env: Environment, sub: Sub) -> set[Var]:
    """Registers and memory relevant to *sub*.

    Covers the bodies of known callees and, when call outputs depend on
    them, the argument registers.
    """
    found = set(sub_vars(sub))
    for name in reachable_callees(env, sub):
        body = env.get_sub(name)
        if body is not None:
            found.update(sub_vars(body))
    if env.use_fun_input_regs:
        found.update(env.reg_var(r) for r in env.arch.input_regs)
    for reg in (env.arch.stack_pointer, env.arch.return_reg):
        if reg is not None:
            found.add(env.reg_var(reg))
    found.add(env.mem_var())
    return found


def set_of_reg_names(env: Environment, names: list[str]) -> set[Var]:
    return {env.reg_var(n) for n in names}


def init_vars(variables: set[Var] | list[Var],
              env: Environment) -> tuple[list[Constraint], Environment]:
    """Hypotheses tying ``init_<v>`` to each variable's entry value."""
    hyps: list[Constraint] = []
    for var in sorted(variables, key=lambda v: v.name):
        init = env.get_init_var(var)
        hyps.append(mk_goal(f"init_{var.name}", init == env.get_var(var)))
    return hyps, env


def set_sp_range(env: Environment) -> Constraint:
    """The stack pointer starts inside the configured stack."""
    sp_name = env.arch.stack_pointer
    if sp_name is None:
        return env.trivial_constr()
    sp = env.get_var(env.reg_var(sp_name))
    width = sp.size()
    mask = (1 << width) - 1
    base = env.stack_range.base & mask
    bottom = (env.stack_range.base - env.stack_range.size) & mask
    return mk_goal(
        "stack pointer in range",
        z3.And(z3.ULE(sp, z3.BitVecVal(base, width)),
               z3.UGT(sp, z3.BitVecVal(bottom, width))),
    )


# ── Expected-condition hooks ──────────────────────────────────────────

def _non_null(kind: str, result: str) -> ExpCond:
    def hook(env: Environment, access: MemAccess) -> ExpCondResult | None:
        if access.kind != kind:
            return None
        zero = z3.BitVecVal(0, access.addr.size())
        return ExpCondResult(
            result,
            mk_goal(f"non-null {kind} at {access.tid}", access.addr != zero),
        )

    hook.__name__ = f"non_null_{kind}_{result}"
    return hook


non_null_load_vc = _non_null("load", "verify")
non_null_store_vc = _non_null("store", "verify")
non_null_load_assert = _non_null("load", "assume")
non_null_store_assert = _non_null("store", "assume")


def mem_read_offsets(
    env_mod: Environment,
    offset: Callable[[z3.BitVecRef], z3.BitVecRef],
) -> ExpCond:
    """Assume each load reads what the modified binary holds at *offset*.

    Refers to the modified side's initial memory, so *env_mod* must already
    exist (and be freshened) when the original side is built.
    """
    mem_mod = env_mod.get_mem()

    def hook(env: Environment, access: MemAccess) -> ExpCondResult | None:
        if access.kind != "load":
            return None
        orig = load_bytes(env.get_mem(), access.addr, access.size)
        modif = load_bytes(mem_mod, offset(access.addr), access.size)
        return ExpCondResult(
            "assume",
            mk_goal(f"memory offset at {access.tid}", orig == modif),
        )

    return hook
