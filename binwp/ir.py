"""
Binwp — Lifted program representation.

The external lifter hands us subroutines as JSON.  This module holds the
frozen dataclasses the engine walks, the JSON codec, and the attribute
stripper applied before programs are cached.

Block semantics: the jumps of a block are tried in order and the first
whose condition holds is taken.  If none is taken, control falls through
to the next block of the subroutine (or leaves it, for the last block).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Union

from binwp.arch import Arch, arch_of_string
from binwp.errors import BinwpError

logger = logging.getLogger("binwp.ir")

ADDRESS = "address"

BINOPS = frozenset({
    "plus", "minus", "times", "divide", "sdivide", "mod", "smod",
    "lshift", "rshift", "arshift", "and", "or", "xor",
    "eq", "neq", "lt", "le", "slt", "sle",
})
UNOPS = frozenset({"neg", "not"})
CASTS = frozenset({"unsigned", "signed", "high", "low"})
JMP_KINDS = frozenset({"goto", "call", "ret", "int"})


# ── Expressions ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Var:
    """A register (fixed bit width) or the memory variable (width 0)."""
    name: str
    width: int = 0
    is_mem: bool = False


@dataclass(frozen=True)
class Int:
    value: int
    width: int


@dataclass(frozen=True)
class Load:
    mem: Expr
    addr: Expr
    size: int
    endian: str = "little"


@dataclass(frozen=True)
class Store:
    mem: Expr
    addr: Expr
    value: Expr
    size: int
    endian: str = "little"


@dataclass(frozen=True)
class BinOp:
    op: str
    lhs: Expr
    rhs: Expr


@dataclass(frozen=True)
class UnOp:
    op: str
    arg: Expr


@dataclass(frozen=True)
class Cast:
    kind: str
    width: int
    arg: Expr


@dataclass(frozen=True)
class Ite:
    cond: Expr
    then: Expr
    orelse: Expr


@dataclass(frozen=True)
class Extract:
    hi: int
    lo: int
    arg: Expr


@dataclass(frozen=True)
class Concat:
    lhs: Expr
    rhs: Expr


@dataclass(frozen=True)
class Unknown:
    """A value the lifter could not give semantics to."""
    width: int
    reason: str = ""


Expr = Union[Var, Int, Load, Store, BinOp, UnOp, Cast, Ite, Extract,
             Concat, Unknown]

TRUE = Int(1, 1)


# ── Terms ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Def:
    tid: str
    lhs: Var
    rhs: Expr
    attrs: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Jmp:
    """A (possibly conditional) transfer of control.

    ``goto``: ``target`` is a block tid.  ``call``: ``target`` is the callee
    name and ``return_to`` the block the call returns to (``None`` for a
    call that never returns).  ``ret`` leaves the subroutine.  ``int`` is an
    interrupt that resumes at ``return_to``.
    """
    tid: str
    kind: str
    cond: Expr = TRUE
    target: str | None = None
    return_to: str | None = None
    attrs: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Blk:
    tid: str
    defs: tuple[Def, ...] = ()
    jmps: tuple[Jmp, ...] = ()
    attrs: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Arg:
    var: Var
    intent: str = "in"


@dataclass(frozen=True)
class Sub:
    name: str
    blks: tuple[Blk, ...] = ()
    args: tuple[Arg, ...] = ()
    attrs: dict[str, Any] = field(default_factory=dict, compare=False)

    def find_blk(self, tid: str) -> Blk | None:
        for blk in self.blks:
            if blk.tid == tid:
                return blk
        return None


@dataclass(frozen=True)
class Symbol:
    """A data or bss symbol, used to correlate addresses across binaries."""
    name: str
    addr: int
    size: int


@dataclass(frozen=True)
class Program:
    arch: Arch
    subs: tuple[Sub, ...] = ()
    symbols: tuple[Symbol, ...] = ()

    def find_sub(self, name: str) -> Sub | None:
        for sub in self.subs:
            if sub.name == name:
                return sub
        return None


# ── Traversal helpers ─────────────────────────────────────────────────

def free_vars(expr: Expr) -> Iterator[Var]:
    """Yield every variable read by *expr* (duplicates included)."""
    if isinstance(expr, Var):
        yield expr
    elif isinstance(expr, (Int, Unknown)):
        return
    elif isinstance(expr, Load):
        yield from free_vars(expr.mem)
        yield from free_vars(expr.addr)
    elif isinstance(expr, Store):
        yield from free_vars(expr.mem)
        yield from free_vars(expr.addr)
        yield from free_vars(expr.value)
    elif isinstance(expr, (BinOp, Concat)):
        yield from free_vars(expr.lhs)
        yield from free_vars(expr.rhs)
    elif isinstance(expr, (UnOp, Cast, Extract)):
        yield from free_vars(expr.arg)
    elif isinstance(expr, Ite):
        yield from free_vars(expr.cond)
        yield from free_vars(expr.then)
        yield from free_vars(expr.orelse)
    else:
        raise BinwpError(f"Unknown expression: {expr!r}")


def sub_vars(sub: Sub) -> set[Var]:
    """Every variable read or written in the body of *sub*."""
    found: set[Var] = set()
    for blk in sub.blks:
        for d in blk.defs:
            found.add(d.lhs)
            found.update(free_vars(d.rhs))
        for j in blk.jmps:
            found.update(free_vars(j.cond))
    return found


def callees(sub: Sub) -> list[str]:
    """Names of the direct call targets of *sub*, in first-seen order."""
    names: list[str] = []
    for blk in sub.blks:
        for j in blk.jmps:
            if j.kind == "call" and j.target and j.target not in names:
                names.append(j.target)
    return names


# ── Attribute stripping ───────────────────────────────────────────────

def _keep_address(attrs: dict[str, Any]) -> dict[str, Any]:
    if ADDRESS in attrs:
        return {ADDRESS: attrs[ADDRESS]}
    return {}


def _strip_blk(blk: Blk) -> Blk:
    return replace(
        blk,
        defs=tuple(replace(d, attrs=_keep_address(d.attrs)) for d in blk.defs),
        jmps=tuple(replace(j, attrs=_keep_address(j.attrs)) for j in blk.jmps),
        attrs=_keep_address(blk.attrs),
    )


def strip_attributes(prog: Program) -> Program:
    """Drop every term attribute except the address (kept for paths)."""
    subs = tuple(
        replace(s, blks=tuple(_strip_blk(b) for b in s.blks),
                attrs=_keep_address(s.attrs))
        for s in prog.subs
    )
    return replace(prog, subs=subs)


# ── JSON codec ────────────────────────────────────────────────────────

def expr_from_dict(d: dict[str, Any]) -> Expr:
    kind = d.get("kind")
    if kind == "var":
        return Var(d["name"], d.get("width", 0), d.get("is_mem", False))
    if kind == "int":
        return Int(int(d["value"]), d["width"])
    if kind == "load":
        return Load(expr_from_dict(d["mem"]), expr_from_dict(d["addr"]),
                    d["size"], d.get("endian", "little"))
    if kind == "store":
        return Store(expr_from_dict(d["mem"]), expr_from_dict(d["addr"]),
                     expr_from_dict(d["value"]), d["size"],
                     d.get("endian", "little"))
    if kind == "binop":
        if d["op"] not in BINOPS:
            raise BinwpError(f"Unknown binary operator: {d['op']}")
        return BinOp(d["op"], expr_from_dict(d["lhs"]),
                     expr_from_dict(d["rhs"]))
    if kind == "unop":
        if d["op"] not in UNOPS:
            raise BinwpError(f"Unknown unary operator: {d['op']}")
        return UnOp(d["op"], expr_from_dict(d["arg"]))
    if kind == "cast":
        if d["cast"] not in CASTS:
            raise BinwpError(f"Unknown cast: {d['cast']}")
        return Cast(d["cast"], d["width"], expr_from_dict(d["arg"]))
    if kind == "ite":
        return Ite(expr_from_dict(d["cond"]), expr_from_dict(d["then"]),
                   expr_from_dict(d["else"]))
    if kind == "extract":
        return Extract(d["hi"], d["lo"], expr_from_dict(d["arg"]))
    if kind == "concat":
        return Concat(expr_from_dict(d["lhs"]), expr_from_dict(d["rhs"]))
    if kind == "unknown":
        return Unknown(d["width"], d.get("reason", ""))
    raise BinwpError(f"Unknown expression kind: {kind!r}")


def expr_to_dict(e: Expr) -> dict[str, Any]:
    if isinstance(e, Var):
        return {"kind": "var", "name": e.name, "width": e.width,
                "is_mem": e.is_mem}
    if isinstance(e, Int):
        return {"kind": "int", "value": e.value, "width": e.width}
    if isinstance(e, Load):
        return {"kind": "load", "mem": expr_to_dict(e.mem),
                "addr": expr_to_dict(e.addr), "size": e.size,
                "endian": e.endian}
    if isinstance(e, Store):
        return {"kind": "store", "mem": expr_to_dict(e.mem),
                "addr": expr_to_dict(e.addr), "value": expr_to_dict(e.value),
                "size": e.size, "endian": e.endian}
    if isinstance(e, BinOp):
        return {"kind": "binop", "op": e.op, "lhs": expr_to_dict(e.lhs),
                "rhs": expr_to_dict(e.rhs)}
    if isinstance(e, UnOp):
        return {"kind": "unop", "op": e.op, "arg": expr_to_dict(e.arg)}
    if isinstance(e, Cast):
        return {"kind": "cast", "cast": e.kind, "width": e.width,
                "arg": expr_to_dict(e.arg)}
    if isinstance(e, Ite):
        return {"kind": "ite", "cond": expr_to_dict(e.cond),
                "then": expr_to_dict(e.then), "else": expr_to_dict(e.orelse)}
    if isinstance(e, Extract):
        return {"kind": "extract", "hi": e.hi, "lo": e.lo,
                "arg": expr_to_dict(e.arg)}
    if isinstance(e, Concat):
        return {"kind": "concat", "lhs": expr_to_dict(e.lhs),
                "rhs": expr_to_dict(e.rhs)}
    if isinstance(e, Unknown):
        return {"kind": "unknown", "width": e.width, "reason": e.reason}
    raise BinwpError(f"Unknown expression: {e!r}")


def _var_from_dict(d: dict[str, Any]) -> Var:
    if d.get("kind", "var") != "var":
        raise BinwpError(f"Expected a variable, got {d['kind']!r}")
    return Var(d["name"], d.get("width", 0), d.get("is_mem", False))


def _jmp_from_dict(d: dict[str, Any]) -> Jmp:
    if d["kind"] not in JMP_KINDS:
        raise BinwpError(f"Unknown jump kind: {d['kind']}")
    cond = expr_from_dict(d["cond"]) if "cond" in d else TRUE
    return Jmp(d["tid"], d["kind"], cond, d.get("target"),
               d.get("return_to"), dict(d.get("attrs", {})))


def _blk_from_dict(d: dict[str, Any]) -> Blk:
    defs = tuple(
        Def(x["tid"], _var_from_dict(x["lhs"]), expr_from_dict(x["rhs"]),
            dict(x.get("attrs", {})))
        for x in d.get("defs", [])
    )
    jmps = tuple(_jmp_from_dict(x) for x in d.get("jmps", []))
    return Blk(d["tid"], defs, jmps, dict(d.get("attrs", {})))


def program_from_dict(d: dict[str, Any]) -> Program:
    subs = tuple(
        Sub(
            s["name"],
            tuple(_blk_from_dict(b) for b in s.get("blks", [])),
            tuple(Arg(_var_from_dict(a["var"]), a.get("intent", "in"))
                  for a in s.get("args", [])),
            dict(s.get("attrs", {})),
        )
        for s in d.get("subs", [])
    )
    symbols = tuple(Symbol(x["name"], int(x["addr"]), int(x["size"]))
                    for x in d.get("symbols", []))
    return Program(arch_of_string(d["arch"]), subs, symbols)


def _var_to_dict(v: Var) -> dict[str, Any]:
    d = expr_to_dict(v)
    del d["kind"]
    return d


def program_to_dict(prog: Program) -> dict[str, Any]:
    return {
        "arch": prog.arch.name,
        "subs": [
            {
                "name": s.name,
                "attrs": s.attrs,
                "args": [{"var": _var_to_dict(a.var), "intent": a.intent}
                         for a in s.args],
                "blks": [
                    {
                        "tid": b.tid,
                        "attrs": b.attrs,
                        "defs": [{"tid": x.tid, "lhs": _var_to_dict(x.lhs),
                                  "rhs": expr_to_dict(x.rhs),
                                  "attrs": x.attrs} for x in b.defs],
                        "jmps": [{"tid": j.tid, "kind": j.kind,
                                  "cond": expr_to_dict(j.cond),
                                  "target": j.target,
                                  "return_to": j.return_to,
                                  "attrs": j.attrs} for j in b.jmps],
                    }
                    for b in s.blks
                ],
            }
            for s in prog.subs
        ],
        "symbols": [{"name": x.name, "addr": x.addr, "size": x.size}
                    for x in prog.symbols],
    }


def sub_to_string(sub: Sub) -> str:
    """Readable listing of *sub*, one term per line."""
    lines = [f"sub {sub.name}()"]
    for a in sub.args:
        lines.append(f"  arg {a.var.name} :: {a.intent}")
    for b in sub.blks:
        lines.append(f"{b.tid}:")
        for d in b.defs:
            lines.append(f"  {d.tid}: {d.lhs.name} := {d.rhs}")
        for j in b.jmps:
            dest = j.target or ""
            if j.return_to:
                dest += f" with return {j.return_to}"
            lines.append(f"  {j.tid}: when {j.cond} {j.kind} {dest}".rstrip())
    return "\n".join(lines)
