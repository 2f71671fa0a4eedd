"""
Binwp — IR expression → z3 translation.

Registers are bit-vectors of their declared width; memory is an array from
addresses to bytes.  One-bit vectors double as booleans: conditions are
compared against ``1``.  Every load and store met during translation is
reported through *accesses* so the expected-condition hooks can see them.
"""
from __future__ import annotations

import logging
from typing import Callable

import z3

from binwp.errors import BinwpError
from binwp.ir import (
    BinOp, Cast, Concat, Expr, Extract, Int, Ite, Load, Store, UnOp,
    Unknown, Var,
)
from binwp.symbolic.environment import Environment, MemAccess

logger = logging.getLogger("binwp.symbolic.expressions")

BIT1 = z3.BitVecVal(1, 1)
BIT0 = z3.BitVecVal(0, 1)


def bool_to_bit(b: z3.BoolRef) -> z3.BitVecRef:
    return z3.If(b, BIT1, BIT0)


def bit_to_bool(bv: z3.BitVecRef) -> z3.BoolRef:
    if bv.size() == 1:
        return bv == BIT1
    return bv != z3.BitVecVal(0, bv.size())


def _fit(bv: z3.BitVecRef, width: int) -> z3.BitVecRef:
    """Zero-extend or truncate *bv* to *width* bits."""
    if bv.size() == width:
        return bv
    if bv.size() < width:
        return z3.ZeroExt(width - bv.size(), bv)
    return z3.Extract(width - 1, 0, bv)


# ── Memory ────────────────────────────────────────────────────────────

def load_bytes(mem: z3.ArrayRef, addr: z3.BitVecRef, size: int,
               endian: str = "little") -> z3.BitVecRef:
    """Read *size* bits starting at *addr*."""
    nbytes = max(size // 8, 1)
    parts = [z3.Select(mem, addr if i == 0 else addr + i)
             for i in range(nbytes)]
    if endian == "little":
        parts.reverse()
    value = parts[0] if nbytes == 1 else z3.Concat(*parts)
    return _fit(value, size)


def store_bytes(mem: z3.ArrayRef, addr: z3.BitVecRef, value: z3.BitVecRef,
                size: int, endian: str = "little") -> z3.ArrayRef:
    nbytes = max(size // 8, 1)
    value = _fit(value, nbytes * 8)
    for i in range(nbytes):
        lo = 8 * i if endian == "little" else 8 * (nbytes - 1 - i)
        mem = z3.Store(mem, addr if i == 0 else addr + i,
                       z3.Extract(lo + 7, lo, value))
    return mem


# ── Operators ─────────────────────────────────────────────────────────

_ARITH: dict[str, Callable[[z3.BitVecRef, z3.BitVecRef], z3.BitVecRef]] = {
    "plus": lambda a, b: a + b,
    "minus": lambda a, b: a - b,
    "times": lambda a, b: a * b,
    "divide": z3.UDiv,
    "sdivide": lambda a, b: a / b,
    "mod": z3.URem,
    "smod": z3.SRem,
    "and": lambda a, b: a & b,
    "or": lambda a, b: a | b,
    "xor": lambda a, b: a ^ b,
}

_SHIFT: dict[str, Callable[[z3.BitVecRef, z3.BitVecRef], z3.BitVecRef]] = {
    "lshift": lambda a, b: a << b,
    "rshift": z3.LShR,
    "arshift": lambda a, b: a >> b,
}

_CMP: dict[str, Callable[[z3.BitVecRef, z3.BitVecRef], z3.BoolRef]] = {
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
    "lt": z3.ULT,
    "le": z3.ULE,
    "slt": lambda a, b: a < b,
    "sle": lambda a, b: a <= b,
}


def apply_binop(op: str, lhs: z3.BitVecRef,
                rhs: z3.BitVecRef) -> z3.BitVecRef:
    if op in _SHIFT:
        return _SHIFT[op](lhs, _fit(rhs, lhs.size()))
    if lhs.size() != rhs.size():
        raise BinwpError(
            f"Width mismatch in {op}: {lhs.size()} vs {rhs.size()}"
        )
    if op in _ARITH:
        return _ARITH[op](lhs, rhs)
    if op in _CMP:
        return bool_to_bit(_CMP[op](lhs, rhs))
    raise BinwpError(f"Unsupported binary operator: {op}")


def apply_cast(kind: str, width: int, arg: z3.BitVecRef) -> z3.BitVecRef:
    size = arg.size()
    if kind == "low":
        return z3.Extract(width - 1, 0, arg)
    if kind == "high":
        return z3.Extract(size - 1, size - width, arg)
    if width <= size:
        return z3.Extract(width - 1, 0, arg)
    if kind == "unsigned":
        return z3.ZeroExt(width - size, arg)
    if kind == "signed":
        return z3.SignExt(width - size, arg)
    raise BinwpError(f"Unsupported cast: {kind}")


# ── Translation ───────────────────────────────────────────────────────

def translate(expr: Expr, env: Environment, tid: str = "",
              accesses: list[MemAccess] | None = None) -> z3.ExprRef:
    """Translate *expr* in the current state of *env*."""

    def go(e: Expr) -> z3.ExprRef:
        if isinstance(e, Var):
            return env.get_var(e)
        if isinstance(e, Int):
            return z3.BitVecVal(e.value, e.width)
        if isinstance(e, Load):
            addr = go(e.addr)
            if accesses is not None:
                accesses.append(MemAccess("load", addr, e.size, tid))
            return load_bytes(go(e.mem), addr, e.size, e.endian)
        if isinstance(e, Store):
            addr = go(e.addr)
            if accesses is not None:
                accesses.append(MemAccess("store", addr, e.size, tid))
            return store_bytes(go(e.mem), addr, go(e.value), e.size, e.endian)
        if isinstance(e, BinOp):
            return apply_binop(e.op, go(e.lhs), go(e.rhs))
        if isinstance(e, UnOp):
            arg = go(e.arg)
            return -arg if e.op == "neg" else ~arg
        if isinstance(e, Cast):
            return apply_cast(e.kind, e.width, go(e.arg))
        if isinstance(e, Ite):
            return z3.If(bit_to_bool(go(e.cond)), go(e.then), go(e.orelse))
        if isinstance(e, Extract):
            return z3.Extract(e.hi, e.lo, go(e.arg))
        if isinstance(e, Concat):
            return z3.Concat(go(e.lhs), go(e.rhs))
        if isinstance(e, Unknown):
            return env.fresh("unknown", e.width)
        raise BinwpError(f"Unsupported expression: {e!r}")

    return go(expr)


def translate_cond(expr: Expr, env: Environment, tid: str = "",
                   accesses: list[MemAccess] | None = None) -> z3.BoolRef:
    return z3.simplify(bit_to_bool(translate(expr, env, tid, accesses)))
