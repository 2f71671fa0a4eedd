"""
Binwp — Cross-binary address correlation.

When a patch moves data, the same global lives at different addresses in
the two binaries.  Symbols that appear in both are matched by name, and an
address inside a symbol of the original binary is mapped to the same
offset inside its counterpart in the modified one.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

import z3

from binwp.ir import Symbol

logger = logging.getLogger("binwp.verifier.symbols")

AddrMap = Callable[[z3.BitVecRef], z3.BitVecRef]


def matching_symbols(
    orig: Iterable[Symbol], modif: Iterable[Symbol],
) -> list[tuple[Symbol, Symbol]]:
    """Pairs of same-named symbols, skipping those that did not move."""
    by_name = {s.name: s for s in modif}
    pairs: list[tuple[Symbol, Symbol]] = []
    for sym in orig:
        other = by_name.get(sym.name)
        if other is None or other.addr == sym.addr:
            continue
        if other.size != sym.size:
            logger.warning("Symbol %s changed size (%d → %d); mapping the "
                           "common prefix only.", sym.name, sym.size,
                           other.size)
        pairs.append((sym, other))
    return pairs


def offset_constraint(orig: Iterable[Symbol],
                      modif: Iterable[Symbol]) -> AddrMap:
    """Map an original address to the modified binary's address.

    Addresses outside every moved symbol map to themselves.
    """
    pairs = matching_symbols(orig, modif)
    logger.info("Correlating %d moved symbol(s)", len(pairs))

    def offset(addr: z3.BitVecRef) -> z3.BitVecRef:
        width = addr.size()
        out = addr
        for sym, other in reversed(pairs):
            size = min(sym.size, other.size)
            lo = z3.BitVecVal(sym.addr, width)
            hi = z3.BitVecVal(sym.addr + size, width)
            moved = addr - lo + z3.BitVecVal(other.addr, width)
            out = z3.If(z3.And(z3.UGE(addr, lo), z3.ULT(addr, hi)),
                        moved, out)
        return out

    return offset


def identity(addr: z3.BitVecRef) -> z3.BitVecRef:
    return addr
