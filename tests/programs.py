"""Small lifted programs shared by the test modules."""
from __future__ import annotations

import json
from pathlib import Path

from binwp.arch import X86_64
from binwp.ir import (
    BinOp, Blk, Def, Int, Jmp, Load, Program, Sub, Var, program_to_dict,
)

RAX = Var("RAX", 64)
RDI = Var("RDI", 64)
RSP = Var("RSP", 64)
MEM = Var("mem", 0, True)


def u64(value: int) -> Int:
    return Int(value, 64)


def ret(tid: str = "ret") -> Jmp:
    return Jmp(tid, "ret")


def goto(tid: str, target: str, cond=None) -> Jmp:
    if cond is None:
        return Jmp(tid, "goto", target=target)
    return Jmp(tid, "goto", cond=cond, target=target)


def call(tid: str, callee: str, return_to: str | None, cond=None) -> Jmp:
    if cond is None:
        return Jmp(tid, "call", target=callee, return_to=return_to)
    return Jmp(tid, "call", cond=cond, target=callee, return_to=return_to)


def straight(name: str, *defs: Def) -> Sub:
    """One block running *defs* and returning."""
    return Sub(name, (Blk("b0", tuple(defs), (ret("j0"),)),))


def return_const(name: str = "f", value: int = 0) -> Sub:
    return straight(name, Def("d0", RAX, u64(value)))


def return_rdi_plus(name: str = "f", k: int = 1) -> Sub:
    return straight(name, Def("d0", RAX, BinOp("plus", RDI, u64(k))))


def load_rdi(name: str = "f") -> Sub:
    return straight(name, Def("d0", RAX, Load(MEM, RDI, 64)))


def counting_loop(name: str = "f", bound: int | None = 3) -> Sub:
    """``RAX = 0; while RAX < bound: RAX += 1``; ``bound=None`` loops to RDI."""
    limit = u64(bound) if bound is not None else RDI
    init = () if bound is None else (Def("d0", RAX, u64(0)),)
    return Sub(name, (
        Blk("b0", init),
        Blk("b1", (), (goto("j1", "b2", cond=BinOp("lt", RAX, limit)),
                       goto("j2", "b3"))),
        Blk("b2", (Def("d1", RAX, BinOp("plus", RAX, u64(1))),),
            (goto("j3", "b1"),)),
        Blk("b3", (), (ret("j4"),)),
    ))


def program(*subs: Sub, symbols=()) -> Program:
    return Program(X86_64, tuple(subs), tuple(symbols))


def write_program(path: Path, prog: Program) -> str:
    path.write_text(json.dumps(program_to_dict(prog)), encoding="utf-8")
    return str(path)
