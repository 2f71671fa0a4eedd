"""Tests for comparative analysis and the comparator registry."""
import logging

import z3

from binwp.analysis import Flags, comparators_of_flags
from binwp.arch import Arch, X86_64
from binwp.ir import BinOp, Blk, Def, Int, Sub, Symbol, Var
from binwp.symbolic.environment import VarGen, freshen, mk_env
from binwp.symbolic.precondition import get_vars, set_of_reg_names
from binwp.symbolic.specs import default_specs
from binwp.verifier.compare import (
    compare_subs, compare_subs_empty_post, compare_subs_eq,
    compare_subs_fun, compare_subs_smtlib, compare_subs_sp,
)
from binwp.verifier.solver import Verdict, check, mk_solver
from binwp.verifier.symbols import identity, offset_constraint

from programs import call, ret, return_rdi_plus


def _sides(sub1, sub2, arch=X86_64):
    gen = VarGen()
    env2 = freshen(mk_env(arch, [sub2], default_specs(), var_gen=gen))
    env1 = mk_env(arch, [sub1], default_specs(), var_gen=gen)
    return (sub1, env1), (sub2, env2)


def _run(comparators, sub1, sub2):
    orig, modif = _sides(sub1, sub2)
    pre, _, _ = compare_subs([c.post for c in comparators],
                             [c.hyp for c in comparators], orig, modif)
    return check(mk_solver(), pre)


def _reg_eq(orig, modif, regs):
    all_regs = get_vars(orig[1], orig[0]) | get_vars(modif[1], modif[0])
    return compare_subs_eq(all_regs, set_of_reg_names(orig[1], regs))


class TestStackPointer:

    def test_identical_binaries_proved(self):
        sub = return_rdi_plus()
        result = _run([compare_subs_sp(X86_64)], sub, sub)
        assert result.verdict is Verdict.PROVED

    def test_sp_change_refuted(self):
        sub2 = Sub("f", (Blk("b0", (
            Def("d0", Var("RSP", 64), Int(8, 64)),
        ), (ret("j0"),)),))
        result = _run([compare_subs_sp(X86_64)], return_rdi_plus(), sub2)
        assert result.verdict is Verdict.REFUTED

    def test_arch_without_sp_is_skipped(self, caplog):
        toy = Arch("toy", 32, {"R0": 32}, return_reg="R0")
        with caplog.at_level(logging.WARNING):
            assert compare_subs_sp(toy) is None
        assert "no stack pointer" in caplog.text

    def test_registry_falls_back_to_empty_post(self, caplog):
        toy = Arch("toy", 32, {"R0": 32}, return_reg="R0")
        sub = Sub("f", (Blk("b0", (), (ret("j0"),)),))
        orig, modif = _sides(sub, sub, arch=toy)
        with caplog.at_level(logging.WARNING):
            posts, hyps = comparators_of_flags(orig, modif, Flags(func="f"))
        assert posts == [compare_subs_empty_post.post]
        assert hyps == [compare_subs_empty_post.hyp]

    def _toy_bump(self, k):
        r0 = Var("R0", 32)
        return Sub("f", (Blk("b0", (
            Def("d0", r0, BinOp("plus", r0, Int(k, 32))),
        ), (ret("j0"),)),))

    def test_other_comparators_run_without_sp(self, caplog):
        toy = Arch("toy", 32, {"R0": 32}, return_reg="R0")
        flags = Flags(func="f", compare_post_reg_values=["R0"])
        orig, modif = _sides(self._toy_bump(1), self._toy_bump(1), arch=toy)
        with caplog.at_level(logging.WARNING):
            posts, hyps = comparators_of_flags(orig, modif, flags)
        assert "no stack pointer" in caplog.text
        assert [p.__qualname__ for p in posts] == \
            ["compare_subs_eq.<locals>.post"]
        assert [h.__qualname__ for h in hyps] == \
            ["compare_subs_eq.<locals>.hyp"]
        pre, _, _ = compare_subs(posts, hyps, orig, modif)
        assert check(mk_solver(), pre).verdict is Verdict.PROVED

    def test_register_difference_found_without_sp(self):
        toy = Arch("toy", 32, {"R0": 32}, return_reg="R0")
        flags = Flags(func="f", compare_post_reg_values=["R0"])
        orig, modif = _sides(self._toy_bump(1), self._toy_bump(2), arch=toy)
        posts, hyps = comparators_of_flags(orig, modif, flags)
        pre, _, _ = compare_subs(posts, hyps, orig, modif)
        assert check(mk_solver(), pre).verdict is Verdict.REFUTED


class TestRegisterValues:

    def test_same_output_proved(self):
        orig, modif = _sides(return_rdi_plus(k=1), return_rdi_plus(k=1))
        comp = _reg_eq(orig, modif, ["RAX"])
        pre, _, _ = compare_subs([comp.post], [comp.hyp], orig, modif)
        assert check(mk_solver(), pre).verdict is Verdict.PROVED

    def test_different_output_refuted(self):
        orig, modif = _sides(return_rdi_plus(k=1), return_rdi_plus(k=2))
        comp = _reg_eq(orig, modif, ["RAX"])
        pre, _, _ = compare_subs([comp.post], [comp.hyp], orig, modif)
        assert check(mk_solver(), pre).verdict is Verdict.REFUTED

    def test_same_summarized_call_proved(self):
        # Both sides call an opaque function with the same arguments.
        sub = Sub("f", (
            Blk("b0", (), (call("c0", "g", "b1"),)),
            Blk("b1", (), (ret("j1"),)),
        ))
        orig, modif = _sides(sub, sub)
        comp = _reg_eq(orig, modif, ["RAX"])
        pre, _, _ = compare_subs([comp.post], [comp.hyp], orig, modif)
        assert check(mk_solver(), pre).verdict is Verdict.PROVED

    def test_compare_subs_freshens_when_needed(self):
        sub = return_rdi_plus()
        gen = VarGen()
        orig = (sub, mk_env(X86_64, [sub], default_specs(), var_gen=gen))
        modif = (sub, mk_env(X86_64, [sub], default_specs(), var_gen=gen))
        _, env1, env2 = compare_subs([], [], orig, modif)
        assert not env1.freshen and env2.freshen


class TestFunctionCalls:

    def test_extra_call_refuted(self):
        sub1 = Sub("f", (
            Blk("b0", (), (call("c0", "g", "b1"),)),
            Blk("b1", (), (ret("j1"),)),
        ))
        sub2 = Sub("f", (
            Blk("b0", (), (call("c0", "g", "b1"),)),
            Blk("b1", (), (call("c1", "h", "b2"),)),
            Blk("b2", (), (ret("j2"),)),
        ))
        result = _run([compare_subs_fun()], sub1, sub2)
        assert result.verdict is Verdict.REFUTED

    def test_fewer_calls_proved(self):
        sub1 = Sub("f", (
            Blk("b0", (), (call("c0", "g", "b1"),)),
            Blk("b1", (), (call("c1", "h", "b2"),)),
            Blk("b2", (), (ret("j2"),)),
        ))
        sub2 = Sub("f", (
            Blk("b0", (), (call("c0", "g", "b1"),)),
            Blk("b1", (), (ret("j1"),)),
        ))
        result = _run([compare_subs_fun()], sub1, sub2)
        assert result.verdict is Verdict.PROVED


class TestSmtlib:

    def test_user_postcondition(self):
        comp = compare_subs_smtlib(
            "(assert (= RDI_orig RDI_mod))",
            "(assert (= (bvadd RAX_orig #x0000000000000001) RAX_mod))",
        )
        result = _run([comp], return_rdi_plus(k=1), return_rdi_plus(k=2))
        assert result.verdict is Verdict.PROVED


class TestSymbols:

    def test_offset_of_moved_symbol(self):
        offset = offset_constraint([Symbol("g", 0x1000, 16)],
                                   [Symbol("g", 0x2000, 16)])
        inside = z3.simplify(offset(z3.BitVecVal(0x1004, 64)))
        outside = z3.simplify(offset(z3.BitVecVal(0x3000, 64)))
        assert inside.as_long() == 0x2004
        assert outside.as_long() == 0x3000

    def test_identity(self):
        addr = z3.BitVec("a", 64)
        assert identity(addr).eq(addr)
