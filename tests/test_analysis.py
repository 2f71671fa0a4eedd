"""End-to-end tests for the analysis orchestrator."""
import logging

import pytest
import z3
from pydantic import ValidationError

from binwp.analysis import (
    Flags, confine_outputs, match_inline, run, update_stack, validate,
)
from binwp.cache import CacheContext, FileCache
from binwp.errors import ConfigError, MissingFunctionError
from binwp.ir import Blk, Sub

from programs import (
    call, load_rdi, program, ret, return_const, return_rdi_plus,
    write_program,
)


@pytest.fixture
def ctx(tmp_path):
    return CacheContext(FileCache(tmp_path / "cache"))


def _file(tmp_path, name, *subs):
    return write_program(tmp_path / name, program(*subs))


class TestFlags:

    def test_comma_separated_lists(self):
        flags = Flags(func="f", debug="constraint-stats,z3-solver-stats",
                      compare_post_reg_values="RAX, RDI")
        assert flags.debug == ["constraint-stats", "z3-solver-stats"]
        assert flags.compare_post_reg_values == ["RAX", "RDI"]

    def test_negative_unroll_rejected(self):
        with pytest.raises(ValidationError):
            Flags(func="f", num_unroll=-1)


class TestValidate:

    def test_valid(self):
        assert validate(Flags(func="f"), ["a"]) is None
        assert validate(Flags(func="f", compare_func_calls=True),
                        ["a", "b"]) is None

    def test_function_required(self):
        err = validate(Flags(), ["a"])
        assert isinstance(err, ConfigError)
        assert "Function is not provided" in str(err)

    def test_file_count(self):
        assert validate(Flags(func="f"), []) is not None
        assert validate(Flags(func="f"), ["a", "b", "c"]) is not None

    def test_comparative_flags_need_two_files(self):
        err = validate(Flags(func="f", compare_func_calls=True), ["a"])
        assert "compare_func_calls" in str(err)
        err = validate(Flags(func="f", compare_post_reg_values=["RAX"]),
                       ["a"])
        assert "compare_post_reg_values" in str(err)

    def test_unknown_debug_and_show(self):
        assert "debug" in str(validate(Flags(func="f", debug=["nope"]), ["a"]))
        assert "show" in str(validate(Flags(func="f", show=["nope"]), ["a"]))

    def test_run_raises_validation_error(self, ctx):
        with pytest.raises(ConfigError):
            run(Flags(), ["a"], ctx)


class TestHelpers:

    def test_match_inline(self, caplog):
        subs = (Sub("foo"), Sub("bar"), Sub("foobar"))
        assert match_inline("^foo$", subs) == ["foo"]
        assert match_inline("foo|bar", subs) == ["foo", "bar", "foobar"]
        assert match_inline(None, subs) == []
        with caplog.at_level(logging.WARNING):
            assert match_inline("baz", subs) == []
        assert "No functions matched" in caplog.text

    def test_bad_inline_regex(self):
        with pytest.raises(ConfigError):
            match_inline("(", (Sub("f"),))

    def test_outputs_confined_to_directory(self, tmp_path):
        flags = confine_outputs(
            Flags(func="f", gdb_output="run/replay.gdb",
                  bildb_output="replay.json"),
            str(tmp_path),
        )
        assert flags.gdb_output == str(tmp_path.resolve() / "run" / "replay.gdb")
        assert flags.bildb_output == str(tmp_path.resolve() / "replay.json")

    @pytest.mark.parametrize("path", [
        "../escape.gdb", "run/../../escape.gdb", "/etc/passwd", ".",
    ])
    def test_outputs_outside_directory_rejected(self, tmp_path, path):
        with pytest.raises(ConfigError, match="outside the output directory"):
            confine_outputs(Flags(func="f", gdb_output=path), str(tmp_path))

    def test_no_outputs_unchanged(self, tmp_path):
        flags = Flags(func="f")
        assert confine_outputs(flags, str(tmp_path)) == flags

    def test_update_stack(self):
        stack = update_stack(0x2000, None)
        assert stack.base == 0x2000
        assert stack.size > 0


class TestSingle:

    def test_postcondition_proved(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", return_const("f", 0))
        report = run(Flags(func="f", postcond="(assert (= RAX #x0000000000000000))"),
                     [f], ctx)
        assert report.verdict == "PROVED"
        assert report.exact
        assert report.counterexample is None

    def test_precondition_used(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", return_rdi_plus("f", 1))
        flags = Flags(
            func="f",
            precond="(assert (= RDI #x0000000000000004))",
            postcond="(assert (= RAX (bvadd init_RDI #x0000000000000001)))",
        )
        assert run(flags, [f], ctx).verdict == "PROVED"

    def test_null_deref_refuted(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", load_rdi("f"))
        gdb = tmp_path / "replay.gdb"
        report = run(Flags(func="f", check_null_derefs=True,
                           gdb_output=str(gdb), show=["refuted-goals"]),
                     [f], ctx)
        assert report.verdict == "REFUTED"
        assert report.counterexample["regs"]["RDI"] == "0x0"
        assert any(g["name"].startswith("non-null load")
                   for g in report.refuted_goals)
        assert gdb.read_text().startswith("break *f")

    def test_without_null_checks_proved(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", load_rdi("f"))
        assert run(Flags(func="f"), [f], ctx).verdict == "PROVED"

    def test_missing_function(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", return_const("f", 0))
        with pytest.raises(MissingFunctionError, match="Missing function: g"):
            run(Flags(func="g"), [f], ctx)

    def test_show_and_debug_details(self, tmp_path, ctx):
        f = _file(tmp_path, "f.json", return_const("f", 0))
        report = run(Flags(func="f", show=["bir", "precond-internal",
                                           "precond-smtlib"],
                           debug=["constraint-stats", "eval-constraint-stats",
                                  "z3-solver-stats"]),
                     [f], ctx)
        assert "sub f()" in report.details["bir"]
        assert "CLAUSE" in report.details["precond-internal"]
        assert set(report.details) >= {
            "precond-smtlib", "constraint-stats", "eval-constraint-stats",
            "z3-solver-stats",
        }


class TestComparative:

    def test_same_binaries_proved(self, tmp_path, ctx):
        a = _file(tmp_path, "a.json", return_rdi_plus("f", 1))
        b = _file(tmp_path, "b.json", return_rdi_plus("f", 1))
        report = run(Flags(func="f", compare_post_reg_values=["RAX"]),
                     [a, b], ctx)
        assert report.verdict == "PROVED"

    def test_different_output_refuted(self, tmp_path, ctx):
        a = _file(tmp_path, "a.json", return_rdi_plus("f", 1))
        b = _file(tmp_path, "b.json", return_rdi_plus("f", 2))
        bildb = tmp_path / "replay.json"
        report = run(Flags(func="f", compare_post_reg_values=["RAX"],
                           bildb_output=str(bildb)),
                     [a, b], ctx)
        assert report.verdict == "REFUTED"
        assert "RDI" in report.counterexample["regs"]
        assert bildb.exists()

    def test_new_call_refuted(self, tmp_path, ctx):
        orig = Sub("f", (Blk("b0", (), (ret("j0"),)),))
        modif = Sub("f", (
            Blk("b0", (), (call("c0", "system", "b1"),)),
            Blk("b1", (), (ret("j1"),)),
        ))
        a = _file(tmp_path, "a.json", orig)
        b = _file(tmp_path, "b.json", modif)
        report = run(Flags(func="f", compare_func_calls=True), [a, b], ctx)
        assert report.verdict == "REFUTED"

    def test_extra_null_deref_refuted(self, tmp_path, ctx):
        a = _file(tmp_path, "a.json", return_rdi_plus("f", 1))
        b = _file(tmp_path, "b.json", load_rdi("f"))
        report = run(Flags(func="f", check_null_derefs=True), [a, b], ctx)
        assert report.verdict == "REFUTED"

    def test_same_null_deref_proved(self, tmp_path, ctx):
        a = _file(tmp_path, "a.json", load_rdi("f"))
        b = _file(tmp_path, "b.json", load_rdi("f"))
        report = run(Flags(func="f", check_null_derefs=True,
                           compare_post_reg_values=["RAX"]), [a, b], ctx)
        assert report.verdict == "PROVED"


class TestSolverVerbosity:

    def _record(self, monkeypatch):
        calls = []
        monkeypatch.setattr(z3, "set_param",
                            lambda *args: calls.append(args))
        return calls

    def test_verbose_reset_after_run(self, tmp_path, ctx, monkeypatch):
        calls = self._record(monkeypatch)
        f = _file(tmp_path, "f.json", return_const("f", 0))
        run(Flags(func="f", debug=["z3-verbose"]), [f], ctx)
        assert calls == [("verbose", 10), ("verbose", 0)]

    def test_verbose_reset_after_failure(self, tmp_path, ctx, monkeypatch):
        calls = self._record(monkeypatch)
        f = _file(tmp_path, "f.json", return_const("f", 0))
        with pytest.raises(MissingFunctionError):
            run(Flags(func="g", debug=["z3-verbose"]), [f], ctx)
        assert calls[-1] == ("verbose", 0)

    def test_quiet_run_leaves_params_alone(self, tmp_path, ctx, monkeypatch):
        calls = self._record(monkeypatch)
        f = _file(tmp_path, "f.json", return_const("f", 0))
        run(Flags(func="f"), [f], ctx)
        assert calls == []
