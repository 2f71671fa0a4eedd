"""
Binwp — User SMT-LIB conditions.

Pre- and postconditions arrive as SMT-LIB2 ``assert`` commands over
register names (``RAX``, ``init_RDI``; suffixed ``_orig`` / ``_mod`` in a
comparative run).  They are parsed against the constants of the
environment(s) and conjoined into a single goal.
"""
from __future__ import annotations

import logging
from typing import Any

import z3

from binwp.errors import ConfigError
from binwp.symbolic.constraint import Constraint, mk_goal, trivial
from binwp.symbolic.environment import Environment, smtlib_decls

logger = logging.getLogger("binwp.symbolic.smtlib")


def mk_smtlib2(text: str, decls: dict[str, Any],
               name: str = "smtlib") -> Constraint:
    if not text.strip():
        return trivial()
    try:
        asserts = z3.parse_smt2_string(text, decls=decls)
    except z3.Z3Exception as exc:
        raise ConfigError(f"Could not parse SMT-LIB condition {text!r}: "
                          f"{exc}") from exc
    formulas = list(asserts)
    if not formulas:
        return trivial()
    formula = formulas[0] if len(formulas) == 1 else z3.And(*formulas)
    logger.debug("Parsed %s condition: %s", name, formula)
    return mk_goal(name, formula)


def mk_smtlib2_single(env: Environment, text: str,
                      name: str = "smtlib") -> Constraint:
    return mk_smtlib2(text, smtlib_decls(env), name)


def mk_smtlib2_compare(env_orig: Environment, env_mod: Environment,
                       text: str, name: str = "smtlib") -> Constraint:
    decls = {**smtlib_decls(env_orig, "_orig"),
             **smtlib_decls(env_mod, "_mod")}
    return mk_smtlib2(text, decls, name)
