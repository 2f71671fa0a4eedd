"""
Binwp — Symbolic layer.

Public API::

    from binwp.symbolic import mk_env, visit_sub, eval_constraint
"""
from binwp.symbolic.constraint import (
    Constraint,
    eval_constraint,
    mk_clause,
    mk_goal,
    refuted_goals,
)
from binwp.symbolic.environment import (
    Environment,
    MemRange,
    VarGen,
    freshen,
    mk_env,
)
from binwp.symbolic.specs import FunSpec, default_specs, resolve
from binwp.symbolic.precondition import (
    get_vars,
    init_vars,
    set_sp_range,
    visit_sub,
)

__all__ = [
    "Constraint",
    "eval_constraint",
    "mk_clause",
    "mk_goal",
    "refuted_goals",
    "Environment",
    "MemRange",
    "VarGen",
    "freshen",
    "mk_env",
    "FunSpec",
    "default_specs",
    "resolve",
    "get_vars",
    "init_vars",
    "set_sp_range",
    "visit_sub",
]
