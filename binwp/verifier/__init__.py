"""
Binwp — Verification package.

Public API::

    from binwp.verifier import check, compare_subs
"""
from binwp.verifier.solver import CheckResult, Verdict, check, mk_solver
from binwp.verifier.compare import Comparator, compare_subs

__all__ = [
    "CheckResult",
    "Verdict",
    "check",
    "mk_solver",
    "Comparator",
    "compare_subs",
]
