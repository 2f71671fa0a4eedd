"""
Binwp — Weakest-precondition verification of lifted binaries.

Public API::

    from binwp.analysis import Flags, run
"""
from binwp.config import ENGINE_VERSION

__version__ = ENGINE_VERSION.split("-", 1)[1]

__all__ = ["__version__"]
