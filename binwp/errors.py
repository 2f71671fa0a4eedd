"""
Binwp — Exception hierarchy.
"""
from __future__ import annotations


class BinwpError(Exception):
    """Root of every error raised by the analysis."""


class ConfigError(BinwpError):
    """The requested run is not well formed (flags, files, registers)."""


class MissingFunctionError(ConfigError):
    """The function under analysis is not present in the binary."""

    def __init__(self, func: str) -> None:
        super().__init__(f"Missing function: {func} is not in binary.")
        self.func = func


class NoSpecError(BinwpError):
    """No function spec in the chain matched a call site."""


class MalformedCfgError(BinwpError):
    """A jump targets a block that does not exist in the subroutine."""


class CacheError(BinwpError):
    """A cache entry could not be read back or written."""
