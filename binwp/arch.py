"""
Binwp — Architecture descriptors.

An ``Arch`` describes the register file the lifter emits for a target,
plus the calling-convention facts the function specs rely on.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from binwp.errors import ConfigError


@dataclass(frozen=True)
class Arch:
    """Register file and calling convention of one target."""
    name: str
    addr_size: int
    registers: dict[str, int] = field(default_factory=dict)
    stack_pointer: str | None = None
    caller_saved: tuple[str, ...] = ()
    input_regs: tuple[str, ...] = ()
    return_reg: str | None = None
    mem_name: str = "mem"

    def width(self, reg: str) -> int:
        try:
            return self.registers[reg]
        except KeyError:
            raise ConfigError(
                f"'{reg}' is not a register of {self.name}. Available "
                f"registers are: {sorted(self.registers)}"
            ) from None

    def has_stack_pointer(self) -> bool:
        return self.stack_pointer is not None


def _regs(names: list[str], width: int) -> dict[str, int]:
    return {n: width for n in names}


_X86_64_GPRS = [
    "RAX", "RBX", "RCX", "RDX", "RSI", "RDI", "RSP", "RBP",
    "R8", "R9", "R10", "R11", "R12", "R13", "R14", "R15",
]
_FLAGS = ["CF", "PF", "AF", "ZF", "SF", "DF", "OF"]

X86_64 = Arch(
    name="x86_64",
    addr_size=64,
    registers={**_regs(_X86_64_GPRS, 64), **_regs(_FLAGS, 1)},
    stack_pointer="RSP",
    caller_saved=("RAX", "RCX", "RDX", "RSI", "RDI",
                  "R8", "R9", "R10", "R11"),
    input_regs=("RDI", "RSI", "RDX", "RCX", "R8", "R9"),
    return_reg="RAX",
)

I386 = Arch(
    name="x86",
    addr_size=32,
    registers={**_regs(["EAX", "EBX", "ECX", "EDX", "ESI", "EDI",
                        "ESP", "EBP"], 32), **_regs(_FLAGS, 1)},
    stack_pointer="ESP",
    caller_saved=("EAX", "ECX", "EDX"),
    return_reg="EAX",
)

ARMV7 = Arch(
    name="armv7",
    addr_size=32,
    registers={**_regs([f"R{i}" for i in range(13)] + ["SP", "LR", "PC"], 32),
               **_regs(["NF", "ZF", "CF", "VF"], 1)},
    stack_pointer="SP",
    caller_saved=("R0", "R1", "R2", "R3", "R12", "LR"),
    input_regs=("R0", "R1", "R2", "R3"),
    return_reg="R0",
)

ARCHES: dict[str, Arch] = {a.name: a for a in (X86_64, I386, ARMV7)}
ARCHES["amd64"] = X86_64
ARCHES["i386"] = I386
ARCHES["arm"] = ARMV7


def arch_of_string(name: str) -> Arch:
    try:
        return ARCHES[name.lower()]
    except KeyError:
        raise ConfigError(f"Unsupported architecture: {name}") from None
