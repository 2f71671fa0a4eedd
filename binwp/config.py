"""
Binwp — Shared configuration constants.

All tunable parameters live here so that every module imports from
one canonical source.  Environment variables (or a ``.env`` file next
to the package) override the defaults.
"""
from __future__ import annotations

import hashlib
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

# ── Loop / inlining bounds ────────────────────────────────────────────
NUM_UNROLL: int = int(os.getenv("BINWP_NUM_UNROLL", "5"))

# ── Stack model ───────────────────────────────────────────────────────
# The stack base is the highest address; the stack grows downward.
STACK_BASE: int = int(os.getenv("BINWP_STACK_BASE", "0x40000000"), 0)
STACK_SIZE: int = int(os.getenv("BINWP_STACK_SIZE", "0x800000"), 0)

# ── Solver ────────────────────────────────────────────────────────────
# 0 leaves the solver without a timeout.
Z3_TIMEOUT_MS: int = int(os.getenv("BINWP_Z3_TIMEOUT_MS", "0"))

# ── Cache ─────────────────────────────────────────────────────────────
CACHE_DIR: str = os.getenv(
    "BINWP_CACHE_DIR", str(Path.home() / ".cache" / "binwp"),
)
CACHE_URL: str = os.getenv("BINWP_CACHE_URL", "")
CACHE_TIMEOUT_S: int = int(os.getenv("BINWP_CACHE_TIMEOUT_S", "30"))
LOADER: str = os.getenv("BINWP_LOADER", "json")

# ── Replay artifacts ──────────────────────────────────────────────────
# Service requests write replay files only below this directory.
OUTPUT_DIR: str = os.getenv(
    "BINWP_OUTPUT_DIR", str(Path.home() / ".cache" / "binwp" / "replay"),
)

ENGINE_VERSION: str = "binwp-0.3.0"


def config_digest() -> str:
    """Digest of every setting that changes what the lifter produces."""
    subject = "|".join((ENGINE_VERSION, LOADER))
    return hashlib.sha256(subject.encode("utf-8")).hexdigest()
