"""
Binwp — main.py
FastAPI service exposing the weakest-precondition analysis.

Endpoints:
  POST /analyze   run a single or comparative analysis on lifted programs
  GET  /health    liveness check
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from binwp import config
from binwp.analysis import Flags, confine_outputs, run, validate
from binwp.cache import CacheContext
from binwp.errors import BinwpError, ConfigError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger("binwp")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Binwp — Weakest-Precondition Binary Verifier",
    version=config.ENGINE_VERSION,
    description=(
        "Checks properties of a lifted binary function, or compares two "
        "versions of it, by weakest-precondition calculus and Z3."
    ),
)

# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class AnalyzeRequest(BaseModel):
    """One binary for a single analysis, two for a comparative one."""
    files: list[str] = Field(..., min_length=1)
    flags: Flags


class AnalyzeResponse(BaseModel):
    status: str = Field(
        ...,
        description=(
            "'PROVED' — no input violates the property. "
            "'REFUTED' — a counterexample was found. "
            "'UNKNOWN' — the solver gave up (timeout or incompleteness)."
        ),
    )
    exact: bool = Field(
        ...,
        description="False when the proof only covers executions within "
                    "the loop unrolling bound.",
    )
    message: str
    refuted_goals: list[dict[str, str]] = Field(default_factory=list)
    path: list[dict[str, Any]] = Field(default_factory=list)
    counterexample: dict[str, Any] | None = None
    truncated_loops: list[str] = Field(default_factory=list)
    details: dict[str, str] = Field(default_factory=dict)
    elapsed_ms: int = 0


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": config.ENGINE_VERSION}


@app.post("/analyze", response_model=AnalyzeResponse)
def analyze(req: AnalyzeRequest) -> AnalyzeResponse:
    t0 = time.perf_counter()
    logger.info("━━━ /analyze request (func=%s, %d file(s)) ━━━",
                req.flags.func, len(req.files))

    err = validate(req.flags, req.files)
    if err is not None:
        logger.warning("Rejected request: %s", err)
        raise HTTPException(status_code=400, detail=str(err))

    try:
        flags = confine_outputs(req.flags, config.OUTPUT_DIR)
        for out in (flags.gdb_output, flags.bildb_output):
            if out:
                Path(out).parent.mkdir(parents=True, exist_ok=True)
        ctx = CacheContext.from_config()
        report = run(flags, req.files, ctx)
    except ConfigError as exc:
        logger.warning("Configuration error: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BinwpError as exc:
        logger.exception("Analysis failed")
        raise HTTPException(status_code=500,
                            detail=f"Analysis error: {exc}") from exc

    elapsed = int((time.perf_counter() - t0) * 1000)
    logger.info("━━━ Done in %dms — %s ━━━", elapsed, report.verdict)
    return AnalyzeResponse(
        status=report.verdict,
        exact=report.exact,
        message=report.message,
        refuted_goals=report.refuted_goals,
        path=report.path,
        counterexample=report.counterexample,
        truncated_loops=report.truncated_loops,
        details=report.details,
        elapsed_ms=elapsed,
    )
