from __future__ import annotations

import csv
import io
import os
from dataclasses import replace
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import Response

from commission_ledger.config import LedgerConfig
from commission_ledger.errors import RunAbortedError
from commission_ledger.logging_utils import configure_logging
from commission_ledger.models import (
    CONFORMANT,
    NEARLY_CONFORMANT,
    NON_CONFORMANT,
    REASON_BUSINESS_ENTROPY,
    REASON_HUMAN_ERROR_OUTLIER,
    REASON_INVALID_GROUP,
    REASON_SPLIT_MISMATCH,
)
from commission_ledger.persistence import (
    SqliteCheckpointStore,
    SqliteSink,
    export_summary,
    get_traceability,
    init_processing_db,
    latest_run_output,
    list_gl_entries,
    list_group_conformance,
    list_phas,
    list_run_steps,
    list_runs,
    list_traceability,
    namespace_path,
)
from commission_ledger.pipeline import run_pipeline
from commission_ledger.sources import load_sources

CONFIG_PATH = os.getenv("LEDGER_CONFIG")
CONFIG = LedgerConfig.load(Path(CONFIG_PATH)) if CONFIG_PATH else LedgerConfig.default()

configure_logging()

app = FastAPI(title="Commission Ledger", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8001"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class CreateRunRequest(BaseModel):
    entropy: bool | None = None
    export: bool = False


def _processing_db() -> Path:
    path = namespace_path(CONFIG.db_dir, CONFIG.namespaces.processing)
    init_processing_db(path)
    return path


def _state_db() -> Path:
    return namespace_path(CONFIG.db_dir, CONFIG.namespaces.transition)


def _production_db() -> Path:
    return namespace_path(CONFIG.db_dir, CONFIG.namespaces.production)


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"ok": True, "service": "commission-ledger"})


@app.post("/api/v1/runs")
def api_create_run(payload: CreateRunRequest | None = None) -> JSONResponse:
    """Run a full batch recompute from the configured data directory."""
    payload = payload or CreateRunRequest()
    config = CONFIG
    if payload.entropy is not None:
        config = replace(config, entropy=replace(config.entropy, enabled=payload.entropy))

    sources = load_sources(config.data_dir, config.debug, config.retry)
    reporter = SqliteCheckpointStore(_state_db())
    sink = SqliteSink(config.db_dir, config.namespaces, config.retry)
    try:
        output = run_pipeline(sources, config, reporter=reporter, sink=sink, export=payload.export)
    except RunAbortedError as exc:
        return JSONResponse(
            {
                "ok": False,
                "run_id": exc.run_id,
                "stage": exc.stage,
                "invariant": exc.invariant,
                "can_resume": exc.can_resume,
                "error": str(exc.__cause__ or exc),
            },
            status_code=409,
        )
    return JSONResponse({"ok": True, "run_id": output.run_id, "summary": output.summary()})


@app.get("/api/v1/runs")
def api_list_runs(limit: int = 50) -> JSONResponse:
    rows = list_runs(_state_db(), limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.get("/api/v1/runs/{run_id}/steps")
def api_run_steps(run_id: str) -> JSONResponse:
    rows = list_run_steps(_state_db(), run_id)
    if not rows:
        raise HTTPException(status_code=404, detail="run not found")
    return JSONResponse({"run_id": run_id, "rows": rows, "count": len(rows)})


@app.get("/api/v1/conformance")
def api_conformance(classification: str | None = None) -> JSONResponse:
    if classification and classification not in {CONFORMANT, NEARLY_CONFORMANT, NON_CONFORMANT}:
        raise HTTPException(status_code=400, detail="invalid classification filter")
    rows = list_group_conformance(_processing_db(), classification=classification)
    latest = latest_run_output(_processing_db())
    return JSONResponse(
        {"rows": rows, "count": len(rows), "run_id": latest["run_id"] if latest else None}
    )


@app.get("/api/v1/pha")
def api_pha(reason: str | None = None, limit: int = 200) -> JSONResponse:
    valid = {REASON_INVALID_GROUP, REASON_SPLIT_MISMATCH, REASON_BUSINESS_ENTROPY, REASON_HUMAN_ERROR_OUTLIER}
    if reason and reason not in valid:
        raise HTTPException(status_code=400, detail="invalid reason filter")
    rows = list_phas(_processing_db(), reason=reason, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.get("/api/v1/gl-entries")
def api_gl_entries(broker_id: str | None = None, premium_id: str | None = None, limit: int = 500) -> JSONResponse:
    rows = list_gl_entries(_processing_db(), broker_id=broker_id, premium_id=premium_id, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.get("/api/v1/traceability")
def api_traceability(has_errors: bool | None = None, limit: int = 500) -> JSONResponse:
    rows = list_traceability(_processing_db(), has_errors=has_errors, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.get("/api/v1/traceability/{premium_id}")
def api_traceability_detail(premium_id: str) -> JSONResponse:
    report = get_traceability(_processing_db(), premium_id)
    if report is None:
        raise HTTPException(status_code=404, detail="premium transaction not found")
    return JSONResponse(report)


@app.get("/api/v1/export")
def api_export() -> JSONResponse:
    summary = export_summary(_production_db())
    if summary is None:
        return JSONResponse({"ok": False, "exported": False})
    return JSONResponse({"ok": True, "exported": True, **summary})


@app.get("/api/v1/exports/gl.csv")
def api_export_gl():
    """Export GL journal entries as CSV."""
    entries = list_gl_entries(_processing_db(), limit=1_000_000)

    output = io.StringIO()
    if entries:
        writer = csv.DictWriter(output, fieldnames=list(entries[0].keys()))
        writer.writeheader()
        for e in entries:
            writer.writerow(e)

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="gl_journal.csv"'},
    )
