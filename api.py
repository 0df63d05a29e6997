"""
api.py - FastAPI HTTP layer for the reconciliation engine.

Endpoints:
  - GET  /health
  - GET  /rules/default
  - POST /rules/validate
  - POST /reconcile       JSON records
  - POST /reconcile/csv   uploaded CSV files

No matching business logic is implemented here.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import uvicorn
from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from explain import format_result_json
from logging_config import get_logger, setup_logging
from main import load_invoices, load_ledger_entries, load_payments
from models import FilterSpec, Invoice, LedgerEntry, Payment, ReconciliationResult
from resolve import reconcile
from result_filter import filter_results
from rules import DEFAULT_RULES, ConfigurationError, ReconciliationRules, validate_rules
from similarity import get_similarity
from summary import summarize

logger = get_logger("recon-api")

app = FastAPI(
    title="Payment Reconciliation API",
    version="1.0.0",
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ReconcileRequest(BaseModel):
    """Records plus optional rules, filter and summary groupings."""

    payments: list[Payment] = Field(default_factory=list)
    invoices: list[Invoice] = Field(default_factory=list)
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)
    rules: Optional[dict[str, Any]] = Field(
        default=None,
        description="Rule set in camelCase or snake_case layout. Defaults apply when omitted.",
    )
    filter: Optional[dict[str, Any]] = Field(default=None, description="FilterSpec fields for the filtered view.")
    group_by: list[str] = Field(default_factory=list, description="Summary groupings: customer, week.")
    similarity: Optional[str] = Field(default=None, description="token_set, levenshtein or token_overlap.")


async def _save_upload(upload: UploadFile, destination: Path) -> None:
    """Save an UploadFile to disk."""
    try:
        with destination.open("wb") as out_file:
            while True:
                chunk = await upload.read(1024 * 1024)
                if not chunk:
                    break
                out_file.write(chunk)
    finally:
        await upload.close()


def _resolve_rules(raw: Optional[dict[str, Any]]) -> ReconciliationRules:
    if raw is None:
        return DEFAULT_RULES
    try:
        return validate_rules(raw)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _resolve_filter(raw: Optional[dict[str, Any]]) -> Optional[FilterSpec]:
    if not raw:
        return None
    try:
        return FilterSpec.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid filter: {exc.errors()[0]['msg']}") from exc


def _build_response(
    results: list[ReconciliationResult],
    filter_spec: Optional[FilterSpec],
    group_by: list[str],
    rules: ReconciliationRules,
) -> dict[str, Any]:
    try:
        summary = summarize(results, group_by=group_by)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    filtered = filter_results(results, filter_spec)
    return {
        "results": [format_result_json(result) for result in results],
        "filtered": [format_result_json(result) for result in filtered],
        "summary": summary.model_dump(mode="json"),
        "rules": rules.to_camel_dict(),
    }


def _run(
    payments: list[Payment],
    invoices: list[Invoice],
    ledger_entries: list[LedgerEntry],
    rules: ReconciliationRules,
    similarity_name: Optional[str],
) -> list[ReconciliationResult]:
    try:
        similarity = get_similarity(similarity_name)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        return reconcile(payments, invoices, ledger_entries, rules, similarity)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "api_reconcile_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(
            status_code=500,
            detail="Unexpected server error while reconciling.",
        ) from exc


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.get("/rules/default")
def default_rules() -> dict[str, Any]:
    """Built-in rule set in the camelCase layout used by rule files."""
    return DEFAULT_RULES.to_camel_dict()


@app.post("/rules/validate")
def rules_validate(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Validate a rule set; 422 with the reasons when it is rejected."""
    rules = _resolve_rules(payload)
    return {"valid": True, "rules": rules.to_camel_dict()}


@app.post("/reconcile")
def reconcile_endpoint(request: ReconcileRequest) -> dict[str, Any]:
    """Reconcile JSON records and return results, the filtered view and the summary."""
    rules = _resolve_rules(request.rules)
    filter_spec = _resolve_filter(request.filter)
    logger.info(
        "api_reconcile | payments=%s | invoices=%s | ledger_entries=%s | custom_rules=%s",
        len(request.payments),
        len(request.invoices),
        len(request.ledger_entries),
        request.rules is not None,
    )
    results = _run(request.payments, request.invoices, request.ledger_entries, rules, request.similarity)
    return _build_response(results, filter_spec, request.group_by, rules)


@app.post("/reconcile/csv")
async def reconcile_csv_endpoint(
    payments_csv: UploadFile = File(...),
    invoices_csv: UploadFile = File(...),
    ledger_csv: Optional[UploadFile] = File(default=None),
    rules_json: Optional[str] = Form(default=None),
    group_by: Optional[str] = Form(default=None),
) -> dict[str, Any]:
    """Reconcile uploaded CSV exports (same columns the CLI reads)."""
    raw_rules: Optional[dict[str, Any]] = None
    if rules_json and rules_json.strip():
        try:
            raw_rules = json.loads(rules_json)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=422, detail=f"rules_json is not valid JSON: {exc}") from exc
    rules = _resolve_rules(raw_rules)
    groupings = [name.strip() for name in (group_by or "").split(",") if name.strip()]

    with tempfile.TemporaryDirectory(prefix="recon-upload-") as tmp_dir:
        tmp_path = Path(tmp_dir)
        try:
            payments_path = tmp_path / "payments.csv"
            await _save_upload(payments_csv, payments_path)
            payments = load_payments(str(payments_path))

            invoices_path = tmp_path / "invoices.csv"
            await _save_upload(invoices_csv, invoices_path)
            invoices = load_invoices(str(invoices_path))

            ledger_entries: list[LedgerEntry] = []
            if ledger_csv is not None and ledger_csv.filename:
                ledger_path = tmp_path / "ledger_entries.csv"
                await _save_upload(ledger_csv, ledger_path)
                ledger_entries = load_ledger_entries(str(ledger_path))
        except (FileNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Failed to load CSV: {exc}") from exc

    logger.info(
        "api_reconcile_csv | payments=%s | invoices=%s | ledger_entries=%s",
        len(payments),
        len(invoices),
        len(ledger_entries),
    )
    results = _run(payments, invoices, ledger_entries, rules, None)
    return _build_response(results, None, groupings, rules)


def run() -> None:
    """Serve the API with uvicorn (PORT env var, default 8000)."""
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    run()
