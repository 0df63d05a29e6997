"""
main.py - CSV loading and CLI orchestration for the reconciliation engine.

This module is orchestration-only:
1. load payments, invoices and ledger entries from CSV
2. load and validate rules
3. reconcile
4. filter and summarize
5. print text or JSON
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Iterable, Optional, Sequence, Type, TypeVar

import pandas as pd
from pydantic import BaseModel, ValidationError

from explain import format_result, format_result_json, format_summary
from logging_config import get_logger, setup_logging
from models import (
    Disposition,
    FilterSpec,
    Invoice,
    IssueType,
    LedgerEntry,
    Payment,
    ReconciliationResult,
    ReconciliationSummary,
)
from normalize import parse_amount
from resolve import reconcile
from result_filter import filter_results
from rules import load_rules
from similarity import SIMILARITIES, get_similarity
from summary import GROUPINGS, summarize

logger = get_logger("recon")

RecordT = TypeVar("RecordT", bound=BaseModel)

PAYMENT_COLUMNS = {
    "required": ["payment_id", "amount"],
    "optional": ["payer_name", "payment_date", "reference_note", "memo", "method"],
}
INVOICE_COLUMNS = {
    "required": ["invoice_id", "amount_due"],
    "optional": ["customer_name", "due_date", "reference_code", "status"],
}
LEDGER_COLUMNS = {
    "required": ["ledger_entry_id", "amount"],
    "optional": ["invoice_id", "payment_id", "entry_date"],
}


def read_csv(csv_path: str, label: str) -> pd.DataFrame:
    """Read a CSV as text columns with normalized headers."""
    if csv_path is None:
        raise ValueError(f"{label} csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError(f"{label} csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{label.capitalize()} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, encoding="latin-1")
    except pd.errors.EmptyDataError:
        df = pd.DataFrame()
    except Exception as exc:
        raise ValueError(f"Failed to read {label} CSV '{csv_path}': {exc}") from exc

    # Normalize column names and remove fully blank rows.
    df.columns = [str(col).strip().lower().replace(" ", "_") for col in df.columns]
    if not df.empty:
        df = df[~(df.apply(lambda column: column.str.strip()) == "").all(axis=1)].copy()
    return df


def records_from_frame(
    df: pd.DataFrame,
    model: Type[RecordT],
    columns: dict[str, list[str]],
    amount_column: str,
    label: str,
) -> list[RecordT]:
    """Build records from a text DataFrame.

    Amounts are coerced with `pd.to_numeric`; unparseable amounts stay NaN
    so the engine can report the record. Rows that cannot form a record at
    all (e.g. a blank id) are logged and skipped.
    """
    if df.empty:
        logger.info("csv_records | kind=%s | rows=0", label)
        return []

    missing = [column for column in columns["required"] if column not in df.columns]
    if missing:
        raise ValueError(
            f"{label.capitalize()} CSV missing required columns: {missing}\n"
            f"Required: {columns['required']}\n"
            f"Found: {list(df.columns)}"
        )

    for optional in columns["optional"]:
        if optional not in df.columns:
            df[optional] = ""

    # parse_amount keeps the sign of "(50.00)" and "-$50" so negatives get reported.
    amounts = pd.to_numeric(df[amount_column].map(parse_amount), errors="coerce")
    invalid_amounts = int(amounts.isna().sum())
    if invalid_amounts > 0:
        logger.warning(
            "csv_amount_warning | kind=%s | invalid_amount_rows=%s | fallback='kept as NaN, excluded by engine'",
            label,
            invalid_amounts,
        )

    fields = columns["required"] + columns["optional"]
    records: list[RecordT] = []
    for row_number, (row_index, row) in enumerate(df.iterrows(), start=2):
        payload: dict[str, Any] = {}
        for field in fields:
            value = str(row[field]).strip()
            payload[field] = value or None
        payload[amount_column] = float(amounts.loc[row_index])
        try:
            records.append(model.model_validate(payload))
        except ValidationError as exc:
            logger.warning(
                "csv_row_skipped | kind=%s | row=%s | errors=%s",
                label,
                row_number,
                "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()),
            )

    logger.info("csv_records | kind=%s | rows=%s | records=%s", label, len(df), len(records))
    return records


def load_payments(csv_path: str) -> list[Payment]:
    df = read_csv(csv_path, "payments")
    return records_from_frame(df, Payment, PAYMENT_COLUMNS, "amount", "payments")


def load_invoices(csv_path: str) -> list[Invoice]:
    df = read_csv(csv_path, "invoices")
    return records_from_frame(df, Invoice, INVOICE_COLUMNS, "amount_due", "invoices")


def load_ledger_entries(csv_path: str) -> list[LedgerEntry]:
    df = read_csv(csv_path, "ledger")
    return records_from_frame(df, LedgerEntry, LEDGER_COLUMNS, "amount", "ledger")


def run_reconciliation(
    payments_path: str,
    invoices_path: str,
    ledger_path: Optional[str] = None,
    rules_path: Optional[str] = None,
    filter_spec: Optional[FilterSpec] = None,
    group_by: Sequence[str] = (),
    similarity_name: Optional[str] = None,
) -> tuple[list[ReconciliationResult], list[ReconciliationResult], ReconciliationSummary]:
    """Load inputs, reconcile, then filter and summarize.

    Returns (all results, filtered results, summary over all results).
    """
    pipeline_start = time.time()

    rules = load_rules(rules_path)
    similarity = get_similarity(similarity_name)
    payments = load_payments(payments_path)
    invoices = load_invoices(invoices_path)
    ledger_entries = load_ledger_entries(ledger_path) if ledger_path else []

    results = reconcile(payments, invoices, ledger_entries, rules, similarity)
    filtered = filter_results(results, filter_spec)
    summary = summarize(results, group_by=group_by)

    logger.info(
        "pipeline_complete | payments=%s | invoices=%s | ledger_entries=%s | shown=%s | rate=%.1f%% | duration_s=%.2f",
        len(payments),
        len(invoices),
        len(ledger_entries),
        len(filtered),
        summary.reconciliation_rate,
        time.time() - pipeline_start,
    )
    return results, filtered, summary


def build_filter(
    statuses: Optional[Iterable[str]] = None,
    search: Optional[str] = None,
    issue_type: Optional[str] = None,
    min_confidence: Optional[float] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> FilterSpec:
    """Build a FilterSpec from CLI-style values; invalid values raise ValueError."""
    try:
        return FilterSpec(
            statuses=list(statuses) if statuses else None,
            search=search,
            issue_type=issue_type,
            min_confidence=min_confidence,
            start_date=start_date,
            end_date=end_date,
        )
    except ValidationError as exc:
        raise ValueError(f"Invalid filter: {exc.errors()[0]['msg']}") from exc


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point for the reconciliation engine."""
    parser = argparse.ArgumentParser(
        prog="recon",
        description=(
            "Payment Reconciliation Engine\n"
            "Matches incoming payments to open invoices, flags duplicates and "
            "partial payments, and explains every decision."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --payments test_data/payments.csv --invoices test_data/invoices.csv\n"
            "  %(prog)s -p payments.csv -i invoices.csv -l ledger_entries.csv --rules rules.json\n"
            "  %(prog)s -p payments.csv -i invoices.csv --status unmatched --status duplicate --json\n"
        ),
    )
    parser.add_argument("--payments", "-p", type=str, required=True, help="Path to the payments CSV (required)")
    parser.add_argument("--invoices", "-i", type=str, required=True, help="Path to the invoices CSV (required)")
    parser.add_argument("--ledger", "-l", type=str, help="Path to the ledger entries CSV")
    parser.add_argument(
        "--rules",
        "-r",
        type=str,
        help="Path to a JSON rules file (default: $RECON_RULES_PATH, then built-in defaults)",
    )
    parser.add_argument(
        "--similarity",
        choices=sorted(SIMILARITIES),
        help="Name similarity algorithm (default: $RECON_NAME_SIMILARITY, then token_set)",
    )
    parser.add_argument(
        "--status",
        action="append",
        choices=[disposition.value for disposition in Disposition],
        help="Only show results with this status (repeatable)",
    )
    parser.add_argument("--search", type=str, help="Case-insensitive text search over payer, ids and reference")
    parser.add_argument(
        "--issue-type",
        choices=[issue_type.value for issue_type in IssueType],
        help="Only show results carrying this issue type",
    )
    parser.add_argument("--min-confidence", type=float, help="Only show results at or above this confidence")
    parser.add_argument("--start-date", type=str, help="Only show payments on or after this date (YYYY-MM-DD)")
    parser.add_argument("--end-date", type=str, help="Only show payments on or before this date (YYYY-MM-DD)")
    parser.add_argument(
        "--group-by",
        action="append",
        choices=sorted(GROUPINGS),
        help="Add a summary breakdown (repeatable)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results and summary as JSON instead of formatted text",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")

    try:
        filter_spec = build_filter(
            statuses=args.status,
            search=args.search,
            issue_type=args.issue_type,
            min_confidence=args.min_confidence,
            start_date=args.start_date,
            end_date=args.end_date,
        )
        logger.info(
            "cli_run | payments=%s | invoices=%s | ledger=%s | rules=%s",
            args.payments,
            args.invoices,
            args.ledger or "-",
            args.rules or "-",
        )
        _, filtered, summary = run_reconciliation(
            args.payments,
            args.invoices,
            ledger_path=args.ledger,
            rules_path=args.rules,
            filter_spec=filter_spec,
            group_by=args.group_by or (),
            similarity_name=args.similarity,
        )

        if args.json:
            output = {
                "results": [format_result_json(result) for result in filtered],
                "summary": summary.model_dump(mode="json"),
            }
            print(json.dumps(output, indent=2))
        else:
            for result in filtered:
                print(format_result(result))
            print(format_summary(summary))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
