"""
explain.py - Human-readable and JSON-ready result formatting.

This module converts reconciliation output into:
- terminal-friendly text blocks for CLI usage
- machine-friendly dictionaries for the API and `--json`
"""

from __future__ import annotations

from logging_config import get_logger
from models import DISPOSITION_LABELS, Disposition, ReconciliationResult, ReconciliationSummary

logger = get_logger(__name__)

ISSUE_NAMES: dict[str, str] = {
    "duplicate_payment": "Duplicate Payment",
    "missing_invoice": "Missing Invoice",
    "amount_mismatch": "Amount Mismatch",
    "missing_ledger_entry": "Missing Ledger Entry",
    "ledger_mismatch": "Ledger Mismatch",
    "reference_mismatch": "Reference Mismatch",
    "payer_name_mismatch": "Payer Name Mismatch",
    "ambiguous_match": "Ambiguous Match",
    "partial_payment": "Partial Payment",
    "invalid_record": "Invalid Record",
}

OUTPUT_WIDTH = 64
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_EVIDENCE_DISPLAY = 8


def format_result(result: ReconciliationResult | None) -> str:
    """Format one result into a clean, human-readable text block."""
    if result is None:
        logger.error("explain_input_error | result_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n" + "  ERROR: No result data available\n" + SEPARATOR + "\n"

    payment = result.payment
    lines: list[str] = [""]

    header = f"{payment.payment_id}: {result.label}"
    if result.disposition != Disposition.UNMATCHED:
        header = f"{header} - {result.confidence:.0f}%"
    lines.append(SEPARATOR)
    lines.append(f"  {header}")
    lines.append(SEPARATOR)

    lines.append("")
    lines.append(f"  Payment:      {payment.payer_name or '(no payer name)'}")
    lines.append(
        f"                ${payment.amount:.2f}  |  {payment.payment_date or 'date unknown'}"
        f"  |  ref {payment.reference_note or '-'}"
    )

    if result.matched_invoice_ids:
        title = "Candidates:" if result.disposition == Disposition.AMBIGUOUS else "Invoice(s):"
        lines.append(f"  {title:<13} {', '.join(result.matched_invoice_ids)}")
    if result.duplicate_of:
        lines.append(f"  Duplicate of: {result.duplicate_of}")
    if result.remaining_due is not None:
        lines.append(f"  Remaining:    ${result.remaining_due:.2f}")
    if result.ledger_entry_id:
        lines.append(f"  Ledger:       {result.ledger_entry_id}")

    scores = result.scores
    if result.confidence > 0:
        lines.append("")
        lines.append(
            f"  Scores:       reference {scores.reference:.0f} | amount {scores.amount:.0f} | "
            f"name {scores.name:.0f} | date {scores.date:.0f}"
        )

    lines.append("")
    lines.append("  Evidence:")
    evidence_items = list(result.evidence)
    if not evidence_items:
        lines.append("    • (no evidence recorded)")
    elif len(evidence_items) <= MAX_EVIDENCE_DISPLAY:
        for evidence in evidence_items:
            lines.append(f"    • {evidence}")
    else:
        for evidence in evidence_items[: MAX_EVIDENCE_DISPLAY - 1]:
            lines.append(f"    • {evidence}")
        remaining = len(evidence_items) - (MAX_EVIDENCE_DISPLAY - 1)
        lines.append(f"    • ... and {remaining} more evidence item(s)")

    if result.issues:
        lines.append("")
        lines.append("  Issues:")
        for issue in result.issues:
            lines.append(f"    ! {ISSUE_NAMES.get(issue.type.value, issue.type.value)}: {issue.message}")

    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)


def format_result_json(result: ReconciliationResult | None) -> dict:
    """Format one result as a structured JSON-compatible dictionary."""
    if result is None:
        logger.error("explain_json_input_error | result_none=True | fallback=error_payload")
        return {
            "status": "error",
            "confidence": 0.0,
            "issues": [{"type": "invalid_record", "message": "Result object was None"}],
        }

    payment = result.payment
    return {
        "payment_id": payment.payment_id,
        "status": result.disposition.value,
        "status_label": result.label,
        "confidence": round(float(result.confidence), 1),
        "payment": {
            "payer_name": payment.payer_name,
            "amount": payment.amount if payment.has_valid_amount else None,
            "payment_date": payment.payment_date,
            "reference_note": payment.reference_note,
            "memo": payment.memo,
            "method": payment.method,
        },
        "matched_invoice_ids": list(result.matched_invoice_ids),
        "duplicate_of": result.duplicate_of,
        "remaining_due": result.remaining_due,
        "ledger_entry_id": result.ledger_entry_id,
        "scores": result.scores.model_dump(),
        "issues": [
            {
                "type": issue.type.value,
                "name": ISSUE_NAMES.get(issue.type.value, issue.type.value),
                "message": issue.message,
            }
            for issue in result.issues
        ],
        "evidence": list(result.evidence),
    }


def format_summary(summary: ReconciliationSummary | None) -> str:
    """Format a summary as a terminal table."""
    if summary is None:
        logger.error("explain_input_error | summary_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n" + "  ERROR: No summary data available\n" + SEPARATOR + "\n"

    lines: list[str] = ["", SEPARATOR, f"  SUMMARY - {summary.total_payments} payment(s) reconciled", SEPARATOR, ""]
    lines.append(f"  {'Status':<18} {'Count':>6} {'Amount':>14}")
    lines.append(f"  {'─' * 18} {'─' * 6} {'─' * 14}")
    for disposition in Disposition:
        lines.append(
            f"  {DISPOSITION_LABELS[disposition]:<18} {summary.count(disposition):>6} "
            f"{summary.amount(disposition):>14,.2f}"
        )
    lines.append(f"  {'─' * 18} {'─' * 6} {'─' * 14}")
    lines.append(f"  {'Total':<18} {summary.total_payments:>6} {summary.total_amount:>14,.2f}")

    lines.append("")
    lines.append(f"  Applied amount:        ${summary.matched_amount:,.2f}")
    lines.append(f"  Unapplied amount:      ${summary.unmatched_amount:,.2f}")
    lines.append(f"  Reconciliation rate:   {summary.reconciliation_rate:.1f}%")
    lines.append(f"  Average confidence:    {summary.average_confidence:.1f}%")

    raised = {key: value for key, value in summary.issues_by_type.items() if value}
    if raised:
        lines.append("")
        lines.append("  Issues:")
        for key, value in sorted(raised.items(), key=lambda item: (-item[1], item[0])):
            lines.append(f"    {ISSUE_NAMES.get(key, key):<24} {value:>4}")

    for name, groups in summary.groups.items():
        lines.append("")
        lines.append(f"  By {name}:")
        for group in groups:
            short_key = group.key[:22] + ".." if len(group.key) > 24 else group.key
            lines.append(
                f"    {short_key:<24} {group.count:>4}  ${group.total_amount:>12,.2f}  "
                f"applied ${group.matched_amount:>12,.2f}"
            )

    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)
