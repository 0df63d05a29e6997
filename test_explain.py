"""
test_explain.py - Result and summary formatting tests

Usage: python -m pytest test_explain.py
"""

from __future__ import annotations

import json
import math
import os
import sys

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from explain import format_result, format_result_json, format_summary
from models import Invoice, Payment
from resolve import reconcile
from rules import DEFAULT_RULES
from similarity import TokenSetSimilarity
from summary import summarize

PAYMENTS = [
    Payment(payment_id="PAY-1", payer_name="Acme Corp", amount=1000.0, payment_date="2025-02-15", reference_note="INV-1"),
    Payment(payment_id="PAY-2", payer_name="Acme Corp", amount=1000.0, payment_date="2025-02-15", reference_note="INV-1"),
    Payment(payment_id="PAY-3", payer_name="Beta Inc", amount=250.0, payment_date="2025-02-16", reference_note="INV-2"),
    Payment(payment_id="PAY-4", payer_name="Nobody", amount=math.nan, payment_date="2025-02-16"),
]
INVOICES = [
    Invoice(invoice_id="INV-1", customer_name="Acme Corp", amount_due=1000.0, due_date="2025-02-15"),
    Invoice(invoice_id="INV-2", customer_name="Beta Inc", amount_due=1000.0, due_date="2025-02-16"),
]


@pytest.fixture(scope="module")
def results():
    return reconcile(PAYMENTS, INVOICES, [], DEFAULT_RULES, TokenSetSimilarity())


def test_format_result_text(results) -> None:
    by_id = {result.payment_id: result for result in results}

    matched = format_result(by_id["PAY-1"])
    assert "PAY-1: Matched - 100%" in matched
    assert "INV-1" in matched
    assert "Missing Ledger Entry" in matched

    duplicate = format_result(by_id["PAY-2"])
    assert "Duplicate of: PAY-1" in duplicate

    partial = format_result(by_id["PAY-3"])
    assert "Partial Match" in partial
    assert "$750.00" in partial


def test_format_result_none() -> None:
    assert "No result data available" in format_result(None)


def test_format_result_json_is_serializable(results) -> None:
    for result in results:
        payload = format_result_json(result)
        json.dumps(payload, allow_nan=False)
        assert payload["payment_id"] == result.payment_id
        assert payload["status"] == result.disposition.value


def test_format_result_json_fields(results) -> None:
    partial = next(result for result in results if result.payment_id == "PAY-3")
    payload = format_result_json(partial)
    assert payload["status"] == "partial_match"
    assert payload["remaining_due"] == 750.0
    assert payload["matched_invoice_ids"] == ["INV-2"]
    assert {"type", "name", "message"} <= set(payload["issues"][0])

    malformed = next(result for result in results if result.payment_id == "PAY-4")
    assert format_result_json(malformed)["payment"]["amount"] is None


def test_format_summary(results) -> None:
    text = format_summary(summarize(results, group_by=["customer"]))
    assert "SUMMARY - 4 payment(s) reconciled" in text
    assert "Partial Match" in text
    assert "By customer:" in text
    assert "Acme Corp" in text
    assert "No summary data available" in format_summary(None)


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
