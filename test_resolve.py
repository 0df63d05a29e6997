"""
test_resolve.py - Match resolver tests

End-to-end checks for `reconcile` on small hand-built inputs:
- full match, partial match, below-minimum partial, duplicate, tie
- pool effects across payments (consumed and settled invoices)
- malformed records and ledger corroboration
- determinism and processing order

Usage: python -m pytest test_resolve.py
"""

from __future__ import annotations

import math
import os
import sys

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

import resolve
from match import combine_scores
from models import Disposition, Invoice, IssueType, LedgerEntry, MatchCandidate, Payment, SubScores
from resolve import order_payments, reconcile
from rules import DEFAULT_RULES, ConfigurationError, validate_rules
from similarity import TokenSetSimilarity

SIMILARITY = TokenSetSimilarity()


def _payment(payment_id: str = "PAY-1", **overrides) -> Payment:
    data = {
        "payment_id": payment_id,
        "payer_name": "Acme Corp",
        "amount": 1000.0,
        "payment_date": "2025-02-15",
        "reference_note": "INV-1",
    }
    data.update(overrides)
    return Payment(**data)


def _invoice(invoice_id: str = "INV-1", **overrides) -> Invoice:
    data = {
        "invoice_id": invoice_id,
        "customer_name": "Acme Corp",
        "amount_due": 1000.0,
        "due_date": "2025-02-15",
    }
    data.update(overrides)
    return Invoice(**data)


def _run(payments, invoices, ledger=(), rules=DEFAULT_RULES):
    return reconcile(payments, invoices, ledger, rules, SIMILARITY)


def _by_id(results):
    return {result.payment_id: result for result in results}


def test_full_match_scores_100() -> None:
    [result] = _run([_payment()], [_invoice()])
    assert result.disposition == Disposition.MATCHED
    assert result.matched_invoice_ids == ("INV-1",)
    assert result.confidence == 100.0
    assert result.scores.reference == 100.0


def test_quarter_payment_is_partial_with_remaining_750() -> None:
    [result] = _run([_payment(amount=250.0)], [_invoice()])
    assert result.disposition == Disposition.PARTIAL_MATCH
    assert result.matched_invoice_ids == ("INV-1",)
    assert result.remaining_due == 750.0
    assert IssueType.PARTIAL_PAYMENT in result.issue_types
    assert result.confidence == 100.0


def test_below_partial_minimum_is_unmatched() -> None:
    [result] = _run([_payment(amount=240.0)], [_invoice()])
    assert result.disposition == Disposition.UNMATCHED
    assert result.matched_invoice_ids == ()
    assert IssueType.AMOUNT_MISMATCH in result.issue_types
    assert any("below the 25% partial payment minimum" in message for message in result.issue_messages)


def test_duplicate_pair() -> None:
    # Input order is reversed; processing order (date, then id) decides the original.
    results = _run([_payment("PAY-2"), _payment("PAY-1")], [_invoice()])
    by_id = _by_id(results)
    assert by_id["PAY-1"].disposition == Disposition.MATCHED
    duplicate = by_id["PAY-2"]
    assert duplicate.disposition == Disposition.DUPLICATE
    assert duplicate.duplicate_of == "PAY-1"
    assert duplicate.matched_invoice_ids == ("INV-1",)
    assert IssueType.DUPLICATE_PAYMENT in duplicate.issue_types


def test_duplicate_does_not_consume_pool() -> None:
    invoices = [_invoice(), _invoice("INV-2", customer_name="Beta Inc", amount_due=500.0)]
    payments = [
        _payment("PAY-1"),
        _payment("PAY-2"),
        _payment("PAY-3", payer_name="Beta Inc", amount=500.0, reference_note="INV-2"),
    ]
    by_id = _by_id(_run(payments, invoices))
    assert by_id["PAY-2"].disposition == Disposition.DUPLICATE
    assert by_id["PAY-3"].disposition == Disposition.MATCHED
    assert by_id["PAY-3"].matched_invoice_ids == ("INV-2",)


def test_tie_is_ambiguous() -> None:
    payment = _payment(reference_note="")
    [result] = _run([payment], [_invoice("INV-B"), _invoice("INV-A")])
    assert result.disposition == Disposition.AMBIGUOUS
    assert result.matched_invoice_ids == ("INV-A", "INV-B")
    assert result.confidence == 60.0
    assert IssueType.AMBIGUOUS_MATCH in result.issue_types


def test_ambiguous_leaves_invoices_open() -> None:
    payments = [
        _payment("PAY-1", reference_note=""),
        _payment("PAY-2", reference_note="INV-A", payment_date="2025-02-25"),
    ]
    by_id = _by_id(_run(payments, [_invoice("INV-A"), _invoice("INV-B")]))
    assert by_id["PAY-1"].disposition == Disposition.AMBIGUOUS
    assert by_id["PAY-2"].disposition == Disposition.MATCHED
    assert by_id["PAY-2"].matched_invoice_ids == ("INV-A",)


def test_matched_invoice_leaves_pool() -> None:
    payments = [
        _payment("PAY-1"),
        _payment("PAY-2", payer_name="Other Payer LLC", payment_date="2025-03-20"),
    ]
    by_id = _by_id(_run(payments, [_invoice()]))
    assert by_id["PAY-1"].disposition == Disposition.MATCHED
    second = by_id["PAY-2"]
    assert second.disposition == Disposition.UNMATCHED
    assert any("already settled" in message for message in second.issue_messages)


def test_installments_settle_invoice() -> None:
    payments = [
        _payment("PAY-1", amount=500.0, payment_date="2025-02-01"),
        _payment("PAY-2", amount=500.0, payment_date="2025-02-20"),
    ]
    by_id = _by_id(_run(payments, [_invoice(due_date="2025-02-10")]))
    assert by_id["PAY-1"].disposition == Disposition.PARTIAL_MATCH
    assert by_id["PAY-1"].remaining_due == 500.0
    assert by_id["PAY-2"].disposition == Disposition.MATCHED
    assert by_id["PAY-2"].matched_invoice_ids == ("INV-1",)


def test_amount_rule_disabled_allows_full_match_with_issue() -> None:
    rules = validate_rules({"enabledRules": {"amountTolerance": False}})
    [result] = _run([_payment(amount=1200.0)], [_invoice()], rules=rules)
    assert result.disposition == Disposition.MATCHED
    assert IssueType.AMOUNT_MISMATCH in result.issue_types


def test_amount_rule_disabled_still_tracks_installments() -> None:
    rules = validate_rules({"enabledRules": {"amountTolerance": False}})
    payments = [
        _payment("PAY-1", amount=250.0),
        _payment("PAY-2", amount=750.0, payment_date="2025-02-20"),
    ]
    by_id = _by_id(_run(payments, [_invoice()], rules=rules))

    first = by_id["PAY-1"]
    assert first.disposition == Disposition.PARTIAL_MATCH
    assert first.remaining_due == 750.0
    assert IssueType.AMOUNT_MISMATCH not in first.issue_types

    second = by_id["PAY-2"]
    assert second.disposition == Disposition.MATCHED
    assert second.matched_invoice_ids == ("INV-1",)
    assert IssueType.AMOUNT_MISMATCH not in second.issue_types


def test_payer_name_mismatch_flagged_on_match() -> None:
    [result] = _run([_payment(payer_name="Omega Trading")], [_invoice()])
    assert result.disposition == Disposition.MATCHED
    assert IssueType.PAYER_NAME_MISMATCH in result.issue_types


@pytest.mark.parametrize("amount", [-50.0, 0.0, math.nan, math.inf])
def test_malformed_amount_is_unmatched(amount: float) -> None:
    [result] = _run([_payment(amount=amount)], [_invoice()])
    assert result.disposition == Disposition.UNMATCHED
    assert IssueType.INVALID_RECORD in result.issue_types


def test_malformed_payment_does_not_abort_pass() -> None:
    payments = [_payment("PAY-0", payment_date="someday"), _payment("PAY-1")]
    results = _run(payments, [_invoice()])
    assert [result.payment_id for result in results] == ["PAY-1", "PAY-0"]
    assert results[0].disposition == Disposition.MATCHED
    assert results[1].disposition == Disposition.UNMATCHED


def test_repeated_payment_id_is_invalid() -> None:
    results = _run([_payment("PAY-1"), _payment("PAY-1")], [_invoice()])
    assert results[0].disposition == Disposition.MATCHED
    assert results[1].disposition == Disposition.UNMATCHED
    assert IssueType.INVALID_RECORD in results[1].issue_types


def test_excluded_invoice_reported_on_referencing_payment() -> None:
    [result] = _run([_payment()], [_invoice(amount_due=-1000.0)])
    assert result.disposition == Disposition.UNMATCHED
    assert IssueType.INVALID_RECORD in result.issue_types
    assert any("INV-1 was excluded" in message for message in result.issue_messages)


def test_excluded_invoice_reported_when_named_by_reference_code() -> None:
    invoices = [_invoice("INV-9", amount_due=-5.0, reference_code="PO-77")]
    [result] = _run([_payment(reference_note="PO-77")], invoices)
    assert result.disposition == Disposition.UNMATCHED
    assert IssueType.INVALID_RECORD in result.issue_types
    assert any("INV-9 was excluded" in message for message in result.issue_messages)


def test_duplicate_invoice_ids_excluded() -> None:
    [result] = _run([_payment()], [_invoice(), _invoice()])
    assert result.disposition == Disposition.UNMATCHED
    assert any("appears 2 times" in message for message in result.issue_messages)


def test_ledger_corroboration() -> None:
    ledger = [
        LedgerEntry(ledger_entry_id="LED-1", invoice_id="INV-1", payment_id="PAY-1", amount=1000.0, entry_date="2025-02-15"),
        LedgerEntry(ledger_entry_id="LED-2", invoice_id="INV-9", payment_id="PAY-2", amount=500.0, entry_date="2025-02-15"),
        LedgerEntry(ledger_entry_id="LED-3", invoice_id="INV-3", payment_id="PAY-3", amount=-5.0, entry_date="2025-02-15"),
    ]
    payments = [
        _payment("PAY-1"),
        _payment("PAY-2", payer_name="Beta Inc", amount=500.0, reference_note="INV-2"),
        _payment("PAY-3", payer_name="Gamma LLC", amount=300.0, reference_note="INV-3"),
        _payment("PAY-4", payer_name="Delta Co", amount=800.0, reference_note="INV-4"),
    ]
    invoices = [
        _invoice(),
        _invoice("INV-2", customer_name="Beta Inc", amount_due=500.0),
        _invoice("INV-3", customer_name="Gamma LLC", amount_due=300.0),
        _invoice("INV-4", customer_name="Delta Co", amount_due=800.0),
    ]
    by_id = _by_id(_run(payments, invoices, ledger))

    assert by_id["PAY-1"].ledger_entry_id == "LED-1"
    assert not {IssueType.LEDGER_MISMATCH, IssueType.MISSING_LEDGER_ENTRY} & set(by_id["PAY-1"].issue_types)

    assert by_id["PAY-2"].disposition == Disposition.MATCHED
    assert IssueType.LEDGER_MISMATCH in by_id["PAY-2"].issue_types

    assert by_id["PAY-3"].disposition == Disposition.MATCHED
    assert IssueType.INVALID_RECORD in by_id["PAY-3"].issue_types

    assert IssueType.MISSING_LEDGER_ENTRY in by_id["PAY-4"].issue_types


def test_invalid_rules_raise_before_matching() -> None:
    bad = {"weights": {"referenceMatch": 50, "amountMatch": 30, "nameMatch": 20, "dateMatch": 10}}
    with pytest.raises(ConfigurationError):
        _run([_payment()], [_invoice()], rules=bad)


def test_empty_inputs() -> None:
    assert _run([], []) == []
    [result] = _run([_payment()], [])
    assert result.disposition == Disposition.UNMATCHED
    assert IssueType.MISSING_INVOICE in result.issue_types


def test_unexpected_error_degrades_one_payment(monkeypatch: pytest.MonkeyPatch) -> None:
    original = resolve.score_candidate

    def flaky(payment, *args, **kwargs):
        if payment.payment_id == "PAY-1":
            raise RuntimeError("boom")
        return original(payment, *args, **kwargs)

    monkeypatch.setattr(resolve, "score_candidate", flaky)
    payments = [_payment("PAY-1"), _payment("PAY-2", payer_name="Beta Inc", amount=500.0, reference_note="INV-2")]
    invoices = [_invoice(), _invoice("INV-2", customer_name="Beta Inc", amount_due=500.0)]
    by_id = _by_id(_run(payments, invoices))
    assert by_id["PAY-1"].disposition == Disposition.UNMATCHED
    assert any("RuntimeError" in message for message in by_id["PAY-1"].issue_messages)
    assert by_id["PAY-2"].disposition == Disposition.MATCHED


@pytest.mark.parametrize(
    ("first_amount", "first_disposition"),
    [(1000.0, Disposition.MATCHED), (250.0, Disposition.PARTIAL_MATCH)],
)
def test_failed_payment_leaves_pool_untouched(
    monkeypatch: pytest.MonkeyPatch,
    first_amount: float,
    first_disposition: Disposition,
) -> None:
    original = resolve._ledger_issues

    def flaky(payment, *args, **kwargs):
        if payment.payment_id == "PAY-1":
            raise RuntimeError("ledger offline")
        return original(payment, *args, **kwargs)

    monkeypatch.setattr(resolve, "_ledger_issues", flaky)
    payments = [
        _payment("PAY-1", amount=first_amount),
        _payment("PAY-2", payment_date="2025-02-16"),
    ]
    by_id = _by_id(_run(payments, [_invoice()]))

    assert by_id["PAY-1"].disposition == Disposition.UNMATCHED
    assert any("RuntimeError" in message for message in by_id["PAY-1"].issue_messages)
    assert by_id["PAY-2"].disposition == Disposition.MATCHED
    assert by_id["PAY-2"].matched_invoice_ids == ("INV-1",)

    # Sanity check that the same inputs without the failure change the pool.
    monkeypatch.setattr(resolve, "_ledger_issues", original)
    assert _by_id(_run(payments, [_invoice()]))["PAY-1"].disposition == first_disposition


def _candidate(invoice_id: str, date_score: float) -> MatchCandidate:
    scores = SubScores(reference=100.0, amount=100.0, name=100.0, date=date_score)
    return MatchCandidate(
        invoice=_invoice(invoice_id),
        remaining_due=1000.0,
        scores=scores,
        confidence=combine_scores(scores, DEFAULT_RULES),
        non_amount_confidence=combine_scores(scores, DEFAULT_RULES, include_amount=False),
        amount_diff=0.0,
        amount_pct_diff=0.0,
    )


def test_tie_uses_unrounded_confidence() -> None:
    stronger = _candidate("INV-B", 43.0)
    weaker = _candidate("INV-A", 42.6)
    assert stronger.confidence == weaker.confidence == 94.3

    assert resolve._top_candidates([weaker, stronger], DEFAULT_RULES) == [stronger]

    twin = _candidate("INV-C", 43.0)
    assert resolve._top_candidates([twin, weaker, stronger], DEFAULT_RULES) == [stronger, twin]


def test_processing_order() -> None:
    payments = [
        _payment("PAY-3", payment_date="2025-03-01"),
        _payment("PAY-2", payment_date="bad"),
        _payment("PAY-1", payment_date="2025-03-01"),
        _payment("PAY-9", payment_date="2025-01-01"),
    ]
    assert [payment.payment_id for payment in order_payments(payments)] == ["PAY-9", "PAY-1", "PAY-3", "PAY-2"]


def test_deterministic_and_input_order_independent() -> None:
    payments = [
        _payment("PAY-1", amount=250.0),
        _payment("PAY-2", payer_name="Beta Inc", amount=500.0, reference_note="INV-2", payment_date="2025-02-16"),
        _payment("PAY-3", reference_note="", amount=1000.0, payment_date="2025-02-17"),
    ]
    invoices = [_invoice(), _invoice("INV-2", customer_name="Beta Inc", amount_due=500.0)]

    first = [result.model_dump() for result in _run(payments, invoices)]
    second = [result.model_dump() for result in _run(list(reversed(payments)), list(reversed(invoices)))]
    assert first == second


def test_confidence_in_range_for_every_result() -> None:
    payments = [
        _payment("PAY-1"),
        _payment("PAY-2", amount=250.0, payment_date="2025-02-18"),
        _payment("PAY-3", payer_name="", reference_note="", payment_date="2025-04-01"),
    ]
    for result in _run(payments, [_invoice(), _invoice("INV-2", amount_due=300.0)]):
        assert 0.0 <= result.confidence <= 100.0


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
