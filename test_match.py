"""
test_match.py - Candidate scoring tests

Checks for:
- score_reference
- score_amount
- score_name / name_score_from_similarity
- score_date
- combine_scores / weighted_confidence (enablement mask and re-normalization)
- score_candidate / rank_candidates

Usage: python -m pytest test_match.py
"""

from __future__ import annotations

import os
import sys

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from match import (
    amount_within_tolerance,
    combine_scores,
    name_score_from_similarity,
    rank_candidates,
    score_amount,
    score_candidate,
    score_date,
    score_name,
    score_reference,
    weighted_confidence,
)
from models import Invoice, Payment, SubScores
from rules import DEFAULT_RULES, validate_rules
from similarity import TokenSetSimilarity

SIMILARITY = TokenSetSimilarity()


def _rules(**enabled: bool):
    return validate_rules({"enabledRules": enabled})


def _payment(**overrides) -> Payment:
    data = {
        "payment_id": "PAY-1",
        "payer_name": "Acme Corp",
        "amount": 1000.0,
        "payment_date": "2025-02-15",
        "reference_note": "INV-1",
    }
    data.update(overrides)
    return Payment(**data)


def _invoice(**overrides) -> Invoice:
    data = {
        "invoice_id": "INV-1",
        "customer_name": "Acme Corp",
        "amount_due": 1000.0,
        "due_date": "2025-02-15",
    }
    data.update(overrides)
    return Invoice(**data)


def test_reference_exact_match_is_100() -> None:
    score, evidence = score_reference(" inv-1001 ", ["INV-1001"])
    assert score == 100.0
    assert "matches" in evidence


def test_reference_is_binary() -> None:
    assert score_reference("INV-1002", ["INV-1001"])[0] == 0.0
    assert score_reference("INV-100", ["INV-1001"])[0] == 0.0
    assert score_reference("", ["INV-1001"])[0] == 0.0
    assert score_reference("PO-77", ["INV-1001", "po-77"])[0] == 100.0


def test_amount_linear_decay() -> None:
    assert score_amount(1000.0, 1000.0, 1.0)[0] == 100.0
    score, abs_diff, pct_diff, _ = score_amount(1005.0, 1000.0, 1.0)
    assert score == 50.0
    assert abs_diff == 5.0
    assert pct_diff == 0.5
    assert score_amount(1010.0, 1000.0, 1.0)[0] == 0.0
    assert score_amount(1200.0, 1000.0, 1.0)[0] == 0.0


def test_amount_zero_tolerance_is_exact_only() -> None:
    assert score_amount(1000.0, 1000.0, 0.0)[0] == 100.0
    assert score_amount(1000.01, 1000.0, 0.0)[0] == 0.0


def test_amount_within_tolerance() -> None:
    assert amount_within_tolerance(1010.0, 1000.0, 1.0)
    assert not amount_within_tolerance(1010.5, 1000.0, 1.0)
    assert not amount_within_tolerance(10.0, 0.0, 1.0)


def test_name_score_curve() -> None:
    assert name_score_from_similarity(1.0, 70) == 100.0
    assert name_score_from_similarity(0.85, 70) == 50.0
    assert name_score_from_similarity(0.7, 70) == 0.0
    assert name_score_from_similarity(0.3, 70) == 0.0
    assert name_score_from_similarity(0.99, 100) == 0.0
    assert name_score_from_similarity(1.0, 100) == 100.0


def test_score_name_uses_similarity() -> None:
    score, raw, evidence = score_name("Beta Inc", "Beta", 70, SIMILARITY)
    assert score == 100.0
    assert raw == 1.0
    assert "match" in evidence.lower()

    score, _, _ = score_name("", "Beta", 70, SIMILARITY)
    assert score == 0.0


def test_date_linear_decay() -> None:
    assert score_date("2025-02-15", "2025-02-15", 7)[:2] == (100.0, 0)
    assert score_date("2025-02-16", "2025-02-15", 7)[0] == 85.7
    assert score_date("2025-02-22", "2025-02-15", 7)[0] == 0.0
    assert score_date("2025-02-16", "2025-02-15", 0)[0] == 0.0
    score, days, _ = score_date("2025-02-15", "", 7)
    assert score == 0.0
    assert days is None


def test_combine_all_enabled() -> None:
    full = SubScores(reference=100, amount=100, name=100, date=100)
    assert combine_scores(full, DEFAULT_RULES) == 100.0
    mixed = SubScores(reference=0, amount=100, name=100, date=100)
    assert combine_scores(mixed, DEFAULT_RULES) == 60.0


def test_disabled_rule_is_masked_and_renormalized() -> None:
    rules = _rules(dateProximity=False)
    scores = SubScores(reference=100, amount=100, name=100, date=0)
    assert combine_scores(scores, rules) == 100.0
    assert combine_scores(scores, DEFAULT_RULES) == 90.0


def test_no_enabled_weight_gives_zero() -> None:
    rules = _rules(
        exactReferenceMatch=False,
        fuzzyCustomerMatch=False,
        amountTolerance=False,
        dateProximity=False,
    )
    assert combine_scores(SubScores(reference=100, amount=100, name=100, date=100), rules) == 0.0


def test_non_amount_confidence() -> None:
    scores = SubScores(reference=100, amount=0, name=100, date=100)
    assert combine_scores(scores, DEFAULT_RULES, include_amount=False) == 100.0


def test_weighted_confidence_is_unrounded() -> None:
    scores = SubScores(reference=100, amount=100, name=100, date=42.6)
    assert weighted_confidence(scores, DEFAULT_RULES) == pytest.approx(94.26)
    assert combine_scores(scores, DEFAULT_RULES) == 94.3


def test_full_match_candidate_is_100() -> None:
    candidate = score_candidate(_payment(), _invoice(), 1000.0, DEFAULT_RULES, SIMILARITY)
    assert candidate.confidence == 100.0
    assert candidate.non_amount_confidence == 100.0
    assert candidate.scores == SubScores(reference=100, amount=100, name=100, date=100)
    assert len(candidate.evidence) == 4


def test_candidate_scored_against_remaining_due() -> None:
    candidate = score_candidate(_payment(amount=750.0), _invoice(), 750.0, DEFAULT_RULES, SIMILARITY)
    assert candidate.scores.amount == 100.0
    assert candidate.amount_diff == 0.0


def test_reference_code_counts_as_reference() -> None:
    candidate = score_candidate(
        _payment(reference_note="PO-4471"),
        _invoice(reference_code="po-4471"),
        1000.0,
        DEFAULT_RULES,
        SIMILARITY,
    )
    assert candidate.scores.reference == 100.0


@pytest.mark.parametrize(
    "payment_overrides",
    [
        {},
        {"amount": 1.0},
        {"payer_name": "Someone Else", "reference_note": "X"},
        {"payment_date": "2030-01-01"},
        {"payer_name": "", "reference_note": "", "payment_date": ""},
    ],
)
def test_confidence_always_in_range(payment_overrides: dict) -> None:
    candidate = score_candidate(_payment(**payment_overrides), _invoice(), 1000.0, DEFAULT_RULES, SIMILARITY)
    assert 0.0 <= candidate.confidence <= 100.0
    assert 0.0 <= candidate.non_amount_confidence <= 100.0


def test_rank_ties_by_due_date_then_id() -> None:
    payment = _payment(reference_note="", payment_date="2025-02-15")
    later = score_candidate(payment, _invoice(invoice_id="INV-A", due_date="2025-02-15"), 1000.0, DEFAULT_RULES, SIMILARITY)
    first_b = score_candidate(payment, _invoice(invoice_id="INV-B", due_date="2025-02-15"), 1000.0, DEFAULT_RULES, SIMILARITY)
    assert later.confidence == first_b.confidence

    ranked = rank_candidates([first_b, later])
    assert [candidate.invoice_id for candidate in ranked] == ["INV-A", "INV-B"]

    weaker = score_candidate(payment, _invoice(invoice_id="INV-0", due_date="2025-02-20"), 1000.0, DEFAULT_RULES, SIMILARITY)
    ranked = rank_candidates([weaker, first_b, later])
    assert ranked[-1].invoice_id == "INV-0"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
