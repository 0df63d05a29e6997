"""
partial.py - Partial payment acceptance.

A payment is a partial contribution to an invoice when:
1. partial payment matching is enabled
2. it is short of the invoice remaining-due by more than the amount tolerance
3. it covers at least `partial_payment_min_percentage` of the invoice amount
4. the non-amount confidence (reference, name, date) clears the minimum
   confidence score

Several partial payments may land on one invoice; `CandidatePool` tracks the
balance and drops the invoice once it is within tolerance of zero.
"""

from __future__ import annotations

from dataclasses import dataclass

from logging_config import get_logger
from match import amount_within_tolerance
from models import MatchCandidate
from pool import CandidatePool
from rules import ReconciliationRules

logger = get_logger(__name__)


@dataclass(frozen=True)
class PartialAssessment:
    """Outcome of checking one candidate for partial payment."""

    eligible: bool
    short: bool
    coverage_pct: float
    reason: str


def is_short_payment(amount: float, remaining_due: float, tolerance_pct: float) -> bool:
    """Payment is below the remaining-due by more than the tolerance."""
    return amount < remaining_due and not amount_within_tolerance(amount, remaining_due, tolerance_pct)


def assess_partial(
    amount: float,
    candidate: MatchCandidate,
    rules: ReconciliationRules,
) -> PartialAssessment:
    """Decide whether `amount` can be applied to `candidate` as a partial payment."""
    thresholds = rules.thresholds
    invoice = candidate.invoice
    coverage_pct = round(amount / invoice.amount_due * 100.0, 2)
    short = is_short_payment(amount, candidate.remaining_due, thresholds.amount_match_tolerance)

    if not rules.enabled_rules.partial_payment_matching:
        return PartialAssessment(False, short, coverage_pct, "partial payment matching is disabled")

    if not short:
        return PartialAssessment(False, short, coverage_pct, "payment is not short of the remaining-due")

    minimum = thresholds.partial_payment_min_percentage
    if coverage_pct < minimum:
        return PartialAssessment(
            False,
            short,
            coverage_pct,
            (
                f"payment covers {coverage_pct:.1f}% of {invoice.invoice_id}, "
                f"below the {minimum:g}% partial payment minimum"
            ),
        )

    if candidate.non_amount_confidence < thresholds.min_confidence_score:
        return PartialAssessment(
            False,
            short,
            coverage_pct,
            (
                f"reference/name/date confidence {candidate.non_amount_confidence:.1f}% "
                f"is below the {thresholds.min_confidence_score:g}% minimum"
            ),
        )

    return PartialAssessment(
        True,
        short,
        coverage_pct,
        f"payment covers {coverage_pct:.1f}% of {invoice.invoice_id}",
    )


def apply_partial(pool: CandidatePool, candidate: MatchCandidate, amount: float) -> float:
    """Record an accepted partial payment and return the invoice's new remaining-due."""
    before = pool.remaining_due(candidate.invoice_id)
    remaining = pool.apply_partial(candidate.invoice_id, amount)
    logger.info(
        "partial_applied | invoice=%s | amount=%.2f | remaining_before=%.2f | remaining_after=%.2f | settled=%s",
        candidate.invoice_id,
        amount,
        before,
        remaining,
        candidate.invoice_id not in pool,
    )
    return remaining
