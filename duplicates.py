"""
duplicates.py - Duplicate payment detection.

A payment is a likely re-submission of an earlier payment resolved in the
same pass when all of these hold:
- amounts agree within the amount tolerance
- payer names clear the name sensitivity bar
- payment dates are within the date difference threshold
- references do not conflict (when both carry one, they must be equal)

The comparison reuses the candidate scorer's field machinery, applied
payment-to-payment instead of payment-to-invoice. Only the later payment is
flagged; the earlier one keeps its disposition.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from logging_config import get_logger
from match import amount_within_tolerance, score_fields
from models import Payment, ReconciliationResult, SubScores
from normalize import days_between, normalize_reference
from rules import ReconciliationRules
from similarity import NameSimilarity

logger = get_logger(__name__)


@dataclass(frozen=True)
class DuplicateMatch:
    """An earlier result the payment duplicates, with the pairwise scores."""

    original: ReconciliationResult
    scores: SubScores
    confidence: float
    evidence: tuple[str, ...]

    @property
    def original_id(self) -> str:
        return self.original.payment_id


def is_duplicate_pair(
    earlier: Payment,
    later: Payment,
    rules: ReconciliationRules,
    similarity: NameSimilarity,
) -> bool:
    """Whether `later` looks like a re-submission of `earlier`."""
    thresholds = rules.thresholds

    if not amount_within_tolerance(later.amount, earlier.amount, thresholds.amount_match_tolerance):
        return False

    if not earlier.payer_name or not later.payer_name:
        return False
    if similarity.similarity(earlier.payer_name, later.payer_name) < thresholds.name_match_sensitivity / 100.0:
        return False

    days_apart = days_between(earlier.payment_date, later.payment_date)
    if days_apart is None or days_apart > thresholds.date_difference_threshold:
        return False

    earlier_reference = normalize_reference(earlier.reference_note)
    later_reference = normalize_reference(later.reference_note)
    if earlier_reference and later_reference and earlier_reference != later_reference:
        return False

    return True


def find_duplicate(
    payment: Payment,
    resolved: Iterable[ReconciliationResult],
    rules: ReconciliationRules,
    similarity: NameSimilarity,
) -> Optional[DuplicateMatch]:
    """Return the earliest resolved payment that `payment` duplicates, if any.

    `resolved` must be in processing order and hold only well-formed payments.
    """
    if not rules.enabled_rules.duplicate_detection:
        return None

    for earlier in resolved:
        if not is_duplicate_pair(earlier.payment, payment, rules, similarity):
            continue

        fields = score_fields(
            reference=payment.reference_note,
            target_references=[earlier.payment.reference_note],
            amount=payment.amount,
            target_amount=earlier.payment.amount,
            name=payment.payer_name,
            target_name=earlier.payment.payer_name,
            when=payment.payment_date,
            target_when=earlier.payment.payment_date,
            rules=rules,
            similarity=similarity,
        )
        logger.info(
            "duplicate_detected | payment=%s | original=%s | amount=%.2f | confidence=%.1f",
            payment.payment_id,
            earlier.payment_id,
            payment.amount,
            fields["confidence"],
        )
        return DuplicateMatch(
            original=earlier,
            scores=fields["scores"],
            confidence=fields["confidence"],
            evidence=fields["evidence"],
        )

    return None
