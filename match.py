"""
match.py - Candidate scoring for (payment, invoice) pairs.

Each pair gets four independent sub-scores (0-100):
- reference match (binary)
- amount proximity
- name similarity
- date proximity

and one combined confidence. Disabled rules score 0 and are masked out of
the weighted mean, so the remaining weights are re-normalized per pair and
a rule set with a rule switched off can still reach 100.

Decay curves are linear: the amount score reaches 0 at the amount tolerance,
the date score at the date threshold, and the name score at the similarity
bar set by name sensitivity.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from logging_config import get_logger
from models import Invoice, MatchCandidate, Payment, SubScores
from normalize import days_between, normalize_reference, parse_date
from rules import ReconciliationRules
from similarity import NameSimilarity

logger = get_logger(__name__)

# Half a cent: differences below this are rounding noise.
AMOUNT_EPSILON = 0.005


def score_reference(payment_reference: Any, invoice_references: Iterable[Any]) -> tuple[float, str]:
    """Binary reference score: 100 on an exact (normalized) match, else 0."""
    reference = normalize_reference(payment_reference)
    targets = [normalize_reference(item) for item in invoice_references]
    targets = [item for item in targets if item]

    if not reference:
        return 0.0, "Payment carries no reference"
    if not targets:
        return 0.0, f"Invoice has no reference to compare (payment: '{reference}')"

    if reference in targets:
        return 100.0, f"Reference matches exactly: '{reference}'"
    return 0.0, f"Reference differs: '{reference}' vs '{targets[0]}'"


def amount_within_tolerance(amount: float, target: float, tolerance_pct: float) -> bool:
    """Whether `amount` is within `tolerance_pct` percent of `target`."""
    if target <= 0:
        return False
    return abs(amount - target) <= target * tolerance_pct / 100.0 + AMOUNT_EPSILON


def score_amount(
    payment_amount: float,
    target_amount: float,
    tolerance_pct: float,
) -> tuple[float, float, float, str]:
    """Score amount proximity against the invoice remaining-due.

    Returns (score, abs_diff, pct_diff, evidence).
    """
    abs_diff = round(abs(payment_amount - target_amount), 2)

    if target_amount <= 0:
        return 0.0, abs_diff, 100.0, f"Target amount is ${target_amount:.2f} - cannot compare"

    pct_diff = round(abs_diff / target_amount * 100.0, 2)

    if abs_diff < AMOUNT_EPSILON:
        score = 100.0
    elif tolerance_pct <= 0:
        score = 0.0
    else:
        score = round(max(0.0, 1.0 - pct_diff / tolerance_pct) * 100.0, 1)

    if abs_diff < AMOUNT_EPSILON:
        evidence = f"Exact amount match: ${payment_amount:.2f}"
    else:
        sign = "+" if payment_amount > target_amount else "-"
        detail = (
            f"${payment_amount:.2f} vs ${target_amount:.2f} "
            f"(diff: {sign}${abs_diff:.2f}, {pct_diff}%)"
        )
        if pct_diff <= tolerance_pct:
            evidence = f"Amount within {tolerance_pct}% tolerance: {detail}"
        else:
            evidence = f"Amount differs beyond {tolerance_pct}% tolerance: {detail}"

    logger.debug(
        "amount_scoring | payment=%.2f | target=%.2f | score=%.1f | abs_diff=%.2f | pct_diff=%.2f",
        payment_amount,
        target_amount,
        score,
        abs_diff,
        pct_diff,
    )
    return score, abs_diff, pct_diff, evidence


def name_score_from_similarity(similarity_value: float, sensitivity: float) -> float:
    """Map a 0-1 similarity onto 0-100, reaching 0 at the sensitivity bar."""
    bar = sensitivity / 100.0
    if bar >= 1.0:
        return 100.0 if similarity_value >= 1.0 else 0.0
    scaled = (similarity_value - bar) / (1.0 - bar)
    return round(max(0.0, min(1.0, scaled)) * 100.0, 1)


def score_name(
    payer_name: str,
    customer_name: str,
    sensitivity: float,
    similarity: NameSimilarity,
) -> tuple[float, float, str]:
    """Score payer vs customer name. Returns (score, raw_similarity, evidence)."""
    if not (payer_name or "").strip():
        return 0.0, 0.0, f"Payer name is empty (customer: '{customer_name}')"
    if not (customer_name or "").strip():
        return 0.0, 0.0, f"Customer name is empty (payer: '{payer_name}')"

    raw = round(similarity.similarity(payer_name, customer_name), 4)
    score = name_score_from_similarity(raw, sensitivity)

    if raw >= 1.0:
        evidence = f"Names match: '{payer_name}' ~ '{customer_name}'"
    elif score > 0:
        evidence = (
            f"Names similar: '{payer_name}' ~ '{customer_name}' "
            f"(similarity: {raw:.2f}, bar: {sensitivity / 100.0:.2f})"
        )
    else:
        evidence = (
            f"Names differ: '{payer_name}' vs '{customer_name}' "
            f"(similarity: {raw:.2f}, bar: {sensitivity / 100.0:.2f})"
        )

    logger.debug(
        "name_scoring | payer=%r | customer=%r | similarity=%.4f | sensitivity=%.1f | score=%.1f",
        payer_name,
        customer_name,
        raw,
        sensitivity,
        score,
    )
    return score, raw, evidence


def score_date(
    payment_date: Any,
    due_date: Any,
    threshold_days: int,
) -> tuple[float, Optional[int], str]:
    """Score date proximity. Returns (score, days_apart, evidence)."""
    days_apart = days_between(payment_date, due_date)
    if days_apart is None:
        return 0.0, None, f"Could not compare dates: '{payment_date}' vs '{due_date}'"

    if days_apart == 0:
        score = 100.0
    elif threshold_days <= 0:
        score = 0.0
    else:
        score = round(max(0.0, 1.0 - days_apart / threshold_days) * 100.0, 1)

    if days_apart == 0:
        evidence = f"Same date: {payment_date}"
    elif days_apart <= threshold_days:
        evidence = f"Dates {days_apart} day(s) apart (payment: {payment_date}, due: {due_date})"
    else:
        evidence = (
            f"Date gap: {days_apart} days apart (payment: {payment_date}, due: {due_date}) - "
            f"exceeds {threshold_days}-day window"
        )

    logger.debug(
        "date_scoring | payment=%s | due=%s | days_apart=%s | score=%.1f",
        payment_date,
        due_date,
        days_apart,
        score,
    )
    return score, days_apart, evidence


def active_weights(rules: ReconciliationRules, include_amount: bool = True) -> dict[str, int]:
    """Weights of the sub-scores whose rules are enabled."""
    enabled = rules.enabled_rules
    weights = rules.weights
    mask = {
        "reference": enabled.exact_reference_match,
        "amount": enabled.amount_tolerance and include_amount,
        "name": enabled.fuzzy_customer_match,
        "date": enabled.date_proximity,
    }
    raw = {
        "reference": weights.reference_match,
        "amount": weights.amount_match,
        "name": weights.name_match,
        "date": weights.date_match,
    }
    return {key: raw[key] for key, active in mask.items() if active}


def weighted_confidence(
    scores: SubScores,
    rules: ReconciliationRules,
    include_amount: bool = True,
) -> float:
    """Unrounded weighted mean of enabled sub-scores, re-normalized to 0-100."""
    weights = active_weights(rules, include_amount=include_amount)
    denominator = sum(weights.values())
    if denominator <= 0:
        return 0.0
    numerator = sum(getattr(scores, key) * weight for key, weight in weights.items())
    return max(0.0, min(100.0, numerator / denominator))


def combine_scores(
    scores: SubScores,
    rules: ReconciliationRules,
    include_amount: bool = True,
) -> float:
    """Reported confidence: `weighted_confidence` rounded to one decimal."""
    return round(weighted_confidence(scores, rules, include_amount=include_amount), 1)


def score_fields(
    *,
    reference: Any,
    target_references: Iterable[Any],
    amount: float,
    target_amount: float,
    name: str,
    target_name: str,
    when: Any,
    target_when: Any,
    rules: ReconciliationRules,
    similarity: NameSimilarity,
) -> dict[str, Any]:
    """Run every enabled sub-scorer over one pair of field sets.

    Shared by invoice candidates and payment-to-payment duplicate checks.
    """
    enabled = rules.enabled_rules
    thresholds = rules.thresholds
    evidence: list[str] = []

    if enabled.exact_reference_match:
        reference_score, reference_evidence = score_reference(reference, target_references)
    else:
        reference_score, reference_evidence = 0.0, "Reference rule disabled"
    evidence.append(reference_evidence)

    amount_score, abs_diff, pct_diff, amount_evidence = score_amount(
        amount, target_amount, thresholds.amount_match_tolerance
    )
    if not enabled.amount_tolerance:
        amount_score = 0.0
        amount_evidence = f"Amount rule disabled ({amount_evidence})"
    evidence.append(amount_evidence)

    name_similarity = 0.0
    if enabled.fuzzy_customer_match:
        name_score, name_similarity, name_evidence = score_name(
            name, target_name, thresholds.name_match_sensitivity, similarity
        )
    else:
        name_score, name_evidence = 0.0, "Name rule disabled"
    evidence.append(name_evidence)

    date_score, days_apart, date_evidence = score_date(
        when, target_when, thresholds.date_difference_threshold
    )
    if not enabled.date_proximity:
        date_score = 0.0
        date_evidence = f"Date rule disabled ({date_evidence})"
    evidence.append(date_evidence)

    scores = SubScores(
        reference=reference_score,
        amount=amount_score,
        name=name_score,
        date=date_score,
    )
    return {
        "scores": scores,
        "confidence": combine_scores(scores, rules),
        "non_amount_confidence": combine_scores(scores, rules, include_amount=False),
        "amount_diff": abs_diff,
        "amount_pct_diff": pct_diff,
        "date_diff": days_apart,
        "name_similarity": name_similarity,
        "evidence": tuple(evidence),
    }


def score_candidate(
    payment: Payment,
    invoice: Invoice,
    remaining_due: float,
    rules: ReconciliationRules,
    similarity: NameSimilarity,
) -> MatchCandidate:
    """Score one payment against one invoice at its current remaining-due."""
    references = [invoice.invoice_id]
    if invoice.reference_code:
        references.append(invoice.reference_code)

    fields = score_fields(
        reference=payment.reference_note,
        target_references=references,
        amount=payment.amount,
        target_amount=remaining_due,
        name=payment.payer_name,
        target_name=invoice.customer_name,
        when=payment.payment_date,
        target_when=invoice.due_date,
        rules=rules,
        similarity=similarity,
    )
    candidate = MatchCandidate(invoice=invoice, remaining_due=remaining_due, **fields)

    logger.debug(
        "candidate_scored | payment=%s | invoice=%s | confidence=%.1f | non_amount=%.1f | scores=%s",
        payment.payment_id,
        invoice.invoice_id,
        candidate.confidence,
        candidate.non_amount_confidence,
        candidate.scores.model_dump(),
    )
    return candidate


def rank_candidates(
    candidates: Iterable[MatchCandidate],
    by: str = "confidence",
) -> list[MatchCandidate]:
    """Order by `by` (a confidence attribute) descending, then due date, then invoice id."""

    def sort_key(candidate: MatchCandidate) -> tuple:
        due = parse_date(candidate.invoice.due_date)
        return (
            -getattr(candidate, by),
            due is None,
            due.toordinal() if due else 0,
            candidate.invoice.invoice_id,
        )

    return sorted(candidates, key=sort_key)
