"""
summary.py - Aggregate view over a result sequence.

`summarize` is a pure reduction: the same results always give the same
summary, and summarizing never changes the results. Every disposition and
every issue type is present as a key, zero when absent.

Optional groupings:
    customer   payer name as written on the payment
    week       ISO week of the payment date, e.g. "2024-W03"
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence

from logging_config import get_logger
from models import (
    Disposition,
    GroupBreakdown,
    IssueType,
    ReconciliationResult,
    ReconciliationSummary,
)
from normalize import parse_date

logger = get_logger(__name__)

UNKNOWN_GROUP = "(unknown)"


def _customer_key(result: ReconciliationResult) -> str:
    return result.payment.payer_name or UNKNOWN_GROUP


def _week_key(result: ReconciliationResult) -> str:
    when = parse_date(result.payment.payment_date)
    if when is None:
        return UNKNOWN_GROUP
    year, week, _ = when.isocalendar()
    return f"{year}-W{week:02d}"


GROUPINGS: dict[str, Callable[[ReconciliationResult], str]] = {
    "customer": _customer_key,
    "week": _week_key,
}


def _empty_counts() -> dict[str, int]:
    return {disposition.value: 0 for disposition in Disposition}


def _group(results: Sequence[ReconciliationResult], key_fn: Callable[[ReconciliationResult], str]) -> list[GroupBreakdown]:
    buckets: dict[str, list[ReconciliationResult]] = {}
    for result in results:
        buckets.setdefault(key_fn(result), []).append(result)

    groups: list[GroupBreakdown] = []
    for key in sorted(buckets):
        members = buckets[key]
        counts = _empty_counts()
        for result in members:
            counts[result.disposition.value] += 1
        groups.append(
            GroupBreakdown(
                key=key,
                count=len(members),
                total_amount=round(sum(result.amount_value for result in members), 2),
                matched_amount=round(sum(result.amount_value for result in members if result.is_applied), 2),
                counts=counts,
            )
        )
    return groups


def summarize(
    results: Iterable[ReconciliationResult],
    group_by: str | Iterable[str] = (),
) -> ReconciliationSummary:
    """Reduce results to counts, amounts, issue totals and optional groupings.

    Raises ValueError for an unknown grouping name.
    """
    if isinstance(group_by, str):
        group_by = [group_by]
    group_names = list(dict.fromkeys(name.strip().lower() for name in group_by if name and name.strip()))
    unknown = [name for name in group_names if name not in GROUPINGS]
    if unknown:
        raise ValueError(f"Unknown grouping {unknown}; choose from {sorted(GROUPINGS)}")

    results = list(results)
    counts = _empty_counts()
    amounts = {disposition.value: 0.0 for disposition in Disposition}
    issues_by_type = {issue_type.value: 0 for issue_type in IssueType}

    for result in results:
        counts[result.disposition.value] += 1
        amounts[result.disposition.value] += result.amount_value
        for issue_type in result.issue_types:
            issues_by_type[issue_type.value] += 1

    amounts = {key: round(value, 2) for key, value in amounts.items()}
    matched_amount = round(
        amounts[Disposition.MATCHED.value] + amounts[Disposition.PARTIAL_MATCH.value],
        2,
    )
    unmatched_amount = round(
        sum(value for key, value in amounts.items() if key not in (Disposition.MATCHED.value, Disposition.PARTIAL_MATCH.value)),
        2,
    )
    total = len(results)
    applied = counts[Disposition.MATCHED.value] + counts[Disposition.PARTIAL_MATCH.value]

    summary = ReconciliationSummary(
        total_payments=total,
        counts=counts,
        amounts=amounts,
        total_amount=round(matched_amount + unmatched_amount, 2),
        matched_amount=matched_amount,
        unmatched_amount=unmatched_amount,
        issues_by_type=issues_by_type,
        average_confidence=round(sum(result.confidence for result in results) / total, 1) if total else 0.0,
        reconciliation_rate=round(applied / total * 100.0, 1) if total else 0.0,
        groups={name: _group(results, GROUPINGS[name]) for name in group_names},
    )

    logger.debug(
        "summary_built | payments=%s | counts=%s | matched_amount=%.2f | unmatched_amount=%.2f | groups=%s",
        total,
        counts,
        matched_amount,
        unmatched_amount,
        group_names,
    )
    return summary
