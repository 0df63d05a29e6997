"""
result_filter.py - Display filtering over reconciliation results.

Every set field of a `FilterSpec` must hold (AND). Unset fields impose no
constraint, so an empty filter returns every result. The input sequence is
never mutated or reordered.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from logging_config import get_logger
from models import FilterSpec, ReconciliationResult
from normalize import parse_date

logger = get_logger(__name__)


def _matches_search(result: ReconciliationResult, needle: str) -> bool:
    haystack = [
        result.payment.payer_name,
        result.payment.payment_id,
        result.payment.reference_note,
        *result.matched_invoice_ids,
    ]
    return any(needle in (value or "").casefold() for value in haystack)


def matches_filter(result: ReconciliationResult, spec: FilterSpec) -> bool:
    """Whether one result satisfies every set field of `spec`."""
    if spec.statuses is not None and result.disposition not in spec.statuses:
        return False

    if spec.start_date is not None or spec.end_date is not None:
        when = parse_date(result.payment.payment_date)
        if when is None:
            return False
        if spec.start_date is not None and when < spec.start_date:
            return False
        if spec.end_date is not None and when > spec.end_date:
            return False

    if spec.min_amount is not None and result.amount_value < spec.min_amount:
        return False
    if spec.max_amount is not None and result.amount_value > spec.max_amount:
        return False

    if spec.search is not None and not _matches_search(result, spec.search.casefold()):
        return False

    if spec.issue_type is not None and spec.issue_type not in result.issue_types:
        return False

    if spec.min_confidence is not None and result.confidence < spec.min_confidence:
        return False

    return True


def filter_results(
    results: Iterable[ReconciliationResult],
    spec: Optional[FilterSpec | dict[str, Any]] = None,
) -> list[ReconciliationResult]:
    """Return the results satisfying `spec`, in their original order."""
    results = list(results)
    if spec is None:
        return results
    if isinstance(spec, dict):
        spec = FilterSpec.model_validate(spec)
    if spec.is_empty:
        return results

    selected = [result for result in results if matches_filter(result, spec)]
    logger.debug(
        "results_filtered | input=%s | output=%s | filter=%s",
        len(results),
        len(selected),
        spec.model_dump(exclude_none=True, mode="json"),
    )
    return selected
