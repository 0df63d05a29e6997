"""
resolve.py - Match resolution for one reconciliation pass.

`reconcile` turns payments, invoices and ledger entries into exactly one
`ReconciliationResult` per payment. Each payment walks a fixed sequence and
stops at the first terminal state:

    1. malformed payment             -> UNMATCHED (invalid_record)
    2. duplicate of an earlier one   -> DUPLICATE
    3. full candidates               -> MATCHED, or AMBIGUOUS on a tie
    4. partial candidates            -> PARTIAL_MATCH, or AMBIGUOUS on a tie
    5. nothing cleared the bar       -> UNMATCHED, with the closest candidate

Payments are processed by payment date, then payment id, so pool effects
(consumed invoices, reduced balances) are reproducible across runs. Ledger
entries never change a disposition; they only add corroboration or issues
to applied payments.
"""

from __future__ import annotations

import math
import time
from typing import Iterable, Optional

from duplicates import find_duplicate
from logging_config import get_logger
from match import amount_within_tolerance, rank_candidates, score_candidate, weighted_confidence
from models import (
    Disposition,
    Invoice,
    IssueType,
    LedgerEntry,
    MatchCandidate,
    Payment,
    ReconciliationIssue,
    ReconciliationResult,
)
from normalize import normalize_reference, parse_date
from partial import PartialAssessment, apply_partial, assess_partial
from pool import CandidatePool
from rules import DEFAULT_RULES, ReconciliationRules, validate_rules
from similarity import NameSimilarity, get_similarity

logger = get_logger(__name__)


def _issue(issue_type: IssueType, message: str) -> ReconciliationIssue:
    return ReconciliationIssue(type=issue_type, message=message)


def order_payments(payments: Iterable[Payment]) -> list[Payment]:
    """Processing order: payment date ascending, then payment id. Unparseable dates last."""

    def sort_key(payment: Payment) -> tuple:
        when = parse_date(payment.payment_date)
        return (when is None, when.toordinal() if when else 0, payment.payment_id)

    return sorted(payments, key=sort_key)


def screen_invoices(invoices: Iterable[Invoice]) -> tuple[list[Invoice], list[tuple[Invoice, str]]]:
    """Split invoices into usable ones and excluded (invoice, reason) pairs.

    Every occurrence of a repeated invoice id is excluded, since there is no
    way to tell which copy is authoritative.
    """
    invoices = list(invoices)
    occurrences: dict[str, int] = {}
    for invoice in invoices:
        occurrences[invoice.invoice_id] = occurrences.get(invoice.invoice_id, 0) + 1

    valid: list[Invoice] = []
    excluded: list[tuple[Invoice, str]] = []
    for invoice in invoices:
        reasons: list[str] = []
        if occurrences[invoice.invoice_id] > 1:
            reasons.append(f"invoice id appears {occurrences[invoice.invoice_id]} times")
        if not invoice.has_valid_amount:
            reasons.append(f"amount due {invoice.amount_due!r} is not a positive number")
        if parse_date(invoice.due_date) is None:
            reasons.append(f"due date {invoice.due_date!r} is not a valid date")

        if reasons:
            excluded.append((invoice, "; ".join(reasons)))
            logger.warning(
                "record_excluded | kind=invoice | id=%s | reasons=%s",
                invoice.invoice_id,
                "; ".join(reasons),
            )
            continue
        valid.append(invoice)
    return valid, excluded


def screen_ledger(
    entries: Iterable[LedgerEntry],
) -> tuple[dict[str, LedgerEntry], dict[str, list[tuple[str, str]]]]:
    """Index usable ledger entries by payment id.

    Returns (payment_id -> first usable entry, payment_id -> [(entry_id, reason)]).
    """
    index: dict[str, LedgerEntry] = {}
    excluded: dict[str, list[tuple[str, str]]] = {}
    seen: set[str] = set()

    for entry in entries:
        reasons: list[str] = []
        if entry.ledger_entry_id in seen:
            reasons.append("ledger entry id already used")
        seen.add(entry.ledger_entry_id)
        if not entry.has_valid_amount:
            reasons.append(f"amount {entry.amount!r} is not a positive number")
        if parse_date(entry.entry_date) is None:
            reasons.append(f"entry date {entry.entry_date!r} is not a valid date")

        if reasons:
            excluded.setdefault(entry.payment_id, []).append((entry.ledger_entry_id, "; ".join(reasons)))
            logger.warning(
                "record_excluded | kind=ledger_entry | id=%s | payment=%s | reasons=%s",
                entry.ledger_entry_id,
                entry.payment_id or "-",
                "; ".join(reasons),
            )
            continue
        if entry.payment_id:
            index.setdefault(entry.payment_id, entry)
    return index, excluded


def payment_problems(payment: Payment, seen_ids: set[str]) -> list[str]:
    """Reasons a payment cannot be matched. Empty when it is well-formed."""
    problems: list[str] = []
    if payment.payment_id in seen_ids:
        problems.append(f"payment id {payment.payment_id} appears more than once")
    if not payment.has_valid_amount:
        problems.append(f"amount {payment.amount!r} is not a positive number")
    if parse_date(payment.payment_date) is None:
        problems.append(f"payment date {payment.payment_date!r} is not a valid date")
    return problems


class _PassContext:
    """Everything one pass shares across payments."""

    def __init__(
        self,
        rules: ReconciliationRules,
        similarity: NameSimilarity,
        pool: CandidatePool,
        valid_invoices: dict[str, Invoice],
        excluded_invoices: list[tuple[Invoice, str]],
        ledger_index: dict[str, LedgerEntry],
        excluded_ledger: dict[str, list[tuple[str, str]]],
    ) -> None:
        self.rules = rules
        self.similarity = similarity
        self.pool = pool
        self.valid_invoices = valid_invoices
        self.excluded_records = [invoice for invoice, _ in excluded_invoices]
        self.excluded_invoices: dict[str, str] = {}
        for invoice, reason in excluded_invoices:
            self.excluded_invoices.setdefault(invoice.invoice_id, reason)
        self.ledger_index = ledger_index
        self.excluded_ledger = excluded_ledger
        self.resolved: list[ReconciliationResult] = []

    def referenced_invoice_id(self, payment: Payment) -> Optional[str]:
        """Invoice id (valid or excluded) the payment reference names, if any.

        Invoice ids are checked before reference codes.
        """
        reference = normalize_reference(payment.reference_note)
        if not reference:
            return None
        for invoice_id in list(self.valid_invoices) + list(self.excluded_invoices):
            if normalize_reference(invoice_id) == reference:
                return invoice_id
        for invoice in list(self.valid_invoices.values()) + self.excluded_records:
            if invoice.reference_code and normalize_reference(invoice.reference_code) == reference:
                return invoice.invoice_id
        return None


def _record_issues(payment: Payment, ctx: _PassContext) -> list[ReconciliationIssue]:
    """invalid_record issues caused by excluded records the payment points at."""
    issues: list[ReconciliationIssue] = []
    referenced = ctx.referenced_invoice_id(payment)
    if referenced is not None and referenced in ctx.excluded_invoices:
        issues.append(
            _issue(
                IssueType.INVALID_RECORD,
                f"Referenced invoice {referenced} was excluded: {ctx.excluded_invoices[referenced]}",
            )
        )
    for entry_id, reason in ctx.excluded_ledger.get(payment.payment_id, []):
        issues.append(_issue(IssueType.INVALID_RECORD, f"Ledger entry {entry_id} was excluded: {reason}"))
    return issues


def _candidate_issues(payment: Payment, candidate: MatchCandidate, ctx: _PassContext) -> list[ReconciliationIssue]:
    """Name and reference problems on an accepted candidate."""
    rules = ctx.rules
    issues: list[ReconciliationIssue] = []
    invoice = candidate.invoice

    if rules.enabled_rules.fuzzy_customer_match and payment.payer_name and invoice.customer_name:
        if candidate.name_similarity < rules.thresholds.name_match_sensitivity / 100.0:
            issues.append(
                _issue(
                    IssueType.PAYER_NAME_MISMATCH,
                    (
                        f"Payer '{payment.payer_name}' does not match customer "
                        f"'{invoice.customer_name}' (similarity {candidate.name_similarity:.2f})"
                    ),
                )
            )

    if rules.enabled_rules.exact_reference_match and payment.reference_note and candidate.scores.reference < 100:
        issues.append(
            _issue(
                IssueType.REFERENCE_MISMATCH,
                f"Payment reference '{payment.reference_note}' does not name invoice {invoice.invoice_id}",
            )
        )
    return issues


def _ledger_issues(
    payment: Payment,
    invoice_ids: tuple[str, ...],
    ctx: _PassContext,
) -> tuple[list[ReconciliationIssue], list[str], Optional[str]]:
    """Corroborate an applied payment against the ledger.

    Returns (issues, evidence, ledger_entry_id).
    """
    entry = ctx.ledger_index.get(payment.payment_id)
    if entry is None:
        if payment.payment_id in ctx.excluded_ledger:
            return [], [], None
        return [_issue(IssueType.MISSING_LEDGER_ENTRY, "No corresponding ledger entry found")], [], None

    issues: list[ReconciliationIssue] = []
    evidence: list[str] = []
    tolerance = ctx.rules.thresholds.amount_match_tolerance

    if entry.invoice_id and entry.invoice_id not in invoice_ids:
        issues.append(
            _issue(
                IssueType.LEDGER_MISMATCH,
                (
                    f"Ledger entry {entry.ledger_entry_id} posts to {entry.invoice_id}, "
                    f"but the payment was applied to {', '.join(invoice_ids)}"
                ),
            )
        )
    if not amount_within_tolerance(entry.amount, payment.amount, tolerance):
        issues.append(
            _issue(
                IssueType.LEDGER_MISMATCH,
                (
                    f"Ledger entry {entry.ledger_entry_id} records ${entry.amount:.2f}, "
                    f"payment is ${payment.amount:.2f}"
                ),
            )
        )
    if not issues:
        evidence.append(f"Ledger entry {entry.ledger_entry_id} corroborates the posting")
    return issues, evidence, entry.ledger_entry_id


def _malformed_result(payment: Payment, problems: list[str]) -> ReconciliationResult:
    logger.warning(
        "record_excluded | kind=payment | id=%s | reasons=%s",
        payment.payment_id,
        "; ".join(problems),
    )
    return ReconciliationResult(
        payment=payment,
        disposition=Disposition.UNMATCHED,
        issues=tuple(_issue(IssueType.INVALID_RECORD, f"Invalid payment: {problem}") for problem in problems),
        evidence=("Payment excluded from matching",),
    )


def _top_candidates(
    candidates: list[MatchCandidate],
    rules: ReconciliationRules,
    include_amount: bool = True,
) -> list[MatchCandidate]:
    """Candidates sharing the highest unrounded confidence, in rank order.

    More than one entry means a tie. Rounded confidences are not compared,
    so scores that only agree at one decimal do not tie.
    """
    by = "confidence" if include_amount else "non_amount_confidence"
    ranked = rank_candidates(candidates, by=by)
    exact = [weighted_confidence(candidate.scores, rules, include_amount=include_amount) for candidate in ranked]
    top = max(exact)
    return [
        candidate
        for candidate, value in zip(ranked, exact)
        if math.isclose(value, top, rel_tol=0.0, abs_tol=1e-9)
    ]


def _ambiguous_result(
    payment: Payment,
    tied: list[MatchCandidate],
    confidence: float,
    issues: list[ReconciliationIssue],
) -> ReconciliationResult:
    invoice_ids = tuple(candidate.invoice_id for candidate in tied)
    issues = issues + [
        _issue(
            IssueType.AMBIGUOUS_MATCH,
            f"{len(tied)} invoices tie at {confidence:.1f}% confidence: {', '.join(invoice_ids)}",
        )
    ]
    return ReconciliationResult(
        payment=payment,
        disposition=Disposition.AMBIGUOUS,
        matched_invoice_ids=invoice_ids,
        confidence=confidence,
        scores=tied[0].scores,
        issues=tuple(issues),
        evidence=tied[0].evidence + ("Left for manual review: no single best invoice",),
    )


def _unmatched_result(
    payment: Payment,
    candidates: list[MatchCandidate],
    ctx: _PassContext,
    issues: list[ReconciliationIssue],
) -> ReconciliationResult:
    rules = ctx.rules
    thresholds = rules.thresholds
    evidence: list[str] = []

    referenced = ctx.referenced_invoice_id(payment)
    if referenced is not None and referenced in ctx.valid_invoices and referenced not in ctx.pool:
        issues.append(
            _issue(
                IssueType.MISSING_INVOICE,
                f"Invoice {referenced} named by reference '{payment.reference_note}' is already settled in this pass",
            )
        )
    elif referenced is None or referenced not in ctx.pool:
        reference = payment.reference_note or "(none)"
        issues.append(
            _issue(
                IssueType.MISSING_INVOICE,
                f'No matching invoice found for payment reference "{reference}"',
            )
        )

    if candidates:
        closest = rank_candidates(candidates)[0]
        evidence.append(
            f"Closest candidate {closest.invoice_id} scored {closest.confidence:.1f}% "
            f"(minimum {thresholds.min_confidence_score:g}%)"
        )
        evidence.extend(closest.evidence)
        issues.extend(_candidate_issues(payment, closest, ctx))

        if not amount_within_tolerance(payment.amount, closest.remaining_due, thresholds.amount_match_tolerance):
            assessment = assess_partial(payment.amount, closest, rules)
            detail = (
                f"Payment ${payment.amount:.2f} vs {closest.invoice_id} remaining "
                f"${closest.remaining_due:.2f}"
            )
            if assessment.short and rules.enabled_rules.partial_payment_matching:
                detail = f"{detail}: {assessment.reason}"
            issues.append(_issue(IssueType.AMOUNT_MISMATCH, detail))
    else:
        evidence.append("No open invoices left to compare")

    return ReconciliationResult(
        payment=payment,
        disposition=Disposition.UNMATCHED,
        issues=tuple(issues),
        evidence=tuple(evidence),
    )


def _resolve_payment(payment: Payment, ctx: _PassContext) -> ReconciliationResult:
    rules = ctx.rules
    thresholds = rules.thresholds
    issues = _record_issues(payment, ctx)

    duplicate = find_duplicate(payment, ctx.resolved, rules, ctx.similarity)
    if duplicate is not None:
        original = duplicate.original
        issues.append(
            _issue(
                IssueType.DUPLICATE_PAYMENT,
                (
                    f"Payment {payment.payment_id} repeats {original.payment_id} "
                    f"(${original.payment.amount:.2f} from '{original.payment.payer_name}' "
                    f"on {original.payment.payment_date})"
                ),
            )
        )
        entry = ctx.ledger_index.get(payment.payment_id)
        return ReconciliationResult(
            payment=payment,
            disposition=Disposition.DUPLICATE,
            matched_invoice_ids=original.matched_invoice_ids,
            confidence=duplicate.confidence,
            scores=duplicate.scores,
            issues=tuple(issues),
            evidence=duplicate.evidence,
            duplicate_of=original.payment_id,
            ledger_entry_id=entry.ledger_entry_id if entry else None,
        )

    candidates = [
        score_candidate(payment, invoice, remaining, rules, ctx.similarity)
        for invoice, remaining in ctx.pool
    ]

    assessments: dict[str, PartialAssessment] = {
        candidate.invoice_id: assess_partial(payment.amount, candidate, rules) for candidate in candidates
    }

    # A payment the partial matcher accepts is never a full match, even with
    # the amount rule off.
    full = [
        candidate
        for candidate in candidates
        if candidate.confidence >= thresholds.min_confidence_score
        and not assessments[candidate.invoice_id].eligible
        and (
            not rules.enabled_rules.amount_tolerance
            or amount_within_tolerance(payment.amount, candidate.remaining_due, thresholds.amount_match_tolerance)
        )
    ]
    if full:
        tied = _top_candidates(full, rules)
        if len(tied) > 1:
            return _ambiguous_result(payment, tied, tied[0].confidence, issues)

        best = tied[0]
        issues.extend(_candidate_issues(payment, best, ctx))
        if not amount_within_tolerance(payment.amount, best.remaining_due, thresholds.amount_match_tolerance):
            issues.append(
                _issue(
                    IssueType.AMOUNT_MISMATCH,
                    f"Payment ${payment.amount:.2f} vs {best.invoice_id} remaining ${best.remaining_due:.2f}",
                )
            )
        invoice_ids = (best.invoice_id,)
        ledger_issues, ledger_evidence, ledger_entry_id = _ledger_issues(payment, invoice_ids, ctx)
        result = ReconciliationResult(
            payment=payment,
            disposition=Disposition.MATCHED,
            matched_invoice_ids=invoice_ids,
            confidence=best.confidence,
            scores=best.scores,
            issues=tuple(issues + ledger_issues),
            evidence=best.evidence + tuple(ledger_evidence),
            ledger_entry_id=ledger_entry_id,
        )
        # Pool changes only once the result exists.
        ctx.pool.consume(best.invoice_id)
        return result

    partials = [candidate for candidate in candidates if assessments[candidate.invoice_id].eligible]
    if partials:
        tied = _top_candidates(partials, rules, include_amount=False)
        if len(tied) > 1:
            return _ambiguous_result(payment, tied, tied[0].non_amount_confidence, issues)

        best = tied[0]
        remaining = ctx.pool.balance_after(best.invoice_id, payment.amount)
        issues.append(
            _issue(
                IssueType.PARTIAL_PAYMENT,
                (
                    f"Partial payment of ${payment.amount:.2f} toward {best.invoice_id} "
                    f"(${best.invoice.amount_due:.2f}); ${remaining:.2f} remains due"
                ),
            )
        )
        issues.extend(_candidate_issues(payment, best, ctx))
        invoice_ids = (best.invoice_id,)
        ledger_issues, ledger_evidence, ledger_entry_id = _ledger_issues(payment, invoice_ids, ctx)
        result = ReconciliationResult(
            payment=payment,
            disposition=Disposition.PARTIAL_MATCH,
            matched_invoice_ids=invoice_ids,
            confidence=best.non_amount_confidence,
            scores=best.scores,
            issues=tuple(issues + ledger_issues),
            evidence=(
                best.evidence
                + (f"Partial payment accepted: {assessments[best.invoice_id].reason}",)
                + tuple(ledger_evidence)
            ),
            remaining_due=remaining,
            ledger_entry_id=ledger_entry_id,
        )
        apply_partial(ctx.pool, best, payment.amount)
        return result

    return _unmatched_result(payment, candidates, ctx, issues)


def reconcile(
    payments: Iterable[Payment],
    invoices: Iterable[Invoice],
    ledger_entries: Iterable[LedgerEntry] = (),
    rules: ReconciliationRules | dict | None = DEFAULT_RULES,
    similarity: Optional[NameSimilarity] = None,
) -> list[ReconciliationResult]:
    """Resolve every payment to exactly one disposition.

    Rules are validated before any matching; an invalid rule set raises
    `ConfigurationError`. Malformed records never abort the pass. Results
    are returned in processing order.
    """
    start = time.time()
    rules = validate_rules(rules)
    similarity = similarity or get_similarity()

    payments = list(payments)
    valid_invoices, excluded_invoices = screen_invoices(invoices)
    ledger_index, excluded_ledger = screen_ledger(ledger_entries or ())

    ctx = _PassContext(
        rules=rules,
        similarity=similarity,
        pool=CandidatePool(valid_invoices, rules.thresholds.amount_match_tolerance),
        valid_invoices={invoice.invoice_id: invoice for invoice in valid_invoices},
        excluded_invoices=excluded_invoices,
        ledger_index=ledger_index,
        excluded_ledger=excluded_ledger,
    )
    logger.info(
        "reconcile_start | payments=%s | invoices=%s | excluded_invoices=%s | ledger_entries=%s | similarity=%s",
        len(payments),
        len(valid_invoices),
        len(ctx.excluded_invoices),
        len(ledger_index),
        getattr(similarity, "name", type(similarity).__name__),
    )

    results: list[ReconciliationResult] = []
    seen_ids: set[str] = set()
    for payment in order_payments(payments):
        problems = payment_problems(payment, seen_ids)
        seen_ids.add(payment.payment_id)
        if problems:
            results.append(_malformed_result(payment, problems))
            continue

        try:
            result = _resolve_payment(payment, ctx)
        except Exception as exc:
            logger.error(
                "resolve_error | payment=%s | error_type=%s | error=%s | fallback=unmatched",
                payment.payment_id,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            result = ReconciliationResult(
                payment=payment,
                disposition=Disposition.UNMATCHED,
                issues=(
                    _issue(
                        IssueType.INVALID_RECORD,
                        f"Resolution failed due to {type(exc).__name__}: {exc}",
                    ),
                ),
                evidence=("Returning safe fallback result; review this payment manually.",),
            )
        else:
            ctx.resolved.append(result)

        logger.debug(
            "payment_resolved | payment=%s | disposition=%s | invoices=%s | confidence=%.1f | issues=%s",
            payment.payment_id,
            result.disposition.value,
            list(result.matched_invoice_ids),
            result.confidence,
            [issue_type.value for issue_type in result.issue_types],
        )
        results.append(result)

    counts: dict[str, int] = {}
    for result in results:
        counts[result.disposition.value] = counts.get(result.disposition.value, 0) + 1
    logger.info(
        "reconcile_complete | payments=%s | dispositions=%s | open_invoices=%s | duration_s=%.3f",
        len(results),
        counts,
        len(ctx.pool),
        time.time() - start,
    )
    return results
