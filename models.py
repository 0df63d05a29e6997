"""
models.py - Data Models for the Reconciliation Engine

This file defines the records the engine consumes and the values it produces.
Every module communicates through these models:

    rules.py         ->  ReconciliationRules (configuration)
    match.py         ->  MatchCandidate
    resolve.py       ->  list[ReconciliationResult]
    summary.py       ->  ReconciliationSummary
    result_filter.py ->  list[ReconciliationResult] (uses FilterSpec)

Design principles:
1. Input records are borrowed for one pass and never mutated (frozen models)
2. Record fields stay close to the source data; a negative amount or an
   unparseable date is representable so the engine can exclude the record
   and report it instead of failing the whole batch
3. Results carry issues and evidence strings so every disposition is
   explainable without re-running the scorer

Schema relationships:
    Payment        --used by--> ReconciliationResult.payment
    Invoice        --used by--> MatchCandidate.invoice
    SubScores      --used by--> MatchCandidate.scores, ReconciliationResult.scores
    Disposition    --used by--> ReconciliationResult.disposition, FilterSpec.statuses
    IssueType      --used by--> ReconciliationIssue.type, FilterSpec.issue_type
"""

from __future__ import annotations

import math
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


class Disposition(str, Enum):
    """Final classification assigned to one payment by the resolver."""

    # Exactly one invoice is the best candidate and clears the confidence bar.
    MATCHED = "matched"

    # Payment covers a share of an invoice (at least the configured minimum).
    # The invoice stays in the pool with a reduced remaining-due.
    PARTIAL_MATCH = "partial_match"

    # Re-submission of a payment already resolved in this pass.
    DUPLICATE = "duplicate"

    # Two or more invoices tie at the top confidence. Left for manual review.
    AMBIGUOUS = "ambiguous"

    # No candidate cleared the confidence bar, or the payment is malformed.
    UNMATCHED = "unmatched"


DISPOSITION_LABELS: dict[Disposition, str] = {
    Disposition.MATCHED: "Matched",
    Disposition.PARTIAL_MATCH: "Partial Match",
    Disposition.DUPLICATE: "Duplicate",
    Disposition.AMBIGUOUS: "Ambiguous",
    Disposition.UNMATCHED: "Unmatched",
}


class IssueType(str, Enum):
    """Categories of problems attached to a result."""

    DUPLICATE_PAYMENT = "duplicate_payment"
    MISSING_INVOICE = "missing_invoice"
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_LEDGER_ENTRY = "missing_ledger_entry"
    LEDGER_MISMATCH = "ledger_mismatch"
    REFERENCE_MISMATCH = "reference_mismatch"
    PAYER_NAME_MISMATCH = "payer_name_mismatch"
    AMBIGUOUS_MATCH = "ambiguous_match"
    PARTIAL_PAYMENT = "partial_payment"
    INVALID_RECORD = "invalid_record"


def _coerce_date_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


DateText = Annotated[str, BeforeValidator(_coerce_date_text)]
CleanText = Annotated[str, BeforeValidator(_coerce_text)]


def _finite_positive(value: float) -> bool:
    return math.isfinite(value) and value > 0


class Payment(BaseModel):
    """Incoming payment from a bank feed or import.

    `amount` and `payment_date` are kept as supplied. The resolver checks
    them and turns a malformed payment into an UNMATCHED result with an
    `invalid_record` issue.
    """

    model_config = ConfigDict(frozen=True)

    payment_id: str = Field(..., min_length=1, description="Unique payment identifier, e.g. 'PAY-501'.")
    payer_name: CleanText = Field(default="", description="Name of the paying party as it appears on the payment.")
    amount: float = Field(..., description="Payment amount. Must be positive and finite to be matched.")
    payment_date: DateText = Field(default="", description="Payment date as text; ISO format preferred.")
    reference_note: CleanText = Field(
        default="",
        description="Free-text remittance reference, usually an invoice id such as 'INV-1001'.",
    )
    memo: Optional[str] = Field(default=None, description="Optional remittance memo.")
    method: Optional[str] = Field(default=None, description="ACH, Wire, Check or Credit Card.")

    @property
    def has_valid_amount(self) -> bool:
        return _finite_positive(self.amount)


class Invoice(BaseModel):
    """Receivable the organization expects to collect."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str = Field(..., min_length=1, description="Invoice reference, e.g. 'INV-1001'.")
    customer_name: CleanText = Field(default="", description="Billed customer.")
    amount_due: float = Field(..., description="Full invoice amount. Must be positive and finite.")
    due_date: DateText = Field(default="", description="Due date as text; ISO format preferred.")
    reference_code: Optional[str] = Field(
        default=None,
        description="Alternate reference (PO number, customer reference) also accepted as an exact match.",
    )
    status: Optional[str] = Field(default=None, description="Open, Paid or Overdue in the source system.")

    @property
    def has_valid_amount(self) -> bool:
        return _finite_positive(self.amount_due)


class LedgerEntry(BaseModel):
    """Posted transaction tying a payment to an invoice. Corroborating evidence only."""

    model_config = ConfigDict(frozen=True)

    ledger_entry_id: str = Field(..., min_length=1)
    invoice_id: CleanText = Field(default="")
    payment_id: CleanText = Field(default="")
    amount: float = Field(...)
    entry_date: DateText = Field(default="")

    @property
    def has_valid_amount(self) -> bool:
        return _finite_positive(self.amount)


class ReconciliationIssue(BaseModel):
    """One problem found while resolving a payment."""

    model_config = ConfigDict(frozen=True)

    type: IssueType
    message: str


class SubScores(BaseModel):
    """The four independent per-criterion scores behind a confidence score."""

    model_config = ConfigDict(frozen=True)

    reference: float = Field(default=0.0, ge=0, le=100)
    amount: float = Field(default=0.0, ge=0, le=100)
    name: float = Field(default=0.0, ge=0, le=100)
    date: float = Field(default=0.0, ge=0, le=100)


class MatchCandidate(BaseModel):
    """One scored (payment, invoice) pairing.

    `confidence` is the weighted combination of all enabled sub-scores.
    `non_amount_confidence` masks the amount rule out as well; partial
    payments are gated on it because their amount score is 0 by construction.
    """

    model_config = ConfigDict(frozen=True)

    invoice: Invoice
    remaining_due: float = Field(..., ge=0, description="Invoice balance at the time of scoring.")
    scores: SubScores
    confidence: float = Field(..., ge=0, le=100)
    non_amount_confidence: float = Field(..., ge=0, le=100)
    amount_diff: float = Field(..., ge=0, description="Absolute difference vs remaining-due.")
    amount_pct_diff: float = Field(..., ge=0, description="Difference as a percentage of remaining-due.")
    date_diff: Optional[int] = Field(default=None, ge=0, description="Days between payment and due date.")
    name_similarity: float = Field(default=0.0, ge=0, le=1)
    evidence: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def invoice_id(self) -> str:
        return self.invoice.invoice_id


class ReconciliationResult(BaseModel):
    """Disposition of exactly one payment. Created once per pass, never patched."""

    model_config = ConfigDict(frozen=True)

    payment: Payment
    disposition: Disposition
    matched_invoice_ids: tuple[str, ...] = Field(
        default_factory=tuple,
        description=(
            "Invoices this payment was applied to. Ambiguous results list every "
            "tied invoice; duplicates inherit the invoices of the original payment."
        ),
    )
    confidence: float = Field(default=0.0, ge=0, le=100)
    scores: SubScores = Field(default_factory=SubScores)
    issues: tuple[ReconciliationIssue, ...] = Field(default_factory=tuple)
    evidence: tuple[str, ...] = Field(default_factory=tuple)
    duplicate_of: Optional[str] = Field(default=None, description="Earlier payment this one re-submits.")
    remaining_due: Optional[float] = Field(
        default=None,
        description="Invoice balance left after applying this payment (partial matches).",
    )
    ledger_entry_id: Optional[str] = Field(default=None)

    @property
    def payment_id(self) -> str:
        return self.payment.payment_id

    @property
    def amount_value(self) -> float:
        """Payment amount for aggregation; malformed amounts count as 0."""
        return self.payment.amount if self.payment.has_valid_amount else 0.0

    @property
    def is_applied(self) -> bool:
        """Whether the payment was applied to an invoice (full or partial)."""
        return self.disposition in (Disposition.MATCHED, Disposition.PARTIAL_MATCH)

    @property
    def issue_types(self) -> list[IssueType]:
        return [issue.type for issue in self.issues]

    @property
    def issue_messages(self) -> list[str]:
        return [issue.message for issue in self.issues]

    @property
    def label(self) -> str:
        return DISPOSITION_LABELS[self.disposition]


class GroupBreakdown(BaseModel):
    """Aggregates for one group (a customer or an ISO week)."""

    model_config = ConfigDict(frozen=True)

    key: str
    count: int = 0
    total_amount: float = 0.0
    matched_amount: float = 0.0
    counts: dict[str, int] = Field(default_factory=dict)


class ReconciliationSummary(BaseModel):
    """Aggregate derived from a result sequence. Holds no independent state."""

    model_config = ConfigDict(frozen=True)

    total_payments: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    amounts: dict[str, float] = Field(default_factory=dict)
    total_amount: float = 0.0
    matched_amount: float = 0.0
    unmatched_amount: float = 0.0
    issues_by_type: dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    reconciliation_rate: float = Field(
        default=0.0,
        description="Share of payments applied to an invoice (matched or partial), 0-100.",
    )
    groups: dict[str, list[GroupBreakdown]] = Field(default_factory=dict)

    def count(self, disposition: Disposition) -> int:
        return self.counts.get(disposition.value, 0)

    def amount(self, disposition: Disposition) -> float:
        return self.amounts.get(disposition.value, 0.0)


class FilterSpec(BaseModel):
    """Display filter over a result sequence. Unset fields impose no constraint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    statuses: Optional[frozenset[Disposition]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    search: Optional[str] = None
    issue_type: Optional[IssueType] = None
    min_confidence: Optional[float] = Field(default=None, ge=0, le=100)

    @field_validator("search", mode="before")
    @classmethod
    def _blank_search_is_unset(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("statuses", mode="before")
    @classmethod
    def _empty_statuses_is_unset(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (str, Disposition)):
            value = [value]
        items = list(value)
        return frozenset(items) if items else None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in type(self).model_fields)
