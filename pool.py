"""
pool.py - Pass-scoped pool of open invoices.

One `CandidatePool` belongs to exactly one `reconcile` call. It maps invoice
id to remaining-due and is the only mutable state of a pass:

    consume(invoice_id)              full match, invoice leaves the pool
    apply_partial(invoice_id, amt)   remaining-due decreases; the invoice
                                     leaves once the balance is within
                                     tolerance of zero

Iteration is always in invoice-id order so pool effects are reproducible.
"""

from __future__ import annotations

from typing import Iterable, Iterator

from logging_config import get_logger
from models import Invoice

logger = get_logger(__name__)


class CandidatePool:
    """Open invoices and their remaining-due amounts for one pass."""

    def __init__(self, invoices: Iterable[Invoice], tolerance_pct: float) -> None:
        self._invoices: dict[str, Invoice] = {}
        self._remaining: dict[str, float] = {}
        self._tolerance_pct = tolerance_pct
        for invoice in invoices:
            self._invoices[invoice.invoice_id] = invoice
            self._remaining[invoice.invoice_id] = round(invoice.amount_due, 2)

    def __len__(self) -> int:
        return len(self._remaining)

    def __contains__(self, invoice_id: object) -> bool:
        return invoice_id in self._remaining

    def __iter__(self) -> Iterator[tuple[Invoice, float]]:
        for invoice_id in sorted(self._remaining):
            yield self._invoices[invoice_id], self._remaining[invoice_id]

    def remaining_due(self, invoice_id: str) -> float:
        return self._remaining[invoice_id]

    def settle_threshold(self, invoice_id: str) -> float:
        """Balance at or below which an invoice counts as fully paid."""
        return self._invoices[invoice_id].amount_due * self._tolerance_pct / 100.0 + 0.005

    def consume(self, invoice_id: str) -> None:
        """Remove an invoice after a full match."""
        self._remaining.pop(invoice_id)
        logger.debug("pool_consume | invoice=%s | open_invoices=%s", invoice_id, len(self._remaining))

    def balance_after(self, invoice_id: str, amount: float) -> float:
        """Remaining-due a partial payment would leave. Does not change the pool."""
        return round(max(0.0, self._remaining[invoice_id] - amount), 2)

    def apply_partial(self, invoice_id: str, amount: float) -> float:
        """Apply a partial payment and return the new remaining-due."""
        remaining = self.balance_after(invoice_id, amount)
        if remaining <= self.settle_threshold(invoice_id):
            self._remaining.pop(invoice_id)
            logger.debug("pool_settled | invoice=%s | remaining=%.2f", invoice_id, remaining)
        else:
            self._remaining[invoice_id] = remaining
            logger.debug("pool_partial | invoice=%s | applied=%.2f | remaining=%.2f", invoice_id, amount, remaining)
        return remaining
