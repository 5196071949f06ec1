"""Heuristic matching by destination, amount and time window.

Used only when a payment event carries no known matching key, which happens
with wallets that do not propagate the payment request reference.
"""

import logging

from services.invoices.models import Invoice, InvoiceStatus
from services.shared.config import Settings
from services.storage.base import InvoiceStore

logger = logging.getLogger(__name__)


class FallbackMatcher:
    """Finds pending invoices a reference-less transfer could plausibly settle."""

    def __init__(self, store: InvoiceStore, settings: Settings) -> None:
        """Initialize fallback matcher.

        Args:
            store: Invoice store backend
            settings: Settings providing amount_tolerance_units and clock_skew_guard_seconds
        """
        self.store = store
        self.tolerance = settings.amount_tolerance_units
        self.clock_skew_guard = settings.clock_skew_guard_seconds

    def is_candidate(self, invoice: Invoice, destination: str, amount: int, occurred_at: int) -> bool:
        """Check one invoice against a transfer.

        Open-amount invoices never qualify: without the reference there is no
        way to tell which payer-chosen amount belongs to which invoice.

        Args:
            invoice: Invoice to test
            destination: Account that received the transfer
            amount: Transferred amount in smallest units
            occurred_at: Transfer time (unix seconds)

        Returns:
            True if the invoice is pending, for this destination, within
            tolerance of the amount and open at occurred_at
        """
        if invoice.status != InvoiceStatus.PENDING:
            return False
        if invoice.merchant_destination != destination:
            return False
        if invoice.expected_amount is None:
            return False
        if abs(invoice.expected_amount - amount) > self.tolerance:
            return False
        window_start = invoice.created_at - self.clock_skew_guard
        return window_start <= occurred_at <= invoice.expires_at

    def match(self, destination: str, amount: int, occurred_at: int) -> list[Invoice]:
        """Return every pending invoice for the destination that fits the transfer.

        Resolution of the returned set (none, one, several) is the caller's job.
        """
        pending = self.store.scan_pending_by_destination(destination)
        candidates = [
            invoice
            for invoice in pending
            if self.is_candidate(invoice, destination, amount, occurred_at)
        ]
        logger.debug(
            f"Fallback match for {destination} amount={amount} at {occurred_at}: "
            f"{len(candidates)} of {len(pending)} pending"
        )
        return candidates
