"""Client-driven polling of a single invoice.

While a payer completes a transfer the client polls the invoice. Each poll
scans recent transfers into the invoice's destination within a hard
wall-clock budget and reconciles them against this invoice only. Running
out of budget or losing the ledger reports ``pending``; the client polls again.
"""

import logging
import time
from collections.abc import Callable

from services.ingestion.views import StatusView
from services.invoices.lifecycle import InvoiceLifecycleManager
from services.invoices.models import InvoiceStatus, ReconcileOutcome
from services.ledger.base import LedgerReader
from services.reconciliation.engine import ReconciliationEngine
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class PollHandler:
    """Reports an invoice's status, checking the ledger while it is pending."""

    def __init__(
        self,
        lifecycle: InvoiceLifecycleManager,
        engine: ReconciliationEngine,
        ledger_reader: LedgerReader,
        settings: Settings,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize poll handler.

        Args:
            lifecycle: Invoice lifecycle manager
            engine: Reconciliation engine
            ledger_reader: Ledger reader used for the scan
            settings: Settings with poll_budget_seconds and clock_skew_guard_seconds
            monotonic: Wall-clock source for the budget
        """
        self.lifecycle = lifecycle
        self.engine = engine
        self.ledger_reader = ledger_reader
        self.settings = settings
        self._monotonic = monotonic

    def handle(self, invoice_id: str) -> StatusView | None:
        """Poll one invoice.

        Returns:
            Current status view, or None if the invoice does not exist
        """
        invoice = self.lifecycle.store.get(invoice_id)
        if invoice is None:
            return None
        if invoice.status.is_terminal:
            return StatusView.from_invoice(invoice)

        observed = self.lifecycle.expire_if_due(invoice)
        if observed.status == InvoiceStatus.DECLINED:
            return StatusView.from_invoice(observed, expired=True)

        deadline = self._monotonic() + self.settings.poll_budget_seconds
        since = invoice.created_at - self.settings.clock_skew_guard_seconds
        try:
            events = self.ledger_reader.decode_recent_transfers(
                invoice.merchant_destination, since, deadline
            )
            # The budget bounds ledger I/O; decoded transfers are reconciled in full
            for event in events:
                result = self.engine.reconcile_for_invoice(event, invoice, channel="poll")
                if result.outcome in (ReconcileOutcome.MATCHED, ReconcileOutcome.ALREADY_PAID):
                    break
        except UpstreamUnavailableError as e:
            logger.info(f"Poll for invoice {invoice_id} reporting pending: {e.message}")
            return StatusView.from_invoice(invoice)

        refreshed = self.lifecycle.store.get(invoice_id) or invoice
        observed = self.lifecycle.expire_if_due(refreshed)
        expired = observed.status == InvoiceStatus.DECLINED and refreshed.status == InvoiceStatus.PENDING
        return StatusView.from_invoice(observed, expired=expired)
