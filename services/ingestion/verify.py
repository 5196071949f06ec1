"""On-demand verification of a single invoice against the ledger.

Used when push delivery is suspected to have failed. The lookup is keyed by
the invoice's matching key, so a hit is authoritative. No hit reports the
stored status: absence of proof is not proof of absence, and local expiry is
left to the status read path.
"""

import logging
import time
from collections.abc import Callable

from services.ingestion.views import StatusView
from services.invoices.models import Invoice, InvoiceStatus, now_seconds
from services.ledger.base import LedgerReader
from services.reconciliation.engine import ReconciliationEngine
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError
from services.storage.base import InvoiceStore

logger = logging.getLogger(__name__)


class VerifyHandler:
    """Looks up an invoice's settlement directly on the ledger."""

    def __init__(
        self,
        store: InvoiceStore,
        engine: ReconciliationEngine,
        ledger_reader: LedgerReader,
        settings: Settings,
        clock: Callable[[], int] = now_seconds,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.engine = engine
        self.ledger_reader = ledger_reader
        self.settings = settings
        self._clock = clock
        self._monotonic = monotonic

    def handle(self, invoice_id: str) -> StatusView | None:
        """Verify one invoice.

        Returns:
            Stored status view after any settlement found, or None if the invoice does not exist
        """
        invoice = self.store.get(invoice_id)
        if invoice is None:
            return None
        if invoice.status == InvoiceStatus.PAID:
            return self._view(invoice)

        deadline = self._monotonic() + self.settings.verify_timeout_seconds
        try:
            event = self.ledger_reader.find_by_settlement_reference(
                invoice.matching_key, deadline, destination_account=invoice.merchant_destination
            )
            if event is None:
                logger.info(f"No settlement found for invoice {invoice_id}")
                return self._view(invoice)
            result = self.engine.reconcile(event, channel="verify")
            logger.info(f"Verify for invoice {invoice_id}: {result.outcome.value}")
        except UpstreamUnavailableError as e:
            logger.info(f"Verify for invoice {invoice_id} reporting stored status: {e.message}")
            return self._view(invoice)

        return self._view(self.store.get(invoice_id) or invoice)

    def _view(self, invoice: Invoice) -> StatusView:
        expired = invoice.status == InvoiceStatus.PENDING and self._clock() > invoice.expires_at
        return StatusView.from_invoice(invoice, expired=expired)
