"""Deterministic matching through the invoice matching key."""

import logging
from collections.abc import Iterable

from services.invoices.models import Invoice
from services.storage.base import MATCHING_KEY_INDEX, InvoiceStore

logger = logging.getLogger(__name__)


class ReferenceMatcher:
    """Resolves an event's referenced accounts to the invoice holding that matching key.

    Matching keys are single-use and unguessable, so a hit is authoritative:
    no amount or time check is applied.
    """

    def __init__(self, store: InvoiceStore) -> None:
        self.store = store

    def match(self, referenced_accounts: Iterable[str]) -> Invoice | None:
        """Return the invoice for the first referenced account found in the index.

        Args:
            referenced_accounts: Account addresses referenced by a payment event

        Returns:
            Matching invoice, or None if no account is a known matching key
        """
        for account in referenced_accounts:
            invoice_id = self.store.index_get(MATCHING_KEY_INDEX, account)
            if invoice_id is None:
                continue
            invoice = self.store.get(invoice_id)
            if invoice is None:
                logger.warning(f"Matching key {account} points at missing invoice {invoice_id}")
                continue
            logger.debug(f"Reference {account} resolved to invoice {invoice_id}")
            return invoice
        return None
