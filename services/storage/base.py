"""Abstract base class for invoice store backends.

The reconciliation core only needs single-key reads and writes, a
compare-and-set on one invoice record, a secondary index from lookup keys to
invoice ids, and a scan of stored-pending invoices. Backends implement exactly
that so the in-memory store used in development and tests and the Redis store
used in production are interchangeable.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from services.invoices.models import Invoice, InvoiceStatus
from services.shared.errors import ConflictError

logger = logging.getLogger(__name__)

# Secondary index names
MATCHING_KEY_INDEX = "matching-key"
SETTLEMENT_INDEX = "settlement"

UPDATE_ATTEMPTS = 5


class InvoiceStore(ABC):
    """Key/value persistence for invoices.

    Every record is also tracked in a pending index (global and per
    destination) while its stored status is ``pending``. Both writes below
    maintain that index together with the record.
    """

    @abstractmethod
    def get(self, invoice_id: str) -> Invoice | None:
        """Load an invoice by id.

        Args:
            invoice_id: Invoice identifier

        Returns:
            Stored invoice or None if absent
        """

    @abstractmethod
    def save(self, invoice: Invoice) -> None:
        """Write the full invoice record unconditionally.

        Used for inserts. Updates to existing records go through
        compare_and_set so they never overwrite a concurrent transition.

        Args:
            invoice: Invoice to persist (overwrites any previous record)
        """

    @abstractmethod
    def compare_and_set(self, expected: Invoice, updated: Invoice) -> bool:
        """Replace the stored record only if it still equals ``expected``.

        Args:
            expected: Record as last read by the caller
            updated: Replacement record (same id)

        Returns:
            True if written, False if the stored record changed or vanished
        """

    @abstractmethod
    def index_put(self, index: str, key: str, invoice_id: str, exclusive: bool = False) -> bool:
        """Map a secondary key to an invoice id.

        Args:
            index: Index name (e.g. MATCHING_KEY_INDEX)
            key: Secondary key
            invoice_id: Invoice the key resolves to
            exclusive: Only write if the key is not mapped yet

        Returns:
            True if the mapping was written, False if exclusive and already present
        """

    @abstractmethod
    def index_get(self, index: str, key: str) -> str | None:
        """Resolve a secondary key to an invoice id, or None if unmapped."""

    @abstractmethod
    def scan_pending_by_destination(self, destination: str | None = None) -> list[Invoice]:
        """Stored-pending invoices, newest first, optionally for one destination.

        Reads the pending index, so the result covers every pending invoice
        however many other invoices exist. Stored status is used as-is; lazy
        expiry is the caller's concern.
        """

    @abstractmethod
    def ping(self) -> bool:
        """Check backend connectivity."""

    def update_if_pending(
        self, invoice_id: str, apply: Callable[[Invoice], Invoice]
    ) -> Invoice | None:
        """Apply a change to an invoice whose stored status is still pending.

        The change is computed from a fresh read and written with
        compare_and_set, re-reading when another writer got in first.

        Args:
            invoice_id: Invoice to update
            apply: Builds the updated record from the current one

        Returns:
            The written record, or None if the invoice is missing or no longer pending

        Raises:
            ConflictError: If the record kept changing under the update
        """
        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            current = self.get(invoice_id)
            if current is None or current.status != InvoiceStatus.PENDING:
                return None
            updated = apply(current)
            if self.compare_and_set(current, updated):
                return updated
            logger.debug(f"Invoice {invoice_id} changed during update (attempt {attempt})")
        raise ConflictError(f"Invoice {invoice_id} kept changing; update abandoned")
