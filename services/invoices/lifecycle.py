"""Invoice lifecycle management.

Creates invoices with a fresh single-use matching key, enforces the
one-pending-invoice-per-destination policy at creation time, and applies
expiry lazily on every read path. There is no background sweeper: expiry has
no side effect besides the status reported to callers, so the stored record
stays ``pending`` until something else writes it.
"""

import logging
import secrets
import uuid
from collections.abc import Callable

import base58
from prometheus_client import Counter

from services.invoices.models import Invoice, InvoiceStatus, now_seconds
from services.notifications.base import StatusNotifier, notify_status_change
from services.shared.config import Settings
from services.shared.errors import ConflictError, InvalidStateError, NotFoundError
from services.storage.base import MATCHING_KEY_INDEX, InvoiceStore

logger = logging.getLogger(__name__)

invoices_created_total = Counter(
    "invoices_created_total",
    "Total invoices created",
)

invoice_supersede_failures_total = Counter(
    "invoice_supersede_failures_total",
    "Failures while declining previous pending invoices at creation",
)

SUPERSEDED = "superseded"


def generate_matching_key() -> str:
    """32 random bytes, base58-encoded, usable as a ledger account address."""
    return base58.b58encode(secrets.token_bytes(32)).decode("ascii")


def expire_if_due(invoice: Invoice, now: int) -> Invoice:
    """Return the invoice as callers should observe it at ``now``.

    A pending invoice past its expiry is reported declined. The input is not
    modified and nothing is written.

    Args:
        invoice: Stored invoice
        now: Current unix time in seconds

    Returns:
        A declined copy if the invoice is pending and now > expires_at, else the invoice
    """
    if invoice.status == InvoiceStatus.PENDING and now > invoice.expires_at:
        return invoice.model_copy(update={"status": InvoiceStatus.DECLINED})
    return invoice


class InvoiceLifecycleManager:
    """Creates, reads and extends invoices."""

    def __init__(
        self,
        store: InvoiceStore,
        settings: Settings,
        clock: Callable[[], int] = now_seconds,
        key_generator: Callable[[], str] = generate_matching_key,
        notifier: StatusNotifier | None = None,
    ) -> None:
        """Initialize lifecycle manager.

        Args:
            store: Invoice store backend
            settings: Application settings
            clock: Source of current unix time in seconds
            key_generator: Source of new matching keys
            notifier: Receives supersede declines for status streams (optional)
        """
        self.store = store
        self.settings = settings
        self._clock = clock
        self._key_generator = key_generator
        self.notifier = notifier

    def create_invoice(
        self,
        merchant_destination: str,
        expected_amount: int | None = None,
        ttl_seconds: int | None = None,
        recipient: str | None = None,
        label: str | None = None,
        message: str | None = None,
    ) -> Invoice:
        """Create a pending invoice, declining any pending one for the same destination.

        Args:
            merchant_destination: Ledger account expected to receive funds
            expected_amount: Fixed amount in smallest units (None = payer-chosen)
            ttl_seconds: Validity window (defaults to settings.invoice_ttl_seconds)
            recipient: Merchant wallet addressed by the payment request
            label: Payment request label
            message: Payment request message

        Returns:
            The stored invoice

        Raises:
            ValueError: If amount or ttl is not positive
            ConflictError: If no unique matching key could be reserved
        """
        if not merchant_destination:
            raise ValueError("merchant_destination is required")
        if expected_amount is not None and expected_amount <= 0:
            raise ValueError("expected_amount must be positive")
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.invoice_ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        invoice_id = uuid.uuid4().hex
        matching_key = self._reserve_matching_key(invoice_id)

        self._supersede_pending(merchant_destination)

        created_at = self._clock()
        invoice = Invoice(
            id=invoice_id,
            merchant_destination=merchant_destination,
            expected_amount=expected_amount,
            matching_key=matching_key,
            created_at=created_at,
            expires_at=created_at + ttl,
            recipient=recipient,
            label=label,
            message=message,
        )
        self.store.save(invoice)
        invoices_created_total.inc()

        logger.info(
            f"Created invoice {invoice_id} for {merchant_destination} "
            f"(amount={expected_amount}, expires_at={invoice.expires_at})"
        )
        return invoice

    def _reserve_matching_key(self, invoice_id: str) -> str:
        """Claim a matching key in the index, regenerating on collision."""
        attempts = self.settings.key_generation_attempts
        for attempt in range(1, attempts + 1):
            matching_key = self._key_generator()
            if self.store.index_put(MATCHING_KEY_INDEX, matching_key, invoice_id, exclusive=True):
                return matching_key
            logger.warning(f"Matching key collision for invoice {invoice_id} (attempt {attempt})")
        raise ConflictError(f"Could not reserve a unique matching key after {attempts} attempts")

    def _supersede_pending(self, merchant_destination: str) -> None:
        """Decline every pending invoice for the destination (best effort).

        Each decline is a conditional update, so an invoice settled since the
        scan keeps its paid record.
        """
        declined = {"status": InvoiceStatus.DECLINED, "declined_reason": SUPERSEDED}
        try:
            pending = self.store.scan_pending_by_destination(merchant_destination)
            for invoice in pending:
                written = self.store.update_if_pending(
                    invoice.id, lambda current: current.model_copy(update=declined)
                )
                if written is None:
                    logger.info(f"Invoice {invoice.id} left pending before supersede; skipped")
                    continue
                logger.info(f"Declined superseded invoice {invoice.id} for {merchant_destination}")
                notify_status_change(self.notifier, invoice.id, InvoiceStatus.DECLINED.value)
        except Exception:
            invoice_supersede_failures_total.inc()
            logger.exception(
                f"Failed to decline pending invoices for {merchant_destination}; "
                "continuing with creation"
            )

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        """Load an invoice with lazy expiry applied, or None if absent."""
        invoice = self.store.get(invoice_id)
        if invoice is None:
            return None
        return expire_if_due(invoice, self._clock())

    def require_invoice(self, invoice_id: str) -> Invoice:
        """Load an invoice with lazy expiry applied.

        Raises:
            NotFoundError: If the invoice does not exist
        """
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def list_pending(self, merchant_destination: str | None = None) -> list[Invoice]:
        """Invoices still pending after lazy expiry, newest first."""
        now = self._clock()
        observed = (
            expire_if_due(invoice, now)
            for invoice in self.store.scan_pending_by_destination(merchant_destination)
        )
        return [invoice for invoice in observed if invoice.status == InvoiceStatus.PENDING]

    def expire_if_due(self, invoice: Invoice) -> Invoice:
        """Apply lazy expiry at the manager's current time."""
        return expire_if_due(invoice, self._clock())

    def extend_invoice(self, invoice_id: str) -> Invoice:
        """Push a stored-pending invoice's expiry out by settings.invoice_extend_seconds.

        The new expiry is counted from now if the invoice has already lapsed.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidStateError: If the invoice is paid or declined in storage
        """
        invoice = self.store.get(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        def push_expiry(current: Invoice) -> Invoice:
            base = max(current.expires_at, self._clock())
            return current.model_copy(
                update={"expires_at": base + self.settings.invoice_extend_seconds}
            )

        extended = self.store.update_if_pending(invoice_id, push_expiry)
        if extended is None:
            current = self.store.get(invoice_id)
            status = current.status.value if current is not None else invoice.status.value
            raise InvalidStateError(f"Cannot extend invoice with status: {status}")

        logger.info(
            f"Extended invoice {invoice_id} expiry {invoice.expires_at} -> {extended.expires_at}"
        )
        return extended
