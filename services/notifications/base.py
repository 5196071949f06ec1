"""Abstract base classes for invoice status notifications.

A paid or declined transition is published on a notifier; clients waiting on
an invoice's status stream subscribe to it. Delivery is best effort: a
missed notification only delays a streaming client until its next status
read, never the transition itself.
"""

import logging
from abc import ABC, abstractmethod
from types import TracebackType

from services.shared.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class StatusSubscription(ABC):
    """Notifications for one invoice, usable as a context manager."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id

    @abstractmethod
    def wait(self, timeout: float) -> bool:
        """Block until the invoice's status changes or the timeout passes.

        Args:
            timeout: Maximum wait in seconds

        Returns:
            True if a notification arrived, False on timeout
        """

    @abstractmethod
    def close(self) -> None:
        """Stop receiving notifications."""

    def __enter__(self) -> "StatusSubscription":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class StatusNotifier(ABC):
    """Publishes invoice status changes to subscribers."""

    @abstractmethod
    def publish(self, invoice_id: str, event: str) -> None:
        """Announce a status change.

        Args:
            invoice_id: Invoice whose status changed
            event: New status name (e.g. "paid")

        Raises:
            UpstreamUnavailableError: If the notification backend is unreachable
        """

    @abstractmethod
    def subscribe(self, invoice_id: str) -> StatusSubscription:
        """Start receiving notifications for one invoice."""


def notify_status_change(notifier: StatusNotifier | None, invoice_id: str, event: str) -> None:
    """Publish a status change, logging instead of failing when the backend is down."""
    if notifier is None:
        return
    try:
        notifier.publish(invoice_id, event)
    except UpstreamUnavailableError as e:
        logger.warning(f"Could not publish {event} for invoice {invoice_id}: {e}")
