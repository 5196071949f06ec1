"""Server-sent event stream of one invoice's status.

A point-of-sale client opens the stream after showing the payment request
and is told the moment the invoice is paid or declined, whichever channel
settles it. The stream sends the current status at once, then waits on the
status notifier and re-reads the invoice after every notification. It closes
on a terminal status, on lazy expiry, or after ``stream_timeout_seconds``.
"""

import logging
import time
from collections.abc import Callable, Iterator

from services.ingestion.views import StatusView
from services.invoices.lifecycle import InvoiceLifecycleManager
from services.invoices.models import InvoiceStatus, now_seconds
from services.notifications.base import StatusNotifier, StatusSubscription
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def format_event(view: StatusView) -> str:
    """Encode a status view as one SSE ``data`` event."""
    return f"data: {view.model_dump_json()}\n\n"


class StatusStreamHandler:
    """Produces SSE event streams for invoice status changes."""

    def __init__(
        self,
        lifecycle: InvoiceLifecycleManager,
        notifier: StatusNotifier,
        settings: Settings,
        clock: Callable[[], int] = now_seconds,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize stream handler.

        Args:
            lifecycle: Invoice lifecycle manager
            notifier: Source of status change notifications
            settings: Settings with stream_timeout_seconds and stream_keepalive_seconds
            clock: Source of current unix time in seconds (expiry checks)
            monotonic: Wall-clock source for the stream timeout
        """
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.settings = settings
        self._clock = clock
        self._monotonic = monotonic

    def open(self, invoice_id: str) -> Iterator[str] | None:
        """Open a status stream.

        The subscription starts before the first status read, so a transition
        between the read and the wait is not missed.

        Returns:
            Iterator of SSE chunks, or None if the invoice does not exist
        """
        if self.lifecycle.store.get(invoice_id) is None:
            return None
        subscription = self.notifier.subscribe(invoice_id)
        return self._events(invoice_id, subscription)

    def _events(self, invoice_id: str, subscription: StatusSubscription) -> Iterator[str]:
        deadline = self._monotonic() + self.settings.stream_timeout_seconds
        with subscription:
            while True:
                try:
                    view = self._current_view(invoice_id)
                except UpstreamUnavailableError as e:
                    logger.warning(f"Closing status stream for {invoice_id}: {e.message}")
                    return
                if view is None:
                    return
                yield format_event(view)
                if view.status != InvoiceStatus.PENDING:
                    logger.info(f"Status stream for {invoice_id} closed on {view.status.value}")
                    return

                try:
                    chunks = self._wait(subscription, view.expires_at, deadline)
                    yield from chunks
                except TimeoutError:
                    logger.info(f"Status stream for {invoice_id} timed out")
                    return
                except UpstreamUnavailableError as e:
                    logger.warning(f"Closing status stream for {invoice_id}: {e.message}")
                    return

    def _wait(self, subscription: StatusSubscription, expires_at: int, deadline: float) -> Iterator[str]:
        """Yield keepalives until a notification arrives or the invoice lapses.

        Raises:
            TimeoutError: If the stream deadline passes first
        """
        while True:
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                raise TimeoutError
            if subscription.wait(min(remaining, self.settings.stream_keepalive_seconds)):
                return
            if self._clock() > expires_at:
                return
            yield KEEPALIVE

    def _current_view(self, invoice_id: str) -> StatusView | None:
        stored = self.lifecycle.store.get(invoice_id)
        if stored is None:
            return None
        observed = self.lifecycle.expire_if_due(stored)
        return StatusView.from_invoice(observed, expired=observed.status != stored.status)
