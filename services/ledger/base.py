"""Abstract base class for ledger readers.

The ingestion adapters that query the ledger directly (poll and verify) only
need decoded transfers, never raw transaction formats. Readers hide the RPC
protocol behind this interface so tests can substitute a fake.
"""

from abc import ABC, abstractmethod

from services.invoices.models import PaymentEvent


class LedgerReader(ABC):
    """Read-only access to settled transfers on the payment ledger."""

    @abstractmethod
    def decode_recent_transfers(
        self, destination_account: str, since: int, deadline: float | None = None
    ) -> list[PaymentEvent]:
        """List recent transfers into an account.

        Args:
            destination_account: Token account receiving payments
            since: Ignore transfers that settled before this unix time
            deadline: ``time.monotonic()`` value after which no call may run

        Returns:
            Decoded payment events, newest first. When the deadline passes after
            some transfers were decoded, those transfers are returned.

        Raises:
            UpstreamUnavailableError: If nothing could be read within the deadline
        """

    @abstractmethod
    def find_by_settlement_reference(
        self,
        matching_key: str,
        deadline: float | None = None,
        destination_account: str | None = None,
    ) -> PaymentEvent | None:
        """Find the transfer that referenced a matching key.

        Args:
            matching_key: Invoice matching key included as a transaction account
            deadline: ``time.monotonic()`` value after which no call may run
            destination_account: Only accept the transfer leg into this account

        Returns:
            The settling transfer, or None if the key was never referenced

        Raises:
            UpstreamUnavailableError: If the ledger cannot be reached within the deadline
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the ledger endpoint responds."""
