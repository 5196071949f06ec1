"""End-to-end reconciliation flows across ingestion channels.

Runs every channel against one in-memory store with a scripted ledger, the
way a point-of-sale terminal drives the service: create, then settle through
whichever channel sees the payment first.
"""

import json
from unittest.mock import MagicMock

import pytest

from services.ingestion.poll import PollHandler
from services.ingestion.verify import VerifyHandler
from services.ingestion.webhook import WebhookHandler
from services.invoices.lifecycle import InvoiceLifecycleManager
from services.invoices.models import InvoiceStatus, PaymentEvent
from services.ledger.base import LedgerReader
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.fallback_matcher import FallbackMatcher
from services.reconciliation.reference_matcher import ReferenceMatcher
from services.shared.config import Settings
from services.storage.memory_store import InMemoryInvoiceStore

T0 = 1_700_000_000
MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
AUTH = "Bearer hook-secret"


class Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class System:
    """All reconciliation components wired to one store."""

    def __init__(self) -> None:
        self.settings = Settings(
            _env_file=None, webhook_secret="hook-secret", asset_mint=MINT, invoice_ttl_seconds=120
        )
        self.clock = Clock(T0)
        self.store = InMemoryInvoiceStore()
        self.ledger = MagicMock(spec=LedgerReader)
        self.ledger.decode_recent_transfers.return_value = []
        self.ledger.find_by_settlement_reference.return_value = None
        self.lifecycle = InvoiceLifecycleManager(self.store, self.settings, clock=self.clock)
        self.engine = ReconciliationEngine(
            self.store,
            ReferenceMatcher(self.store),
            FallbackMatcher(self.store, self.settings),
            clock=self.clock,
        )
        self.webhook = WebhookHandler(self.engine, self.settings)
        self.poll = PollHandler(self.lifecycle, self.engine, self.ledger, self.settings)
        self.verify = VerifyHandler(self.store, self.engine, self.ledger, self.settings, clock=self.clock)


@pytest.fixture
def system() -> System:
    return System()


def helius_delivery(signature: str, destination: str, amount: float, accounts: list[str]) -> bytes:
    """Helius enhanced transaction webhook body."""
    return json.dumps(
        [
            {
                "signature": signature,
                "timestamp": T0 + 5,
                "transactionError": None,
                "tokenTransfers": [
                    {
                        "fromUserAccount": "PAYER",
                        "toTokenAccount": destination,
                        "tokenAmount": amount,
                        "mint": MINT,
                    }
                ],
                "accountData": [{"account": account} for account in ["PAYER", destination, *accounts]],
                "instructions": [],
            }
        ]
    ).encode()


def test_webhook_reference_then_redelivery(system: System) -> None:
    """Test that a webhook settles by reference and a redelivery is already paid."""
    invoice = system.lifecycle.create_invoice("D", expected_amount=1_000_000)
    body = helius_delivery("sig-1", "D", 1.0, [invoice.matching_key])

    first = system.webhook.handle(AUTH, body)
    system.clock.now += 60
    second = system.webhook.handle(AUTH, body)

    assert first.content["matched"] == 1
    assert second.content["already_paid"] == 1
    paid = system.lifecycle.require_invoice(invoice.id)
    assert paid.status == InvoiceStatus.PAID
    assert paid.settlement_ref == "sig-1"
    assert paid.payer_identity == "PAYER"
    assert paid.paid_at == T0


def test_webhook_without_reference_uses_fallback(system: System) -> None:
    """Test that a non-compliant wallet payment still settles the only candidate."""
    invoice = system.lifecycle.create_invoice("D", expected_amount=1_000_000)

    response = system.webhook.handle(AUTH, helius_delivery("sig-1", "D", 1.0, []))

    assert response.status_code == 200
    assert response.content["matched"] == 1
    assert system.lifecycle.require_invoice(invoice.id).status == InvoiceStatus.PAID


def test_poll_then_webhook(system: System) -> None:
    """Test that a webhook arriving after a poll settled the invoice is a no-op."""
    invoice = system.lifecycle.create_invoice("D", expected_amount=1_000_000)
    system.ledger.decode_recent_transfers.return_value = [
        PaymentEvent(
            settlement_ref="sig-1",
            destination_account="D",
            amount=1_000_000,
            referenced_accounts=[invoice.matching_key],
            occurred_at=T0 + 5,
            payer="PAYER",
        )
    ]

    view = system.poll.handle(invoice.id)
    settled = system.store.get(invoice.id)
    response = system.webhook.handle(AUTH, helius_delivery("sig-1", "D", 1.0, [invoice.matching_key]))

    assert view is not None
    assert view.status == InvoiceStatus.PAID
    assert response.content["already_paid"] == 1
    assert system.store.get(invoice.id) == settled


def test_superseded_invoice_not_settled_by_fallback(system: System) -> None:
    """Test that creating a second invoice leaves only the new one matchable."""
    first = system.lifecycle.create_invoice("D", expected_amount=1_000_000)
    system.clock.now += 2
    second = system.lifecycle.create_invoice("D", expected_amount=1_000_000)

    system.webhook.handle(AUTH, helius_delivery("sig-1", "D", 1.0, []))

    assert system.lifecycle.require_invoice(first.id).status == InvoiceStatus.DECLINED
    assert system.lifecycle.require_invoice(second.id).status == InvoiceStatus.PAID


def test_verify_after_expiry_reports_pending(system: System) -> None:
    """Test that verify reports ledger truth while status reads apply expiry."""
    invoice = system.lifecycle.create_invoice("D", expected_amount=1_000_000)
    system.clock.now = T0 + 200

    view = system.verify.handle(invoice.id)

    assert view is not None
    assert view.status == InvoiceStatus.PENDING
    assert system.lifecycle.require_invoice(invoice.id).status == InvoiceStatus.DECLINED


def test_verify_finds_late_settlement(system: System) -> None:
    """Test that verify settles an invoice whose webhook never arrived."""
    invoice = system.lifecycle.create_invoice("D", expected_amount=1_000_000)
    system.ledger.find_by_settlement_reference.return_value = PaymentEvent(
        settlement_ref="sig-late",
        destination_account="D",
        amount=1_000_000,
        referenced_accounts=["PAYER", "D", invoice.matching_key],
        occurred_at=T0 + 100,
        payer="PAYER",
    )
    system.clock.now = T0 + 200

    view = system.verify.handle(invoice.id)

    assert view is not None
    assert view.status == InvoiceStatus.PAID
    assert view.settlement_ref == "sig-late"
