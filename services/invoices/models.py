"""Domain models for invoices and external payment events.

Pydantic models keep the stored invoice record and the normalized payment
event type-safe. Amounts are integers in the asset's smallest unit
throughout; conversion to and from display units goes through ``Decimal``.
"""

import time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class InvoiceStatus(str, Enum):
    """Invoice payment status. ``paid`` and ``declined`` are terminal."""

    PENDING = "pending"
    PAID = "paid"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return self is not InvoiceStatus.PENDING


class Invoice(BaseModel):
    """Stored invoice record.

    Attributes:
        id: Opaque unique identifier
        merchant_destination: Ledger account expected to receive funds
        expected_amount: Fixed amount in smallest units (None = payer-chosen amount)
        matching_key: Single-use reference embedded in the payment request
        status: Current lifecycle status
        needs_review: Set when an ambiguous fallback match touched this invoice
        review_settlement_refs: Settlement references attached for manual review
        created_at: Creation time (unix seconds)
        expires_at: End of the validity window (unix seconds)
        paid_at: Settlement time (unix seconds), set on transition to paid
        settlement_ref: External transaction identifier, set on transition to paid
        payer_identity: Best-effort payer account, set on transition to paid
        declined_reason: Why the invoice was declined in storage (e.g. superseded)
        recipient: Merchant wallet addressed by the payment request
        label: Payment request label
        message: Payment request message
    """

    id: str
    merchant_destination: str
    expected_amount: int | None = None
    matching_key: str
    status: InvoiceStatus = InvoiceStatus.PENDING
    needs_review: bool = False
    review_settlement_refs: list[str] = Field(default_factory=list)
    created_at: int
    expires_at: int
    paid_at: int | None = None
    settlement_ref: str | None = None
    payer_identity: str | None = None
    declined_reason: str | None = None
    recipient: str | None = None
    label: str | None = None
    message: str | None = None


class PaymentEvent(BaseModel):
    """A decoded external transfer relevant to reconciliation.

    Accepts both snake_case and camelCase keys so indexer payloads that are
    already in the normalized shape validate directly.
    """

    model_config = ConfigDict(populate_by_name=True)

    settlement_ref: str = Field(alias="settlementRef", min_length=1)
    destination_account: str = Field(alias="destinationAccount", min_length=1)
    amount: int = Field(ge=0)
    referenced_accounts: list[str] = Field(default_factory=list, alias="referencedAccounts")
    occurred_at: int = Field(alias="occurredAt")
    payer: str | None = None


class ReconcileOutcome(str, Enum):
    """Result of reconciling one payment event."""

    MATCHED = "matched"
    AMBIGUOUS_FLAGGED_FOR_REVIEW = "ambiguous_flagged_for_review"
    NO_MATCH = "no_match"
    ALREADY_PAID = "already_paid"


class MatchStrategy(str, Enum):
    REFERENCE = "reference"
    FALLBACK = "fallback"
    SETTLEMENT = "settlement"


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation attempt plus the invoices it touched."""

    outcome: ReconcileOutcome
    settlement_ref: str
    strategy: MatchStrategy | None = None
    invoice_ids: list[str] = Field(default_factory=list)


def now_seconds() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


def to_minor_units(value: Decimal | str | int | float, decimals: int) -> int:
    """Convert a display amount to the asset's smallest unit.

    Floats are routed through ``str`` so ``1.1`` becomes ``Decimal("1.1")``
    rather than its binary approximation.

    Args:
        value: Amount in display units (e.g. "1.50" USDC)
        decimals: Asset decimal places

    Returns:
        Integer amount in smallest units, rounded half-up
    """
    if isinstance(value, float):
        value = str(value)
    amount = Decimal(value).scaleb(decimals)
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_display_amount(minor: int, decimals: int) -> Decimal:
    """Convert smallest units back to a display amount (e.g. 1500000 -> 1.500000)."""
    return Decimal(minor).scaleb(-decimals)


def format_display_amount(minor: int, decimals: int) -> str:
    """Render smallest units as a plain decimal string without trailing zeros."""
    text = f"{to_display_amount(minor, decimals):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
