"""Response models shared by the ingestion adapters."""

from typing import Any

from pydantic import BaseModel, Field

from services.invoices.models import Invoice, InvoiceStatus


class StatusView(BaseModel):
    """Invoice status as reported to a polling or verifying client.

    Attributes:
        invoice_id: Invoice identifier
        status: Reported status (lazy expiry applied where the channel does so)
        settlement_ref: Settling transaction, once paid
        payer_identity: Best-effort payer account, once paid
        paid_at: Settlement time (unix seconds), once paid
        expires_at: End of the validity window (unix seconds)
        expired: The validity window has lapsed without payment
        needs_review: An ambiguous transfer was attached for manual review
    """

    invoice_id: str
    status: InvoiceStatus
    settlement_ref: str | None = None
    payer_identity: str | None = None
    paid_at: int | None = None
    expires_at: int
    expired: bool = False
    needs_review: bool = False

    @classmethod
    def from_invoice(cls, invoice: Invoice, expired: bool = False) -> "StatusView":
        return cls(
            invoice_id=invoice.id,
            status=invoice.status,
            settlement_ref=invoice.settlement_ref,
            payer_identity=invoice.payer_identity,
            paid_at=invoice.paid_at,
            expires_at=invoice.expires_at,
            expired=expired,
            needs_review=invoice.needs_review,
        )


class WebhookResponse(BaseModel):
    """HTTP status and JSON body for a webhook delivery."""

    status_code: int
    content: dict[str, Any] = Field(default_factory=dict)
