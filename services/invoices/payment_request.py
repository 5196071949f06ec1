"""Solana Pay transfer request URIs for invoices.

See: https://docs.solanapay.com/spec#specification-transfer-request
"""

from urllib.parse import quote, urlencode

from services.invoices.models import Invoice, format_display_amount


def build_payment_request_uri(invoice: Invoice, asset_mint: str, decimals: int) -> str | None:
    """Build the transfer request URI a payer's wallet opens.

    The invoice's matching key is passed as ``reference`` so compliant wallets
    include it as an account in the transfer instruction.

    Args:
        invoice: Invoice to request payment for
        asset_mint: SPL token mint of the payment asset
        decimals: Asset decimal places

    Returns:
        ``solana:`` URI, or None if the invoice has no recipient wallet
    """
    if not invoice.recipient:
        return None

    params: list[tuple[str, str]] = [("spl-token", asset_mint)]
    if invoice.expected_amount is not None:
        params.append(("amount", format_display_amount(invoice.expected_amount, decimals)))
    params.append(("reference", invoice.matching_key))
    if invoice.label:
        params.append(("label", invoice.label))
    if invoice.message:
        params.append(("message", invoice.message))

    return f"solana:{invoice.recipient}?{urlencode(params, quote_via=quote)}"
