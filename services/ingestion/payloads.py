"""Normalization of indexer webhook payloads into payment events.

Two record shapes are accepted:

- The normalized shape, validated directly as a ``PaymentEvent``
  (``settlementRef``, ``destinationAccount``, ``amount``, ``referencedAccounts``,
  ``occurredAt``).
- Helius enhanced transactions. Each ``tokenTransfers`` entry of the
  configured mint becomes one event, with every account the transaction
  touched as its referenced accounts.

See: https://docs.helius.dev/webhooks-and-websockets/what-are-webhooks
"""

import logging
from typing import Any

from services.invoices.models import PaymentEvent, now_seconds, to_minor_units

logger = logging.getLogger(__name__)


def normalize_webhook_payload(payload: Any) -> list[dict[str, Any]]:
    """Turn a decoded webhook body into a list of records.

    A single object becomes a one-element list.

    Raises:
        ValueError: If the payload is neither an object nor a list of objects
    """
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list) and all(isinstance(record, dict) for record in payload):
        return payload
    raise ValueError("Webhook payload must be an object or an array of objects")


def events_from_record(record: dict[str, Any], asset_mint: str, decimals: int) -> list[PaymentEvent]:
    """Decode one webhook record into payment events.

    Args:
        record: One element of the normalized payload
        asset_mint: Only transfers of this mint are kept (enhanced shape)
        decimals: Asset decimal places for UI amount conversion

    Returns:
        Zero or more payment events

    Raises:
        ValueError: If the record is malformed (pydantic ValidationError included)
    """
    if "settlementRef" in record or "settlement_ref" in record:
        return [PaymentEvent.model_validate(record)]
    return _events_from_enhanced_transaction(record, asset_mint, decimals)


def _events_from_enhanced_transaction(
    record: dict[str, Any], asset_mint: str, decimals: int
) -> list[PaymentEvent]:
    signature = record.get("signature")
    if not signature:
        raise ValueError("Transaction record has no signature")
    if record.get("transactionError"):
        logger.info(f"Skipping failed transaction {signature}")
        return []

    occurred_at = int(record.get("timestamp") or now_seconds())
    referenced = _referenced_accounts(record)

    events: list[PaymentEvent] = []
    for transfer in record.get("tokenTransfers") or []:
        if transfer.get("mint") != asset_mint:
            continue
        destination = transfer.get("toTokenAccount")
        if not destination:
            continue
        events.append(
            PaymentEvent(
                settlement_ref=signature,
                destination_account=destination,
                amount=to_minor_units(transfer.get("tokenAmount", 0), decimals),
                referenced_accounts=referenced,
                occurred_at=occurred_at,
                payer=transfer.get("fromUserAccount") or record.get("feePayer"),
            )
        )
    return events


def _referenced_accounts(record: dict[str, Any]) -> list[str]:
    """Every account the transaction touched, in first-seen order."""
    accounts: list[str] = []
    for entry in record.get("accountData") or []:
        accounts.append(entry.get("account"))
    for instruction in record.get("instructions") or []:
        accounts.extend(instruction.get("accounts") or [])
        for inner in instruction.get("innerInstructions") or []:
            accounts.extend(inner.get("accounts") or [])
    return [account for account in dict.fromkeys(accounts) if account]
