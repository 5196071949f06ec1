"""Solana JSON-RPC ledger reader.

Decodes SPL token transfers from ``jsonParsed`` transactions. Only
``transfer`` and ``transferChecked`` instructions (outer and inner) of the
configured asset mint become payment events; failed transactions are skipped.

Requests are not retried: poll and verify callers already degrade to a
pending status and are retried by their clients.

See: https://solana.com/docs/rpc/http
"""

import logging
import time
from typing import Any

import httpx
from prometheus_client import Histogram

from services.invoices.models import PaymentEvent, now_seconds
from services.ledger.base import LedgerReader
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

ledger_rpc_duration_seconds = Histogram(
    "ledger_rpc_duration_seconds",
    "Ledger JSON-RPC call duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

TOKEN_PROGRAMS = {"spl-token", "spl-token-2022"}
TRANSFER_TYPES = {"transfer", "transferChecked"}

# Solana Pay findReference looks back this many signatures
REFERENCE_SIGNATURE_LIMIT = 1000


class SolanaLedgerReader(LedgerReader):
    """Ledger reader over a Solana JSON-RPC endpoint."""

    def __init__(self, settings: Settings) -> None:
        """Initialize reader.

        Args:
            settings: Settings with ledger_rpc_url, asset_mint and poll_signature_limit
        """
        self.settings = settings
        self._rpc_url = settings.ledger_rpc_url
        self._asset_mint = settings.asset_mint
        self._client = httpx.Client(timeout=settings.verify_timeout_seconds)
        self._request_id = 0

    def is_available(self) -> bool:
        try:
            return self._rpc("getHealth", []) == "ok"
        except UpstreamUnavailableError:
            return False

    def decode_recent_transfers(
        self, destination_account: str, since: int, deadline: float | None = None
    ) -> list[PaymentEvent]:
        signatures = self._rpc(
            "getSignaturesForAddress",
            [destination_account, {"limit": self.settings.poll_signature_limit}],
            deadline,
        )

        events: list[PaymentEvent] = []
        for entry in signatures or []:
            block_time = entry.get("blockTime")
            if block_time is not None and block_time < since:
                # Signatures are returned newest first
                break
            if entry.get("err") is not None:
                continue
            try:
                transaction = self._get_transaction(entry["signature"], deadline)
            except UpstreamUnavailableError as e:
                if not events:
                    raise
                # Transfers already decoded are still worth reconciling
                logger.info(f"Returning {len(events)} transfers decoded before: {e.message}")
                break
            if transaction is None:
                continue
            events.extend(
                event
                for event in self._decode_transaction(entry["signature"], transaction)
                if event.destination_account == destination_account
            )

        logger.debug(
            f"Decoded {len(events)} transfers into {destination_account} "
            f"from {len(signatures or [])} signatures"
        )
        return events

    def find_by_settlement_reference(
        self,
        matching_key: str,
        deadline: float | None = None,
        destination_account: str | None = None,
    ) -> PaymentEvent | None:
        signatures = self._rpc(
            "getSignaturesForAddress",
            [matching_key, {"limit": REFERENCE_SIGNATURE_LIMIT}],
            deadline,
        )
        successful = [entry for entry in signatures or [] if entry.get("err") is None]
        if not successful:
            return None

        # The oldest transaction referencing the key is the settlement
        signature = successful[-1]["signature"]
        transaction = self._get_transaction(signature, deadline)
        if transaction is None:
            return None

        events = self._decode_transaction(signature, transaction)
        if destination_account is not None:
            # Other legs (fees, splits) may move the same asset elsewhere
            events = [event for event in events if event.destination_account == destination_account]
        if not events:
            logger.warning(
                f"Transaction {signature} references {matching_key} but has no asset transfer"
                + (f" into {destination_account}" if destination_account else "")
            )
            return None
        return events[0]

    def _get_transaction(self, signature: str, deadline: float | None) -> dict[str, Any] | None:
        result: dict[str, Any] | None = self._rpc(
            "getTransaction",
            [
                signature,
                {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0},
            ],
            deadline,
        )
        return result

    def _decode_transaction(self, signature: str, transaction: dict[str, Any]) -> list[PaymentEvent]:
        """Turn a jsonParsed transaction into payment events for the asset mint."""
        meta = transaction.get("meta") or {}
        if meta.get("err") is not None:
            return []

        message = transaction.get("transaction", {}).get("message", {})
        account_keys = [_account_key(key) for key in message.get("accountKeys", [])]
        balances = _token_balances(meta, account_keys)
        occurred_at = transaction.get("blockTime") or now_seconds()

        instructions = list(message.get("instructions", []))
        for inner in meta.get("innerInstructions") or []:
            instructions.extend(inner.get("instructions", []))

        events: list[PaymentEvent] = []
        for instruction in instructions:
            transfer = self._parse_transfer(instruction, balances)
            if transfer is None:
                continue
            destination, amount, payer = transfer
            events.append(
                PaymentEvent(
                    settlement_ref=signature,
                    destination_account=destination,
                    amount=amount,
                    referenced_accounts=account_keys,
                    occurred_at=occurred_at,
                    payer=payer,
                )
            )
        return events

    def _parse_transfer(
        self, instruction: dict[str, Any], balances: dict[str, dict[str, Any]]
    ) -> tuple[str, int, str | None] | None:
        """Extract (destination, amount, payer) from a token transfer instruction."""
        if instruction.get("program") not in TOKEN_PROGRAMS:
            return None
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in TRANSFER_TYPES:
            return None

        info = parsed.get("info", {})
        source = info.get("source")
        destination = info.get("destination")
        if not source or not destination:
            return None

        if parsed["type"] == "transferChecked":
            mint = info.get("mint")
            amount = info.get("tokenAmount", {}).get("amount")
        else:
            # Plain transfers carry no mint; take it from the token balances
            mint = balances.get(destination, {}).get("mint") or balances.get(source, {}).get("mint")
            amount = info.get("amount")
        if mint != self._asset_mint or amount is None:
            return None

        payer = balances.get(source, {}).get("owner") or info.get("authority") or info.get("multisigAuthority")
        return destination, int(amount), payer

    def _rpc(self, method: str, params: list[Any], deadline: float | None = None) -> Any:
        """Call a JSON-RPC method within the remaining deadline.

        Raises:
            UpstreamUnavailableError: On exhausted budget, transport error or RPC error
        """
        timeout = self._remaining(deadline)
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        with ledger_rpc_duration_seconds.labels(method=method).time():
            try:
                response = self._client.post(self._rpc_url, json=payload, timeout=timeout)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Ledger RPC {method} failed: {e}")
                raise UpstreamUnavailableError(f"Ledger RPC {method} failed: {e}") from e

        if body.get("error"):
            logger.warning(f"Ledger RPC {method} returned error: {body['error']}")
            raise UpstreamUnavailableError(f"Ledger RPC {method} error: {body['error']}")
        return body.get("result")

    def _remaining(self, deadline: float | None) -> float:
        if deadline is None:
            return self.settings.verify_timeout_seconds
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamUnavailableError("Ledger query budget exhausted")
        return remaining


def _account_key(key: Any) -> str:
    # jsonParsed returns {"pubkey": ...} objects, other encodings plain strings
    if isinstance(key, dict):
        return str(key.get("pubkey", ""))
    return str(key)


def _token_balances(meta: dict[str, Any], account_keys: list[str]) -> dict[str, dict[str, Any]]:
    """Map token account address to its mint and owner from pre/post balances."""
    balances: dict[str, dict[str, Any]] = {}
    for entry in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        index = entry.get("accountIndex")
        if index is None or index >= len(account_keys):
            continue
        balances.setdefault(
            account_keys[index], {"mint": entry.get("mint"), "owner": entry.get("owner")}
        )
    return balances
