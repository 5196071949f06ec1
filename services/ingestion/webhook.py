"""Push ingestion from the ledger indexer webhook.

Deliveries are at-least-once and may be batched. Once a request is
authenticated and structurally valid it is always acknowledged with 200, even
when some events fail, so the indexer does not redeliver indefinitely.
Re-delivered events resolve to ``already_paid``.
"""

import hmac
import json
import logging

from prometheus_client import Counter

from services.ingestion.payloads import events_from_record, normalize_webhook_payload
from services.ingestion.views import WebhookResponse
from services.invoices.models import ReconcileOutcome
from services.reconciliation.engine import ReconciliationEngine
from services.shared.config import Settings
from services.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)

webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events processed",
    ["status"],  # matched, ambiguous, already_paid, no_match, error, unauthorized, invalid
)

_COUNT_KEYS = {
    ReconcileOutcome.MATCHED: "matched",
    ReconcileOutcome.AMBIGUOUS_FLAGGED_FOR_REVIEW: "ambiguous",
    ReconcileOutcome.ALREADY_PAID: "already_paid",
    ReconcileOutcome.NO_MATCH: "no_match",
}


class WebhookHandler:
    """Authenticates webhook deliveries and reconciles each event independently."""

    def __init__(self, engine: ReconciliationEngine, settings: Settings) -> None:
        """Initialize webhook handler.

        Args:
            engine: Reconciliation engine
            settings: Settings with webhook_secret, asset_mint and asset_decimals
        """
        self.engine = engine
        self.settings = settings

    def handle(self, authorization: str | None, body: bytes) -> WebhookResponse:
        """Process one webhook delivery.

        Args:
            authorization: Raw Authorization header value
            body: Raw request body

        Returns:
            500 if no secret is configured, 401 on a bad credential, 400 on a
            malformed body, otherwise 200 with per-outcome counts
        """
        secret = self.settings.webhook_secret
        if not secret:
            error = ConfigurationError("Webhook secret not configured")
            logger.error(error.message)
            return WebhookResponse(status_code=error.status_code, content={"detail": error.message})

        if not self._authorized(authorization, secret):
            logger.warning("Rejected webhook delivery with invalid credentials")
            webhook_events_total.labels(status="unauthorized").inc()
            return WebhookResponse(status_code=401, content={"detail": "Unauthorized"})

        try:
            records = normalize_webhook_payload(json.loads(body))
        except ValueError as e:
            logger.warning(f"Rejected malformed webhook payload: {e}")
            webhook_events_total.labels(status="invalid").inc()
            return WebhookResponse(status_code=400, content={"detail": "Invalid payload"})

        counts = {"received": 0, "matched": 0, "ambiguous": 0, "already_paid": 0, "no_match": 0, "errors": 0}
        for record in records:
            try:
                events = events_from_record(
                    record, self.settings.asset_mint, self.settings.asset_decimals
                )
            except Exception:
                logger.exception("Failed to decode webhook record")
                counts["errors"] += 1
                webhook_events_total.labels(status="error").inc()
                continue

            for event in events:
                counts["received"] += 1
                try:
                    result = self.engine.reconcile(event, channel="webhook")
                except Exception:
                    logger.exception(f"Failed to reconcile settlement {event.settlement_ref}")
                    counts["errors"] += 1
                    webhook_events_total.labels(status="error").inc()
                    continue
                key = _COUNT_KEYS[result.outcome]
                counts[key] += 1
                webhook_events_total.labels(status=key).inc()

        logger.info(f"Processed webhook delivery: {counts}")
        return WebhookResponse(status_code=200, content={"ok": True, **counts})

    @staticmethod
    def _authorized(authorization: str | None, secret: str) -> bool:
        if not authorization:
            return False
        return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())
