"""Unit tests for the webhook ingestion handler."""

import json
from unittest.mock import MagicMock

import pytest

from services.ingestion.webhook import WebhookHandler
from services.invoices.models import ReconcileOutcome, ReconcileResult
from services.shared.config import Settings

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def event_record(settlement_ref: str = "sig-1") -> dict:
    return {
        "settlementRef": settlement_ref,
        "destinationAccount": "DEST",
        "amount": 1_000_000,
        "referencedAccounts": [],
        "occurredAt": 1_700_000_000,
    }


@pytest.fixture
def settings() -> Settings:
    """Create test settings with a webhook secret."""
    return Settings(_env_file=None, webhook_secret="hook-secret", asset_mint=MINT)


@pytest.fixture
def mock_engine() -> MagicMock:
    """Create engine mock that matches every event."""
    engine = MagicMock()
    engine.reconcile.side_effect = lambda event, channel: ReconcileResult(
        outcome=ReconcileOutcome.MATCHED, settlement_ref=event.settlement_ref
    )
    return engine


@pytest.fixture
def handler(mock_engine: MagicMock, settings: Settings) -> WebhookHandler:
    return WebhookHandler(mock_engine, settings)


AUTH = "Bearer hook-secret"


class TestWebhookAuthentication:
    """Test the shared-secret boundary check."""

    def test_missing_secret_configuration(self, mock_engine: MagicMock) -> None:
        """Should fail with 500 when no secret is configured."""
        handler = WebhookHandler(mock_engine, Settings(_env_file=None, webhook_secret=""))

        response = handler.handle(AUTH, b"[]")

        assert response.status_code == 500
        mock_engine.reconcile.assert_not_called()

    @pytest.mark.parametrize("authorization", [None, "", "Bearer wrong", "hook-secret", "Basic hook-secret"])
    def test_bad_credentials(
        self, handler: WebhookHandler, mock_engine: MagicMock, authorization: str | None
    ) -> None:
        """Should reject with 401 without processing."""
        response = handler.handle(authorization, json.dumps([event_record()]).encode())

        assert response.status_code == 401
        mock_engine.reconcile.assert_not_called()


class TestWebhookProcessing:
    """Test batch processing semantics."""

    def test_batch_reconciled(self, handler: WebhookHandler, mock_engine: MagicMock) -> None:
        """Should reconcile every event and report counts."""
        body = json.dumps([event_record("a"), event_record("b")]).encode()

        response = handler.handle(AUTH, body)

        assert response.status_code == 200
        assert response.content["received"] == 2
        assert response.content["matched"] == 2
        assert mock_engine.reconcile.call_count == 2
        assert mock_engine.reconcile.call_args.kwargs["channel"] == "webhook"

    def test_single_event_normalized(self, handler: WebhookHandler, mock_engine: MagicMock) -> None:
        """Should accept a single object as a one-element batch."""
        response = handler.handle(AUTH, json.dumps(event_record()).encode())

        assert response.status_code == 200
        assert response.content["received"] == 1

    def test_empty_batch(self, handler: WebhookHandler) -> None:
        """Should acknowledge an empty batch."""
        response = handler.handle(AUTH, b"[]")

        assert response.status_code == 200
        assert response.content["received"] == 0

    @pytest.mark.parametrize("body", [b"not json", b'"text"', b"42", b"\xff\xfe"])
    def test_malformed_body(self, handler: WebhookHandler, body: bytes) -> None:
        """Should reject structurally invalid bodies with 400."""
        assert handler.handle(AUTH, body).status_code == 400

    def test_event_error_does_not_stop_siblings(
        self, handler: WebhookHandler, mock_engine: MagicMock
    ) -> None:
        """Should count a failing event and still process the rest with 200."""
        outcomes = iter(
            [
                RuntimeError("store down"),
                ReconcileResult(outcome=ReconcileOutcome.NO_MATCH, settlement_ref="b"),
            ]
        )

        def reconcile(event: object, channel: str) -> ReconcileResult:
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        mock_engine.reconcile.side_effect = reconcile
        body = json.dumps([event_record("a"), event_record("b")]).encode()

        response = handler.handle(AUTH, body)

        assert response.status_code == 200
        assert response.content["errors"] == 1
        assert response.content["no_match"] == 1

    def test_invalid_record_counted_as_error(
        self, handler: WebhookHandler, mock_engine: MagicMock
    ) -> None:
        """Should skip undecodable records and keep going."""
        body = json.dumps([{"settlementRef": "broken"}, event_record("ok")]).encode()

        response = handler.handle(AUTH, body)

        assert response.status_code == 200
        assert response.content["errors"] == 1
        assert response.content["matched"] == 1
        mock_engine.reconcile.assert_called_once()

    def test_outcome_counts(self, handler: WebhookHandler, mock_engine: MagicMock) -> None:
        """Should count each outcome separately."""
        results = iter(
            [
                ReconcileOutcome.ALREADY_PAID,
                ReconcileOutcome.AMBIGUOUS_FLAGGED_FOR_REVIEW,
                ReconcileOutcome.NO_MATCH,
            ]
        )
        mock_engine.reconcile.side_effect = lambda event, channel: ReconcileResult(
            outcome=next(results), settlement_ref=event.settlement_ref
        )
        body = json.dumps([event_record("a"), event_record("b"), event_record("c")]).encode()

        content = handler.handle(AUTH, body).content

        assert content["already_paid"] == 1
        assert content["ambiguous"] == 1
        assert content["no_match"] == 1
        assert content["matched"] == 0
