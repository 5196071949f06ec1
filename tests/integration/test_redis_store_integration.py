"""Integration tests for the Redis invoice store.

These tests require a reachable Redis instance whose URL is given in
APP_TEST_REDIS_URL (e.g. redis://localhost:6379/15). Keys are written under a
random prefix and removed afterwards.

Tests are skipped if APP_TEST_REDIS_URL is not set.
"""

import os
import uuid
from collections.abc import Generator

import pytest

from services.invoices.lifecycle import InvoiceLifecycleManager
from services.invoices.models import InvoiceStatus, PaymentEvent, ReconcileOutcome
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.fallback_matcher import FallbackMatcher
from services.reconciliation.reference_matcher import ReferenceMatcher
from services.shared.config import Settings
from services.storage.base import MATCHING_KEY_INDEX
from services.storage.redis_store import RedisInvoiceStore

pytestmark = pytest.mark.skipif(
    not os.getenv("APP_TEST_REDIS_URL"),
    reason="APP_TEST_REDIS_URL not set - skipping Redis integration tests",
)


@pytest.fixture
def store() -> Generator[RedisInvoiceStore, None, None]:
    """Create Redis store under a throwaway key prefix."""
    prefix = f"test-{uuid.uuid4().hex}:"
    settings = Settings(
        _env_file=None,
        store_backend="redis",
        redis_url=os.environ["APP_TEST_REDIS_URL"],
        redis_key_prefix=prefix,
    )
    redis_store = RedisInvoiceStore(settings)
    yield redis_store
    client = redis_store._get_client()
    keys = list(client.scan_iter(match=f"{prefix}*"))
    if keys:
        client.delete(*keys)


def test_ping(store: RedisInvoiceStore) -> None:
    """Test that the store reaches Redis."""
    assert store.ping() is True


def test_create_supersede_and_settle(store: RedisInvoiceStore) -> None:
    """Test the invoice lifecycle against a real Redis instance."""
    settings = Settings(_env_file=None)
    lifecycle = InvoiceLifecycleManager(store, settings)
    engine = ReconciliationEngine(store, ReferenceMatcher(store), FallbackMatcher(store, settings))

    first = lifecycle.create_invoice("D", expected_amount=1_000_000)
    second = lifecycle.create_invoice("D", expected_amount=1_000_000)
    event = PaymentEvent(
        settlement_ref="sig-1",
        destination_account="D",
        amount=1_000_000,
        referenced_accounts=[second.matching_key],
        occurred_at=second.created_at,
    )

    assert engine.reconcile(event).outcome == ReconcileOutcome.MATCHED
    assert engine.reconcile(event).outcome == ReconcileOutcome.ALREADY_PAID

    stored_first = store.get(first.id)
    stored_second = store.get(second.id)
    assert stored_first is not None and stored_first.status == InvoiceStatus.DECLINED
    assert stored_second is not None and stored_second.status == InvoiceStatus.PAID


def test_exclusive_index(store: RedisInvoiceStore) -> None:
    """Test that put-if-absent refuses a second writer."""
    assert store.index_put(MATCHING_KEY_INDEX, "KEY", "a", exclusive=True) is True
    assert store.index_put(MATCHING_KEY_INDEX, "KEY", "b", exclusive=True) is False
    assert store.index_get(MATCHING_KEY_INDEX, "KEY") == "a"


def test_pending_index_and_compare_and_set(store: RedisInvoiceStore) -> None:
    """Test the write script keeps the pending sets in step with the record."""
    settings = Settings(_env_file=None)
    lifecycle = InvoiceLifecycleManager(store, settings)
    old = lifecycle.create_invoice("D", expected_amount=1)
    for n in range(20):
        lifecycle.create_invoice(f"M{n}", expected_amount=1)

    assert [i.id for i in store.scan_pending_by_destination("D")] == [old.id]

    paid = old.model_copy(update={"status": InvoiceStatus.PAID, "settlement_ref": "sig"})
    assert store.compare_and_set(old, paid) is True
    assert store.compare_and_set(old, old.model_copy(update={"status": InvoiceStatus.DECLINED})) is False

    assert store.scan_pending_by_destination("D") == []
    assert old.id not in {i.id for i in store.scan_pending_by_destination()}
    assert store.get(old.id) == paid
