"""Unit tests for status notifiers.

The in-memory notifier is tested directly; the Redis notifier with a mocked
client and pub/sub connection.
"""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.notifications.base import notify_status_change
from services.notifications.factory import create_status_notifier
from services.notifications.memory_notifier import InMemoryStatusNotifier
from services.notifications.redis_notifier import RedisStatusNotifier, RedisStatusSubscription
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError


class TestInMemoryNotifier:
    """Test in-process notifications."""

    def test_publish_wakes_subscriber(self) -> None:
        """Should signal a subscriber of the same invoice."""
        notifier = InMemoryStatusNotifier()
        subscription = notifier.subscribe("a")

        notifier.publish("a", "paid")

        assert subscription.wait(0.01) is True

    def test_wait_times_out_without_notification(self) -> None:
        """Should report a timeout when nothing was published."""
        notifier = InMemoryStatusNotifier()
        subscription = notifier.subscribe("a")

        notifier.publish("b", "paid")

        assert subscription.wait(0.01) is False

    def test_notification_consumed_by_wait(self) -> None:
        """Should not report the same notification twice."""
        notifier = InMemoryStatusNotifier()
        subscription = notifier.subscribe("a")
        notifier.publish("a", "paid")

        assert subscription.wait(0.01) is True
        assert subscription.wait(0.01) is False

    def test_publish_from_another_thread(self) -> None:
        """Should wake a subscriber blocked in wait."""
        notifier = InMemoryStatusNotifier()
        subscription = notifier.subscribe("a")
        publisher = threading.Timer(0.05, notifier.publish, args=("a", "paid"))

        publisher.start()
        try:
            assert subscription.wait(5) is True
        finally:
            publisher.cancel()

    def test_closed_subscription_is_unregistered(self) -> None:
        """Should forget subscribers once their context exits."""
        notifier = InMemoryStatusNotifier()

        with notifier.subscribe("a"):
            assert "a" in notifier._subscribers

        assert "a" not in notifier._subscribers
        notifier.publish("a", "paid")


class TestNotifyStatusChange:
    """Test best-effort publishing."""

    def test_no_notifier(self) -> None:
        """Should do nothing without a notifier."""
        notify_status_change(None, "a", "paid")

    def test_backend_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should log instead of raising when the backend is unreachable."""
        notifier = MagicMock()
        notifier.publish.side_effect = UpstreamUnavailableError("down")

        notify_status_change(notifier, "a", "paid")

        assert "Could not publish paid for invoice a" in caplog.text


@pytest.fixture
def redis_settings() -> Settings:
    """Create test settings for the Redis notifier."""
    return Settings(_env_file=None, store_backend="redis", redis_url="redis://cache:6379/1", redis_key_prefix="test:")


class TestRedisNotifier:
    """Test Redis pub/sub notifications with a mocked client."""

    def test_publish_sends_json_message(self, redis_settings: Settings) -> None:
        """Should publish the invoice id and event on the shared channel."""
        notifier = RedisStatusNotifier(redis_settings)
        mock_redis = MagicMock()

        with patch.object(notifier, "_get_client", return_value=mock_redis):
            notifier.publish("a", "paid")

        channel, message = mock_redis.publish.call_args.args
        assert channel == "test:invoice-events"
        assert json.loads(message) == {"invoiceId": "a", "event": "paid"}

    def test_publish_failure_raises_upstream_unavailable(self, redis_settings: Settings) -> None:
        """Should translate Redis errors after retries."""
        notifier = RedisStatusNotifier(redis_settings)
        mock_redis = MagicMock()
        mock_redis.publish.side_effect = RedisConnectionError("down")

        with patch.object(notifier, "_get_client", return_value=mock_redis):
            with pytest.raises(UpstreamUnavailableError):
                notifier.publish("a", "paid")

        assert mock_redis.publish.call_count == 3

    def test_subscribe_listens_on_channel(self, redis_settings: Settings) -> None:
        """Should subscribe a pub/sub connection to the shared channel."""
        notifier = RedisStatusNotifier(redis_settings)
        mock_redis = MagicMock()

        with patch.object(notifier, "_get_client", return_value=mock_redis):
            subscription = notifier.subscribe("a")

        mock_redis.pubsub.return_value.subscribe.assert_called_once_with("test:invoice-events")
        assert subscription.invoice_id == "a"

    def test_subscription_ignores_other_invoices(self) -> None:
        """Should only report notifications for its own invoice."""
        pubsub = MagicMock()
        pubsub.get_message.side_effect = [
            {"data": json.dumps({"invoiceId": "b", "event": "paid"})},
            {"data": "not json"},
            None,
            {"data": json.dumps({"invoiceId": "a", "event": "declined"})},
        ]
        subscription = RedisStatusSubscription(pubsub, "a")

        assert subscription.wait(5) is True
        assert pubsub.get_message.call_count == 4

    def test_subscription_times_out(self) -> None:
        """Should report a timeout when no matching message arrives."""
        pubsub = MagicMock()
        pubsub.get_message.return_value = None
        subscription = RedisStatusSubscription(pubsub, "a")

        assert subscription.wait(0.05) is False

    def test_subscription_connection_loss(self) -> None:
        """Should raise UpstreamUnavailableError when the connection drops."""
        pubsub = MagicMock()
        pubsub.get_message.side_effect = RedisConnectionError("reset")
        subscription = RedisStatusSubscription(pubsub, "a")

        with pytest.raises(UpstreamUnavailableError):
            subscription.wait(1)

    def test_close_releases_connection(self) -> None:
        """Should close the pub/sub connection when the context exits."""
        pubsub = MagicMock()

        with RedisStatusSubscription(pubsub, "a"):
            pass

        pubsub.close.assert_called_once()


class TestNotifierFactory:
    """Test notifier backend selection."""

    def test_memory_backend(self) -> None:
        """Should notify in-process next to the in-memory store."""
        notifier = create_status_notifier(Settings(_env_file=None, store_backend="memory"))

        assert isinstance(notifier, InMemoryStatusNotifier)

    def test_redis_backend(self, redis_settings: Settings) -> None:
        """Should use pub/sub next to the Redis store without connecting."""
        notifier = create_status_notifier(redis_settings)

        assert isinstance(notifier, RedisStatusNotifier)
        assert notifier.channel == "test:invoice-events"
