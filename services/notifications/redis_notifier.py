"""Redis pub/sub status notifier.

All replicas publish to one channel (``<prefix>invoice-events``) with a JSON
message ``{"invoiceId": ..., "event": ...}``; each subscription filters for
its own invoice.

Based on redis-py pub/sub:
https://redis.readthedocs.io/en/stable/advanced_features.html#publish-subscribe
"""

import json
import logging
import time

import redis
from redis.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.notifications.base import StatusNotifier, StatusSubscription
from services.shared.config import Settings
from services.shared.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class RedisStatusSubscription(StatusSubscription):
    def __init__(self, pubsub: PubSub, invoice_id: str) -> None:
        super().__init__(invoice_id)
        self._pubsub = pubsub

    def wait(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
            except RedisError as e:
                raise UpstreamUnavailableError(f"Status notifications unavailable: {e}") from e
            if message is None:
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed status notification: {message['data']!r}")
                continue
            if isinstance(payload, dict) and payload.get("invoiceId") == self.invoice_id:
                return True

    def close(self) -> None:
        try:
            self._pubsub.close()
        except RedisError as e:
            logger.warning(f"Failed to close status subscription for {self.invoice_id}: {e}")


class RedisStatusNotifier(StatusNotifier):
    """Status notifier over Redis pub/sub, shared by all replicas."""

    def __init__(self, settings: Settings) -> None:
        """Initialize Redis notifier.

        Args:
            settings: Application settings with redis_url and redis_key_prefix
        """
        self.settings = settings
        self.channel = f"{settings.redis_key_prefix}invoice-events"
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis:
        """Get or create the Redis client (lazy initialization)."""
        if self._client is None:
            self._client = redis.Redis.from_url(self.settings.redis_url, decode_responses=True)
        return self._client

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.1, max=1),
        reraise=True,
    )
    def _publish(self, message: str) -> int:
        return self._get_client().publish(self.channel, message)

    def publish(self, invoice_id: str, event: str) -> None:
        message = json.dumps({"invoiceId": invoice_id, "event": event})
        try:
            receivers = self._publish(message)
        except RedisError as e:
            raise UpstreamUnavailableError(f"Status notifications unavailable: {e}") from e
        logger.debug(f"Published {event} for invoice {invoice_id} to {receivers} subscribers")

    def subscribe(self, invoice_id: str) -> StatusSubscription:
        pubsub = self._get_client().pubsub()
        try:
            pubsub.subscribe(self.channel)
        except RedisError as e:
            pubsub.close()
            raise UpstreamUnavailableError(f"Status notifications unavailable: {e}") from e
        return RedisStatusSubscription(pubsub, invoice_id)
