"""Factory for the status notifier matching the configured store backend."""

import logging

from services.notifications.base import StatusNotifier
from services.notifications.memory_notifier import InMemoryStatusNotifier
from services.notifications.redis_notifier import RedisStatusNotifier
from services.shared.config import Settings

logger = logging.getLogger(__name__)


def create_status_notifier(settings: Settings) -> StatusNotifier:
    """Redis pub/sub alongside the Redis store, in-process otherwise."""
    if settings.store_backend == "redis":
        notifier: StatusNotifier = RedisStatusNotifier(settings)
    else:
        notifier = InMemoryStatusNotifier()
    logger.info(f"Created status notifier: {type(notifier).__name__}")
    return notifier
