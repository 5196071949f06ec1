"""Factory for creating the invoice store backend from configuration.

Follows the same registry approach as the other pluggable services: a
name-to-class mapping selected by ``Settings.store_backend``.
"""

import logging
from collections.abc import Callable

from services.shared.config import Settings
from services.storage.base import InvoiceStore
from services.storage.memory_store import InMemoryInvoiceStore
from services.storage.redis_store import RedisInvoiceStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    """Registry of available invoice store backends."""

    _backends: dict[str, Callable[[Settings], InvoiceStore]] = {
        "memory": lambda settings: InMemoryInvoiceStore(),
        "redis": RedisInvoiceStore,
    }

    @classmethod
    def register(cls, name: str, builder: Callable[[Settings], InvoiceStore]) -> None:
        """Register a new backend.

        Args:
            name: Backend identifier (must match Settings.store_backend)
            builder: Callable creating the store from settings
        """
        cls._backends[name] = builder
        logger.info(f"Registered invoice store backend: {name}")

    @classmethod
    def get_builder(cls, name: str) -> Callable[[Settings], InvoiceStore]:
        """Get backend builder by name.

        Raises:
            ValueError: If backend not found in registry
        """
        if name not in cls._backends:
            available = ", ".join(cls._backends.keys())
            raise ValueError(f"Unknown store backend: '{name}'. Available backends: {available}")
        return cls._backends[name]

    @classmethod
    def list_backends(cls) -> list[str]:
        return list(cls._backends.keys())


def create_invoice_store(settings: Settings) -> InvoiceStore:
    """Create the invoice store configured by settings.store_backend.

    Args:
        settings: Application settings

    Returns:
        Configured invoice store

    Raises:
        ValueError: If configured backend is unknown
    """
    store = StoreRegistry.get_builder(settings.store_backend)(settings)
    if settings.store_backend == "memory" and settings.environment == "production":
        logger.warning("In-memory invoice store in production: state is lost on restart")
    logger.info(f"Created invoice store backend: {settings.store_backend}")
    return store
