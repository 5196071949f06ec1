"""Logging setup for the service process."""

import logging

from services.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Application settings (log_level)
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
