"""Process-wide logging setup."""

import logging

from services.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure the root logger once per process.

    Args:
        settings: Application settings providing log_level
    """
    logging.basicConfig(level=getattr(logging, settings.log_level), format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
