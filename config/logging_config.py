"""Logging setup shared by the CLI entry points and the API."""
import logging
import sys
from typing import Optional

from config.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    Args:
        level: Log level name; defaults to LOG_LEVEL from settings
    """
    root = logging.getLogger()
    if getattr(root, "_prediction_worker_configured", False):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())

    # Quiet noisy client libraries
    for name in ("httpx", "openai", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    root._prediction_worker_configured = True
