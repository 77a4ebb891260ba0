"""
Centralized logging for the NeuroData Hub backend.

Every module logs through the standard logging module with one shared
format, so API routes, the cloud worker and the WebSocket layer all write
to the same stream.

Usage:
    from api.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Cloud worker polling every %d seconds", interval)
    logger.warning("Insufficient credits for user %s", user_id)
    logger.error("Stripe webhook handler failed: %s", err)
"""

import logging
import sys

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the API process.

    Called once by ``main.py`` and ``worker.py``. Later calls do nothing,
    so importing the app from tests does not reconfigure pytest's capture.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger for a backend module.

    Args:
        name: Module name (typically ``__name__``).
    """
    return logging.getLogger(name)
