"""Logging setup for the CLI and the web app.

All modules log through ``logging.getLogger(__name__)`` under the
``nodesync`` hierarchy; this module attaches handlers to that root once.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "nodesync"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: str = "") -> logging.Logger:
    """Configure the ``nodesync`` logger. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    for handler in list(logger.handlers):
        if getattr(handler, "_nodesync", False):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._nodesync = True
    logger.addHandler(console)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        file_handler._nodesync = True
        logger.addHandler(file_handler)

    return logger


def key_prefix(raw_key: str) -> str:
    """Loggable form of an API key."""
    if not raw_key:
        return ""
    return raw_key[:8] + "..."
