from __future__ import annotations

import logging
import os
import sys

LOGGER_NAME = "selector_healing"
LOG_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-30s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(level: str | None = None) -> logging.Logger:
    """Installs a single stream handler on the package logger. Safe to call repeatedly."""

    global _configured
    package_logger = logging.getLogger(LOGGER_NAME)
    resolved = (level or os.getenv("HEALING_LOG_LEVEL", "INFO")).upper()
    package_logger.setLevel(getattr(logging, resolved, logging.INFO))
    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        package_logger.addHandler(handler)
        _configured = True
    return package_logger
