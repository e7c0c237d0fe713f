"""Logging setup for the arena service and headless runner."""
from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOGGER_NAME = "arena"


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a console handler to the ``arena`` logger (idempotent).

    Level comes from the argument, then ``LOG_LEVEL``, then INFO.
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logger.addHandler(handler)
    return logger
