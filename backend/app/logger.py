"""Application-level logging utilities."""

from __future__ import annotations

import logging
import os
import sys


def setup_logger(name: str = "assist", level: int | None = None) -> logging.Logger:
    """Return a configured logger instance."""
    if level is None:
        debug = os.getenv("ASSIST_DEBUG", "false").strip().lower() in {"1", "true", "yes"}
        level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger(name)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    return logger


LOGGER: logging.Logger = setup_logger()

__all__ = ["LOGGER", "setup_logger"]
