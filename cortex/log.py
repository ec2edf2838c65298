"""Logger setup shared by every Cortex module."""

import logging
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str) -> logging.Logger:
    """Return the ``cortex.<name>`` logger, writing to stderr.

    stdout is left alone so callers can pipe JSON output cleanly.
    """
    logger = logging.getLogger(f"cortex.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


def set_level(level: str | int) -> None:
    """Change the level of every logger created through get_logger()."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("cortex."):
            logging.getLogger(name).setLevel(level)
