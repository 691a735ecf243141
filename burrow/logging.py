"""Logging configuration for the relay and agent processes."""

import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

# Libraries that log every request or frame at INFO.
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.websocket")


def setup_logging(level: int | str = logging.INFO, stream: TextIO | None = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Logging level name or number (default: INFO)
        stream: Output stream (default: stdout)
    """
    if isinstance(level, str):
        level = level.upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    if root_logger.getEffectiveLevel() > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)
