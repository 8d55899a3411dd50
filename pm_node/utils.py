"""Logging and utility helpers for pm-node."""

import logging
import signal
import sys
import time
from typing import Union

LOGGER_NAME = "pm-node"


def setup_logging(debug: bool = False, quiet: bool = False) -> logging.Logger:
    """Configure logging for the agent.

    Args:
        debug: Enable debug-level logging
        quiet: Only log warnings and errors

    Returns:
        Configured logger instance
    """
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    # setup_logging may run more than once per process (tests, signal handler)
    if not logger.handlers:
        logger.addHandler(handler)

    return logger


def now_ms() -> int:
    """Milliseconds since the epoch, the heartbeat timestamp unit."""
    return int(time.time() * 1000)


def parse_signal(value: Union[str, int, None]) -> signal.Signals:
    """Parse a signal given by name or number.

    Accepts "SIGTERM", "TERM", "sigterm", 15 or "15".

    Raises:
        ValueError: if the value names no signal
    """
    if value is None:
        return signal.SIGTERM

    if isinstance(value, bool):
        raise ValueError(f"invalid signal: {value!r}")

    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        return signal.Signals(int(value))

    if not isinstance(value, str):
        raise ValueError(f"invalid signal: {value!r}")

    name = value.upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"unknown signal: {value}") from None
