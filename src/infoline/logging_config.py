"""Logging setup for applications embedding the data-access layer.

Library modules only create loggers with ``logging.getLogger(__name__)``;
handlers are installed here, by the application, once.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore", "redis")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure root logging to stdout.

    Args:
        level: Logging level, as a number or a name such as ``"DEBUG"``
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("infoline").debug("Logging initialized")
