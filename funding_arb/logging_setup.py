from __future__ import annotations

import logging
import os
import sys

from loguru import logger
from rich.logging import RichHandler


def setup_logger(level: str | None = None):
    level = (level or os.getenv("FRA_LOG_LEVEL") or "INFO").upper()

    # Rich handler for readable stdlib logs (httpx etc.)
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )

    # Silence noisy httpx logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Loguru to stdout
    logger.remove()
    logger.add(
        sys.stdout,
        level=level,
        backtrace=False,
        diagnose=False,
        colorize=True,
    )
    return logger
